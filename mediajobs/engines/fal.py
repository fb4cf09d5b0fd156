"""Engines hosted on Fal.ai's queue API.

Every Fal model follows the same protocol:

    POST {queue}/{endpoint}                          -> {"request_id": ...}
    GET  {queue}/{endpoint}/requests/{id}/status     -> {"status": "IN_QUEUE" | "IN_PROGRESS" | "COMPLETED"}
    GET  {queue}/{endpoint}/requests/{id}            -> model output

so one FalQueueEngine class serves every model; FAL_ENDPOINTS lists the
models the pipelines use.
"""

import asyncio
from typing import Any, Callable, Dict, Optional
import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from mediajobs.config import settings
from mediajobs.engines.base import PollingEngineClient, PollResult
from mediajobs.services.errors import FatalEngineError, error_classifier

logger = structlog.get_logger()

# Engine name -> Fal endpoint and poll cadence
FAL_ENDPOINTS = {
    "wan_replace": {
        "endpoint": "fal-ai/wan/v2.2-14b/animate/replace",
        "poll_interval": 5.0,
        "max_polls": 360,  # 30 minutes
    },
    "kling_motion": {
        "endpoint": "fal-ai/kling-video/v2.6/pro/motion-control",
        "poll_interval": 5.0,
        "max_polls": 360,
    },
    "face_swap": {
        "endpoint": "easel-ai/advanced-face-swap",
        "poll_interval": 1.0,
        "max_polls": 120,
    },
    "vision_analysis": {
        "endpoint": "fal-ai/any-llm/vision",
        "poll_interval": 1.0,
        "max_polls": 120,
        "resource": "vision",
    },
    "gemini_image": {
        "endpoint": "fal-ai/nano-banana/edit",
        "poll_interval": 2.0,
        "max_polls": 150,
    },
    "fal_image": {
        "endpoint": "fal-ai/flux-pro/kontext",
        "poll_interval": 2.0,
        "max_polls": 150,
    },
    "flux_lora": {
        "endpoint": "fal-ai/flux-lora",
        "poll_interval": 2.0,
        "max_polls": 150,
    },
    "flux_pulid": {
        "endpoint": "fal-ai/flux-pulid",
        "poll_interval": 2.0,
        "max_polls": 150,
    },
    "lora_training": {
        "endpoint": "fal-ai/flux-lora-fast-training",
        "poll_interval": settings.poll_interval_seconds,
        "max_polls": 120,
    },
}

STATUS_MAP = {
    "IN_QUEUE": "pending",
    "IN_PROGRESS": "running",
    "COMPLETED": "completed",
    "FAILED": "failed",
    "ERROR": "failed",
}


class FalQueueEngine(PollingEngineClient):
    """
    One Fal model driven through the queue API over httpx.

    Attributes:
        name: Engine registry name
        endpoint: Fal model path, e.g. "fal-ai/face-swap"
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        poll_interval: float = 5.0,
        max_polls: Optional[int] = None,
        resource: str = "fal",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        """
        Args:
            name: Engine registry name
            endpoint: Fal model path
            api_key: Fal API key (defaults to settings.fal_api_key)
            base_url: Queue base URL (defaults to settings.fal_queue_url)
            poll_interval: Seconds between status checks
            max_polls: Status checks before giving up
            resource: Rate limiter resource name
            transport: httpx transport override, used by tests
            sleep: Awaitable sleep override, used by tests
        """
        super().__init__(sleep=sleep or asyncio.sleep)
        self.name = name
        self.endpoint = endpoint.strip("/")
        self.api_key = api_key if api_key is not None else settings.fal_api_key
        self.base_url = (base_url or settings.fal_queue_url).rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.resource = resource
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise FatalEngineError("FAL_API_KEY is not configured", engine=self.name)
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=60.0, transport=self._transport)

    def _request_url(self, request_id: str, suffix: str = "") -> str:
        return f"{self.base_url}/{self.endpoint}/requests/{request_id}{suffix}"

    async def submit(self, request: Dict[str, Any]) -> str:
        """Submit a request to the Fal queue and return its request_id."""
        logger.debug("Submitting to Fal", engine=self.name, endpoint=self.endpoint)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/{self.endpoint}",
                    headers=self._headers(),
                    json=request,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise error_classifier.to_engine_error(e, engine=self.name) from e

        request_id = data.get("request_id")
        if not request_id:
            raise FatalEngineError("No request_id in Fal response", engine=self.name)
        return request_id

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        reraise=True,
    )
    async def _get(self, url: str) -> httpx.Response:
        async with self._client() as client:
            return await client.get(url, headers=self._headers())

    async def _get_json(self, url: str) -> dict:
        try:
            response = await self._get(url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise error_classifier.to_engine_error(e, engine=self.name) from e

    async def poll(self, handle: str) -> PollResult:
        """Check request status; fetch the output once completed."""
        data = await self._get_json(self._request_url(handle, "/status?logs=1"))
        raw_status = str(data.get("status", "")).upper()
        status = STATUS_MAP.get(raw_status, "pending")
        logs = [entry.get("message", "") for entry in (data.get("logs") or []) if isinstance(entry, dict)]

        if status == "failed":
            return PollResult(status="failed", error=data.get("error") or raw_status, raw_status=raw_status)

        if status == "completed":
            result = await self._get_json(self._request_url(handle))
            if result.get("detail") and not any(k in result for k in ("video", "image", "images", "output")):
                # Fal reports model-side failures as a detail payload
                return PollResult(status="failed", error=str(result["detail"])[:500], raw_status=raw_status)
            return PollResult(status="completed", percent=100, result=result, raw_status=raw_status)

        return PollResult(
            status=status,
            percent=self.STATUS_PROGRESS.get(raw_status),
            raw_status=raw_status,
            logs=logs,
        )


def build_fal_engines(**overrides) -> Dict[str, FalQueueEngine]:
    """Instantiate every engine in FAL_ENDPOINTS."""
    engines = {}
    for name, config in FAL_ENDPOINTS.items():
        engines[name] = FalQueueEngine(
            name=name,
            endpoint=config["endpoint"],
            poll_interval=config["poll_interval"],
            max_polls=config["max_polls"],
            resource=config.get("resource", "fal"),
            **overrides,
        )
    return engines
