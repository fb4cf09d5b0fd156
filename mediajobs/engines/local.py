"""Engines that do not go through Fal: a local HTTP service and pass-through."""

from typing import Any, Dict, Optional
import httpx
import structlog

from mediajobs.engines.base import EngineClient, ProgressCallback, ProgressUpdate
from mediajobs.services.errors import FatalEngineError, error_classifier

logger = structlog.get_logger()


class HttpEngine(EngineClient):
    """
    Synchronous JSON endpoint, e.g. a self-hosted Automatic1111 txt2img.

    The request is POSTed as-is and the decoded JSON body is the result.
    """

    def __init__(
        self,
        name: str,
        base_url: Optional[str],
        path: str,
        timeout: float = 600.0,
        resource: str = "local",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/") if base_url else None
        self.path = path
        self.timeout = timeout
        self.resource = resource
        self._transport = transport

    async def invoke(
        self,
        request: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        if not self.base_url:
            raise FatalEngineError(f"{self.name} is not configured", engine=self.name)

        if on_progress:
            on_progress(ProgressUpdate(status="SUBMITTED"))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}{self.path}", json=request)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise error_classifier.to_engine_error(e, engine=self.name) from e


class PassthroughEngine(EngineClient):
    """Accepts the input unchanged; the last resort of a fallback chain."""

    name = "passthrough"
    resource = "passthrough"

    async def invoke(
        self,
        request: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        logger.info("Pass-through engine used, returning input unchanged")
        return {"passthrough": True, **request}
