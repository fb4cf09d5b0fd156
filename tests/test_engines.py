"""Tests for engine adapters and the engine registry."""

import httpx
import pytest

from mediajobs.engines.base import ProgressUpdate
from mediajobs.engines.fal import FAL_ENDPOINTS, FalQueueEngine, build_fal_engines
from mediajobs.engines.local import HttpEngine, PassthroughEngine
from mediajobs.engines.registry import EngineRegistry
from mediajobs.services.errors import FatalEngineError, TransientEngineError

QUEUE_URL = "https://queue.test"
ENDPOINT = "fal-ai/face-swap"


async def no_sleep(seconds):
    return None


class FalQueueStub:
    """Scripted Fal queue: submit, a sequence of statuses, then a result."""

    def __init__(self, statuses=("IN_QUEUE", "IN_PROGRESS", "COMPLETED"), result=None, submit_status=200):
        self.statuses = list(statuses)
        self.result = result if result is not None else {"image": {"url": "https://fal.media/swapped.png"}}
        self.submit_status = submit_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST":
            if self.submit_status != 200:
                return httpx.Response(self.submit_status, json={"detail": "rejected"}, headers={"retry-after": "3"})
            return httpx.Response(200, json={"request_id": "req-123"})
        if path.endswith("/status"):
            return httpx.Response(200, json={"status": self.statuses.pop(0), "logs": [{"message": "step"}]})
        return httpx.Response(200, json=self.result)


def fal_engine(stub, api_key="test-key", max_polls=10):
    return FalQueueEngine(
        name="face_swap",
        endpoint=ENDPOINT,
        api_key=api_key,
        base_url=QUEUE_URL,
        poll_interval=0.01,
        max_polls=max_polls,
        transport=httpx.MockTransport(stub),
        sleep=no_sleep,
    )


class TestFalQueueEngine:
    """Tests for the Fal submit-then-poll adapter."""

    @pytest.mark.asyncio
    async def test_submit_poll_result(self):
        """A request is submitted, polled to completion and its output returned."""
        stub = FalQueueStub()
        updates = []

        result = await fal_engine(stub).invoke({"base_image_url": "https://x/a.png"}, on_progress=updates.append)

        assert result == {"image": {"url": "https://fal.media/swapped.png"}}
        assert stub.requests[0].method == "POST"
        assert stub.requests[0].url == f"{QUEUE_URL}/{ENDPOINT}"
        assert stub.requests[0].headers["authorization"] == "Key test-key"
        assert stub.requests[1].url.path == f"/{ENDPOINT}/requests/req-123/status"
        assert updates[0] == ProgressUpdate(status="SUBMITTED", request_id="req-123")
        assert [u.percent for u in updates[1:]] == [10, 50]

    @pytest.mark.asyncio
    async def test_detail_payload_is_failure(self):
        """A completed request whose body is only a detail is a model failure."""
        stub = FalQueueStub(statuses=["COMPLETED"], result={"detail": "No face detected in source image"})

        with pytest.raises(FatalEngineError, match="No face detected"):
            await fal_engine(stub).invoke({})

    @pytest.mark.asyncio
    async def test_failed_status(self):
        """A FAILED status raises FatalEngineError."""
        stub = FalQueueStub(statuses=["IN_QUEUE", "FAILED"])

        with pytest.raises(FatalEngineError, match="req-123 failed"):
            await fal_engine(stub).invoke({})

    @pytest.mark.asyncio
    async def test_gives_up_after_max_polls(self):
        """A request that never finishes fails after max_polls."""
        stub = FalQueueStub(statuses=["IN_PROGRESS"] * 3)

        with pytest.raises(FatalEngineError, match="did not finish after 3 polls"):
            await fal_engine(stub, max_polls=3).invoke({})

    @pytest.mark.asyncio
    async def test_wait_uses_supplied_poll(self):
        """wait() resumes an existing request through the caller's poll, without submitting."""
        stub = FalQueueStub(statuses=["IN_PROGRESS", "COMPLETED"])
        engine = fal_engine(stub)
        polled = []

        async def poll(handle):
            polled.append(handle)
            return await engine.poll(handle)

        result = await engine.wait("req-123", poll=poll)

        assert result == {"image": {"url": "https://fal.media/swapped.png"}}
        assert polled == ["req-123", "req-123"]
        assert all(request.method == "GET" for request in stub.requests)

    def test_poll_resource_is_separate(self):
        engine = fal_engine(FalQueueStub())
        assert engine.resource == "fal"
        assert engine.poll_resource == "fal:poll"

    @pytest.mark.asyncio
    async def test_validation_error_is_fatal(self):
        """A 422 on submit is never retried."""
        stub = FalQueueStub(submit_status=422)

        with pytest.raises(FatalEngineError) as exc_info:
            await fal_engine(stub).invoke({})

        assert exc_info.value.status_code == 422
        assert exc_info.value.engine == "face_swap"

    @pytest.mark.asyncio
    async def test_unavailable_is_transient(self):
        """A 503 on submit is transient and carries Retry-After."""
        stub = FalQueueStub(submit_status=503)

        with pytest.raises(TransientEngineError) as exc_info:
            await fal_engine(stub).invoke({})

        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        """Without a key no request is sent."""
        stub = FalQueueStub()

        with pytest.raises(FatalEngineError, match="FAL_API_KEY"):
            await fal_engine(stub, api_key="").invoke({})
        assert stub.requests == []

    def test_build_fal_engines(self):
        """Every configured endpoint gets an engine with its resource."""
        engines = build_fal_engines(api_key="k")

        assert set(engines) == set(FAL_ENDPOINTS)
        assert engines["vision_analysis"].resource == "vision"
        assert engines["wan_replace"].resource == "fal"
        assert engines["face_swap"].endpoint == "easel-ai/advanced-face-swap"


class TestLocalEngines:
    """Tests for HttpEngine and PassthroughEngine."""

    @pytest.mark.asyncio
    async def test_http_engine_posts_json(self):
        """The request body is POSTed to base_url + path."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"images": ["aGVsbG8="]})

        engine = HttpEngine(
            "local_image",
            base_url="http://sd.local:7860/",
            path="/sdapi/v1/txt2img",
            transport=httpx.MockTransport(handler),
        )

        result = await engine.invoke({"prompt": "portrait"})

        assert result == {"images": ["aGVsbG8="]}
        assert str(seen[0].url) == "http://sd.local:7860/sdapi/v1/txt2img"

    @pytest.mark.asyncio
    async def test_http_engine_unconfigured(self):
        """An engine with no base URL fails fatally so chains can advance."""
        engine = HttpEngine("local_image", base_url=None, path="/sdapi/v1/txt2img")

        with pytest.raises(FatalEngineError, match="not configured"):
            await engine.invoke({})

    @pytest.mark.asyncio
    async def test_http_engine_server_error_is_transient(self):
        """A 500 from the local service is transient."""
        engine = HttpEngine(
            "local_image",
            base_url="http://sd.local",
            path="/run",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(TransientEngineError):
            await engine.invoke({})

    @pytest.mark.asyncio
    async def test_passthrough_returns_input(self):
        """Pass-through echoes the request and marks it."""
        result = await PassthroughEngine().invoke({"video_url": "https://cdn/x.mp4"})

        assert result == {"passthrough": True, "video_url": "https://cdn/x.mp4"}


class TestEngineRegistry:
    """Tests for EngineRegistry."""

    def test_get_registered(self):
        """Registered engines are found by name."""
        passthrough = PassthroughEngine()
        registry = EngineRegistry([passthrough])

        assert registry.get("passthrough") is passthrough
        assert "passthrough" in registry

    def test_unknown_engine(self):
        """Looking up an unknown engine is a fatal error."""
        with pytest.raises(FatalEngineError, match="No engine registered"):
            EngineRegistry().get("missing")

    def test_default_registry(self):
        """The default registry holds every pipeline engine."""
        names = EngineRegistry.default().names()

        for name in ("wan_replace", "kling_motion", "face_swap", "vision_analysis", "local_image", "passthrough"):
            assert name in names
