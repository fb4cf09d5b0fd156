from typing import Dict, Iterable, List, Optional
import structlog

from mediajobs.config import settings
from mediajobs.engines.base import EngineClient
from mediajobs.engines.fal import build_fal_engines
from mediajobs.engines.local import HttpEngine, PassthroughEngine
from mediajobs.services.errors import FatalEngineError

logger = structlog.get_logger()


class EngineRegistry:
    """Engine clients keyed by name; pipelines look engines up here."""

    def __init__(self, engines: Optional[Iterable[EngineClient]] = None):
        self._engines: Dict[str, EngineClient] = {}
        for engine in engines or []:
            self.register(engine)

    def register(self, engine: EngineClient):
        self._engines[engine.name] = engine

    def get(self, name: str) -> EngineClient:
        engine = self._engines.get(name)
        if engine is None:
            raise FatalEngineError(f"No engine registered for '{name}'", engine=name)
        return engine

    def names(self) -> List[str]:
        return sorted(self._engines)

    def __contains__(self, name: str) -> bool:
        return name in self._engines

    @classmethod
    def default(cls) -> "EngineRegistry":
        """Fal engines, the local image fallback and pass-through."""
        registry = cls(build_fal_engines().values())
        registry.register(
            HttpEngine(
                name="local_image",
                base_url=settings.local_image_url,
                path="/sdapi/v1/txt2img",
            )
        )
        registry.register(PassthroughEngine())
        logger.debug("Engine registry built", engines=registry.names())
        return registry
