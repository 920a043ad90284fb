from .base import JobSource, detect_language
from .mock import MockSource
from .remotive import RemotiveSource

from autoapply.config import Settings
from autoapply.log import get_logger

log = get_logger(__name__)

__all__ = ["JobSource", "MockSource", "RemotiveSource", "detect_language", "get_sources"]

_REGISTRY = {
    "remotive": lambda settings: RemotiveSource(timeout=settings.oracle_timeout_seconds),
    "mock": lambda settings: MockSource(),
}


def get_sources(settings: Settings) -> list[JobSource]:
    sources: list[JobSource] = []
    for name in settings.sources:
        factory = _REGISTRY.get(name.lower())
        if factory is None:
            log.warning("Unknown job source %r ignored", name)
            continue
        sources.append(factory(settings))
        log.info("Registered source: %s", name)

    if not sources:
        sources.append(MockSource())
        log.info("No job sources configured — using MockSource")
    return sources
