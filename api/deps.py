"""
FastAPI dependency providers.

Holds the process's ``ResilienceOrchestrator`` singleton. It is created on
first use from ``RESILIENCE_*`` environment variables (and ``.env``), and
reused across requests so circuit, cache and rate-limit state persist for
the life of the process.
"""

from infrastructure.config import ResilienceConfig
from infrastructure.orchestrator import ResilienceOrchestrator

ENV_PREFIX = "RESILIENCE"

_orchestrator: ResilienceOrchestrator | None = None


def get_orchestrator() -> ResilienceOrchestrator:
    """
    Return the cached ``ResilienceOrchestrator`` singleton.

    Configuration is read once, on first call.
    """
    global _orchestrator  # noqa: PLW0603
    if _orchestrator is None:
        _orchestrator = ResilienceOrchestrator(
            ResilienceConfig.from_env(ENV_PREFIX), request_id_prefix="api"
        )
    return _orchestrator


def set_orchestrator(orchestrator: ResilienceOrchestrator | None) -> None:
    """Replace (or with None, drop) the singleton. Used at startup and in tests."""
    global _orchestrator  # noqa: PLW0603
    _orchestrator = orchestrator
