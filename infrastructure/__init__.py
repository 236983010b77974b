"""Infrastructure layer — resilience orchestration for clinical dependencies.

Modules:
    errors           Failure taxonomy and exception classification.
    correlation      Request ids, ContextVar propagation, JSON logging.
    config           Per-dependency configuration (code, mapping, env).
    rate_limiter     Per-caller sliding-window rate limiter.
    circuit_breaker  Keyed CLOSED/OPEN/HALF-OPEN circuit breaker.
    cache            In-memory TTL result cache.
    retry            Exponential backoff with jitter and per-attempt timeout.
    fallback         Tiered fallback chains for graceful degradation.
    metrics          In-process counters mirrored to Prometheus.
    orchestrator     The pipeline composing all of the above.
"""

from infrastructure.errors import (
    DependencyError,
    DependencyTimeoutError,
    FailureRecord,
    RateLimitError,
    ResilienceError,
    ServiceUnavailableError,
    ValidationError,
)
from infrastructure.orchestrator import OrchestratedResult, ResilienceOrchestrator

__all__ = [
    "DependencyError",
    "DependencyTimeoutError",
    "FailureRecord",
    "OrchestratedResult",
    "RateLimitError",
    "ResilienceError",
    "ResilienceOrchestrator",
    "ServiceUnavailableError",
    "ValidationError",
]
