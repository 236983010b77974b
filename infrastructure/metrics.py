"""Performance metrics for orchestrated dependency calls.

Two views of the same events:

    PerformanceMetrics   In-process counters owned by one orchestrator.
                         Exposed read-only through ``snapshot()`` and used by
                         the status endpoint. Never persisted.
    Prometheus           Process-wide counters/histograms labelled by
                         dependency, scraped from ``/metrics``.

Prometheus metrics:
    clinical_resilience_requests_total                 Counter by dependency and outcome
    clinical_resilience_latency_seconds                Histogram by dependency
    clinical_resilience_cache_hits_total               Counter by dependency
    clinical_resilience_cache_misses_total             Counter by dependency
    clinical_resilience_rate_limited_total             Counter by dependency
    clinical_resilience_circuit_breaker_trips_total    Counter by dependency
    clinical_resilience_circuit_breaker_rejected_total Counter by dependency
    clinical_resilience_retries_total                  Counter by dependency
    clinical_resilience_fallbacks_total                Counter by dependency and result
    clinical_resilience_circuit_state                  Gauge by dependency (0 closed, 1 half-open, 2 open)
    clinical_resilience_circuit_transitions_total      Counter by dependency, from_state and to_state
    clinical_resilience_failure_rate_alerts_total      Counter by dependency

Usage::

    from infrastructure.metrics import PerformanceMetrics

    metrics = PerformanceMetrics()
    metrics.record_request("drugInteractionAPI", outcome="success", elapsed_ms=42.0)
    metrics.snapshot()["success_rate"]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

OUTCOMES: tuple[str, ...] = ("success", "failure", "degraded")
ERROR_KINDS: tuple[str, ...] = (
    "validation",
    "rate_limit",
    "timeout",
    "service_unavailable",
    "dependency",
)

CIRCUIT_STATE_VALUES: dict[str, int] = {"closed": 0, "half_open": 1, "open": 2}

# ---------------------------------------------------------------------------
# Prometheus registry
# ---------------------------------------------------------------------------

_REGISTRY = CollectorRegistry()

requests_total = Counter(
    "clinical_resilience_requests_total",
    "Completed orchestrated calls by dependency and outcome",
    ["dependency", "outcome"],
    registry=_REGISTRY,
)

latency_seconds = Histogram(
    "clinical_resilience_latency_seconds",
    "End-to-end orchestrated call latency in seconds",
    ["dependency"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=_REGISTRY,
)

cache_hits_total = Counter(
    "clinical_resilience_cache_hits_total",
    "Result cache hits",
    ["dependency"],
    registry=_REGISTRY,
)

cache_misses_total = Counter(
    "clinical_resilience_cache_misses_total",
    "Result cache misses",
    ["dependency"],
    registry=_REGISTRY,
)

rate_limited_total = Counter(
    "clinical_resilience_rate_limited_total",
    "Calls rejected for quota, by the local limiter or the dependency itself",
    ["dependency"],
    registry=_REGISTRY,
)

circuit_breaker_trips_total = Counter(
    "clinical_resilience_circuit_breaker_trips_total",
    "Number of times a circuit tripped to OPEN",
    ["dependency"],
    registry=_REGISTRY,
)

circuit_breaker_rejected_total = Counter(
    "clinical_resilience_circuit_breaker_rejected_total",
    "Calls short-circuited because the circuit was OPEN",
    ["dependency"],
    registry=_REGISTRY,
)

retries_total = Counter(
    "clinical_resilience_retries_total",
    "Retry attempts after a failed attempt",
    ["dependency"],
    registry=_REGISTRY,
)

fallbacks_total = Counter(
    "clinical_resilience_fallbacks_total",
    "Fallback invocations by result",
    ["dependency", "result"],
    registry=_REGISTRY,
)

circuit_state = Gauge(
    "clinical_resilience_circuit_state",
    "Current circuit state (0 closed, 1 half-open, 2 open)",
    ["dependency"],
    registry=_REGISTRY,
)

circuit_transitions_total = Counter(
    "clinical_resilience_circuit_transitions_total",
    "Circuit state transitions",
    ["dependency", "from_state", "to_state"],
    registry=_REGISTRY,
)

failure_rate_alerts_total = Counter(
    "clinical_resilience_failure_rate_alerts_total",
    "High failure rate alerts raised by circuits",
    ["dependency"],
    registry=_REGISTRY,
)


def get_metrics_response() -> tuple[bytes, str]:
    """Generate Prometheus text exposition format.

    Returns:
        Tuple of (body_bytes, content_type_string).
    """
    return generate_latest(_REGISTRY), CONTENT_TYPE_LATEST


# ---------------------------------------------------------------------------
# In-process counters
# ---------------------------------------------------------------------------


def _empty_errors() -> dict[str, int]:
    return {kind: 0 for kind in ERROR_KINDS}


@dataclass
class PerformanceMetrics:
    """Counters mutated on every completed call.

    Writes go through the ``record_*`` methods, which also update the
    Prometheus series. Readers should use ``snapshot()``.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    degraded_requests: int = 0
    total_response_time_ms: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    rate_limit_hits: int = 0
    circuit_breaker_rejections: int = 0
    circuit_breaker_trips: int = 0
    retry_attempts: int = 0
    fallback_invocations: int = 0
    circuit_state_changes: int = 0
    failure_rate_alerts: int = 0
    errors: dict[str, int] = field(default_factory=_empty_errors)

    def record_request(self, dependency: str, *, outcome: str, elapsed_ms: float) -> None:
        """Record one completed call.

        Args:
            dependency: Dependency key.
            outcome: One of ``"success"``, ``"failure"``, ``"degraded"``.
            elapsed_ms: End-to-end wall time in milliseconds.
        """
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome {outcome!r}, valid options: {list(OUTCOMES)}")
        self.total_requests += 1
        self.total_response_time_ms += elapsed_ms
        if outcome == "success":
            self.successful_requests += 1
        elif outcome == "degraded":
            self.degraded_requests += 1
        else:
            self.failed_requests += 1
        requests_total.labels(dependency=dependency, outcome=outcome).inc()
        latency_seconds.labels(dependency=dependency).observe(elapsed_ms / 1000.0)

    def record_error(self, kind: str) -> None:
        """Increment the error breakdown bucket ``kind``."""
        if kind not in self.errors:
            raise ValueError(f"Unknown error kind {kind!r}, valid options: {list(ERROR_KINDS)}")
        self.errors[kind] += 1

    def record_cache_hit(self, dependency: str) -> None:
        self.cache_hits += 1
        cache_hits_total.labels(dependency=dependency).inc()

    def record_cache_miss(self, dependency: str) -> None:
        self.cache_misses += 1
        cache_misses_total.labels(dependency=dependency).inc()

    def record_rate_limited(self, dependency: str) -> None:
        self.rate_limit_hits += 1
        rate_limited_total.labels(dependency=dependency).inc()

    def record_circuit_rejected(self, dependency: str) -> None:
        self.circuit_breaker_rejections += 1
        circuit_breaker_rejected_total.labels(dependency=dependency).inc()

    def record_circuit_trip(self, dependency: str) -> None:
        self.circuit_breaker_trips += 1
        circuit_breaker_trips_total.labels(dependency=dependency).inc()

    def record_retry(self, dependency: str) -> None:
        self.retry_attempts += 1
        retries_total.labels(dependency=dependency).inc()

    def record_fallback(self, dependency: str, *, succeeded: bool) -> None:
        self.fallback_invocations += 1
        result = "success" if succeeded else "failure"
        fallbacks_total.labels(dependency=dependency, result=result).inc()

    def record_circuit_state_change(self, dependency: str, old_state: str, new_state: str) -> None:
        """Record a circuit transition. States are ``CircuitState`` values."""
        if new_state not in CIRCUIT_STATE_VALUES:
            raise ValueError(
                f"Unknown circuit state {new_state!r}, valid options: {list(CIRCUIT_STATE_VALUES)}"
            )
        self.circuit_state_changes += 1
        circuit_state.labels(dependency=dependency).set(CIRCUIT_STATE_VALUES[new_state])
        circuit_transitions_total.labels(
            dependency=dependency, from_state=old_state, to_state=new_state
        ).inc()

    def record_failure_rate_alert(self, dependency: str) -> None:
        self.failure_rate_alerts += 1
        failure_rate_alerts_total.labels(dependency=dependency).inc()

    @property
    def average_response_time_ms(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.total_response_time_ms / self.total_requests

    @property
    def cache_hit_rate(self) -> float:
        """Cache hits as a percentage of cache lookups."""
        lookups = self.cache_hits + self.cache_misses
        return (self.cache_hits / lookups) * 100.0 if lookups else 0.0

    @property
    def success_rate(self) -> float:
        """Successful calls as a percentage of all completed calls."""
        if not self.total_requests:
            return 0.0
        return (self.successful_requests / self.total_requests) * 100.0

    def snapshot(self) -> dict[str, Any]:
        """Return a read-only copy of all counters plus derived rates."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "degraded_requests": self.degraded_requests,
            "total_response_time_ms": round(self.total_response_time_ms, 3),
            "average_response_time_ms": round(self.average_response_time_ms, 3),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(self.cache_hit_rate, 2),
            "success_rate": round(self.success_rate, 2),
            "rate_limit_hits": self.rate_limit_hits,
            "circuit_breaker_rejections": self.circuit_breaker_rejections,
            "circuit_breaker_trips": self.circuit_breaker_trips,
            "retry_attempts": self.retry_attempts,
            "fallback_invocations": self.fallback_invocations,
            "circuit_state_changes": self.circuit_state_changes,
            "failure_rate_alerts": self.failure_rate_alerts,
            "errors": dict(self.errors),
        }

    def error_report(self) -> dict[str, Any]:
        """Error breakdown with rejection counters."""
        return {
            "total_errors": sum(self.errors.values()),
            "error_breakdown": dict(self.errors),
            "circuit_breaker_rejections": self.circuit_breaker_rejections,
            "circuit_breaker_trips": self.circuit_breaker_trips,
            "rate_limit_hits": self.rate_limit_hits,
            "failure_rate_alerts": self.failure_rate_alerts,
        }

    def reset(self) -> None:
        """Zero every in-process counter. Prometheus series are untouched."""
        fresh = PerformanceMetrics()
        for name in vars(fresh):
            setattr(self, name, getattr(fresh, name))
        logger.info("PerformanceMetrics reset")

