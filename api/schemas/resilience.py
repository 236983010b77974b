"""Pydantic schemas for /resilience endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

CircuitStateEnum = Literal["closed", "open", "half_open"]
HealthEnum = Literal["HEALTHY", "DEGRADED"]


class HealthResponse(BaseModel):
    """Liveness plus the orchestrator's health verdict."""

    status: Literal["ok"] = "ok"
    resilience: HealthEnum
    issues: list[str] = Field(default_factory=list)


class CircuitStats(BaseModel):
    success: int
    failed: int
    rejected: int
    trips: int


class CircuitStatus(BaseModel):
    """One dependency's circuit, as reported by CircuitBreaker.status()."""

    name: str
    state: CircuitStateEnum
    consecutive_failures: int
    consecutive_half_open_successes: int
    failure_threshold: int
    success_threshold: int
    reset_timeout_ms: int
    total_requests: int
    last_failure_ago_seconds: float | None = None
    last_success_ago_seconds: float | None = None
    half_open_in_flight: int = 0
    failure_rate: float = Field(
        0.0, ge=0.0, le=1.0, description="Failure share of the recent outcome window"
    )
    failure_rate_threshold: float = 0.5
    high_failure_rate: bool = False
    stats: CircuitStats


class CacheStatus(BaseModel):
    size: int = Field(..., ge=0, description="Entries held across all dependency caches")
    per_dependency: dict[str, dict[str, Any]] = Field(default_factory=dict)


class RateLimitStatus(BaseModel):
    active_keys: dict[str, list[str]] = Field(
        default_factory=dict, description="Callers with calls in the current window, per dependency"
    )


class MetricsSnapshot(BaseModel):
    total_requests: int
    successful_requests: int
    failed_requests: int
    degraded_requests: int
    total_response_time_ms: float
    average_response_time_ms: float
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float
    success_rate: float
    rate_limit_hits: int
    circuit_breaker_rejections: int
    circuit_breaker_trips: int
    retry_attempts: int
    fallback_invocations: int
    errors: dict[str, int]
    circuit_state_changes: int = 0
    failure_rate_alerts: int = 0


class ConfigView(BaseModel):
    default: dict[str, Any]
    dependencies: dict[str, dict[str, Any]] = Field(default_factory=dict)


class StatusResponse(BaseModel):
    """Full status snapshot of the resilience core."""

    status: HealthEnum
    issues: list[str]
    timestamp: str
    circuits: dict[str, CircuitStatus]
    cache: CacheStatus
    rate_limits: RateLimitStatus
    metrics: MetricsSnapshot
    config: ConfigView


class ErrorReportResponse(BaseModel):
    timestamp: str
    total_errors: int
    error_breakdown: dict[str, int]
    circuit_breaker_rejections: int
    circuit_breaker_trips: int
    rate_limit_hits: int
    failure_rate_alerts: int = 0


class CacheClearResponse(BaseModel):
    cleared: int = Field(..., ge=0, description="Number of cache entries removed")


class CircuitResetResponse(BaseModel):
    reset: list[str] = Field(..., description="Dependency keys forced back to CLOSED")
