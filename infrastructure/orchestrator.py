"""Resilience orchestrator — one pipeline for every protected dependency call.

Every call site that talks to an external or AI-backed dependency (drug
interaction lookups, pharmacy integrations, inference endpoints) goes
through ``ResilienceOrchestrator.execute`` instead of reimplementing circuit
breaking, caching and retries locally. The orchestrator never inspects the
domain payload: it receives an opaque operation and opaque fallbacks and
returns a result or exactly one classified failure.

Pipeline per call (fixed order)::

    validate inputs ──✗──→ ValidationError              (never retried)
    rate limiter    ──✗──→ RateLimitError               (not a dependency failure)
    circuit allow   ──✗──→ fallback chain ──✗──→ ServiceUnavailableError
    cache lookup    ──hit─→ result (from_cache=True)
    retry executor around the operation
        ├── success → cache.set, circuit success, metrics
        └── failure → circuit failure, metrics, fallback chain
                                      ├── success → result (degraded=True)
                                      └── failure → ServiceUnavailableError

All mutable state (circuits, rate-limit windows, caches, counters) lives on
the orchestrator instance. Two orchestrators never share state, so
different dependency configurations coexist and are tested independently.

Concurrency model: calls interleave on one event loop. Circuit and
rate-limit checks are synchronous (no awaits between check and update);
suspension happens only inside the operation, backoff sleeps and fallbacks.

Usage::

    from infrastructure.config import LOOKUP_API_CONFIG
    from infrastructure.orchestrator import ResilienceOrchestrator

    orchestrator = ResilienceOrchestrator(LOOKUP_API_CONFIG)

    result = await orchestrator.execute(
        "drugInteractionAPI",
        lambda: client.check(patient_id, drug),
        fallbacks=[lambda: local_screen(patient_id, drug)],
        cache_inputs={"patient_id": patient_id, "drug": drug},
        caller_key=nurse_id,
    )
    result.value, result.from_cache, result.degraded, result.request_id
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from infrastructure.cache import MISS, TTLCache, make_cache_key
from infrastructure.circuit_breaker import (
    Admission,
    CircuitBreaker,
    CircuitState,
    StateChangeListener,
)
from infrastructure.config import DEFAULT_CONFIG, ResilienceConfig
from infrastructure.correlation import RequestContext
from infrastructure.errors import (
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
    classify_exception,
    failure_kind,
)
from infrastructure.fallback import FallbackChain
from infrastructure.metrics import PerformanceMetrics
from infrastructure.rate_limiter import RateLimiter
from infrastructure.retry import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DependencyKey = str
Operation = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class OrchestratedResult(Generic[T]):
    """A dependency result annotated with correlation and provenance.

    Attributes:
        value: The operation's (or winning fallback's) result.
        request_id: Correlation id of this call.
        dependency_key: Dependency the call was made against.
        from_cache: True if served from the result cache.
        degraded: True if produced by a fallback.
        fallback_index: Index of the winning fallback, when degraded.
        degradation_reason: Failure code that triggered degradation.
        attempts: Operation attempts made (0 for cache hits and open circuits).
        elapsed_ms: End-to-end latency.
    """

    value: T
    request_id: str
    dependency_key: str
    from_cache: bool = False
    degraded: bool = False
    fallback_index: int | None = None
    degradation_reason: str | None = None
    attempts: int = 0
    elapsed_ms: float = 0.0

    def provenance(self) -> dict[str, Any]:
        """Metadata block for API responses."""
        return {
            "request_id": self.request_id,
            "dependency_key": self.dependency_key,
            "from_cache": self.from_cache,
            "degraded": self.degraded,
            "fallback_index": self.fallback_index,
            "degradation_reason": self.degradation_reason,
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


@dataclass
class _CallState:
    attempts: int = 0


class ResilienceOrchestrator:
    """Composes rate limiting, circuit breaking, caching, retries and fallbacks.

    Args:
        config: Default configuration for dependencies without an override.
        dependency_configs: Per-dependency configuration overrides.
        metrics: Counters to update (default: a fresh PerformanceMetrics).
        clock: Monotonic time source shared by circuits, caches and limiters.
        sleep: Coroutine used for backoff waits.
        rng: Uniform random source for retry jitter.
        request_id_prefix: Prefix for generated request ids.
        on_state_change: Extra listener for circuit transitions, called
            with ``(dependency_key, old_state, new_state)`` after metrics
            are updated.
    """

    def __init__(
        self,
        config: ResilienceConfig = DEFAULT_CONFIG,
        *,
        dependency_configs: dict[DependencyKey, ResilienceConfig] | None = None,
        metrics: PerformanceMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
        request_id_prefix: str = "req",
        on_state_change: StateChangeListener | None = None,
    ) -> None:
        self._default_config = config
        self._configs: dict[DependencyKey, ResilienceConfig] = dict(dependency_configs or {})
        self.metrics = metrics or PerformanceMetrics()
        self._clock = clock
        self._prefix = request_id_prefix
        self._retry = RetryExecutor(sleep=sleep, rng=rng)
        self._state_listener = on_state_change
        self._breaker = CircuitBreaker(
            config.circuit_breaker,
            overrides={k: c.circuit_breaker for k, c in self._configs.items()},
            clock=clock,
            on_trip=self.metrics.record_circuit_trip,
            on_state_change=self._on_circuit_state_change,
            on_alert=self._on_failure_rate_alert,
        )
        self._caches: dict[DependencyKey, TTLCache] = {}
        self._limiters: dict[DependencyKey, RateLimiter] = {}

        logger.info(
            "ResilienceOrchestrator initialized (%d dependency overrides)", len(self._configs)
        )

    # ------------------------------------------------------------------
    # Configuration and owned state
    # ------------------------------------------------------------------

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def config_for(self, dependency_key: DependencyKey) -> ResilienceConfig:
        return self._configs.get(dependency_key, self._default_config)

    def configure_dependency(self, dependency_key: DependencyKey, config: ResilienceConfig) -> None:
        """Install an override for ``dependency_key``.

        The dependency's cache and rate-limit windows are rebuilt empty with
        the new sizing; its circuit keeps its state but adopts the new
        thresholds.
        """
        self._configs[dependency_key] = config
        self._breaker.configure(dependency_key, config.circuit_breaker)
        self._caches.pop(dependency_key, None)
        self._limiters.pop(dependency_key, None)
        logger.info("ResilienceOrchestrator: configured dependency '%s'", dependency_key)

    def cache_for(self, dependency_key: DependencyKey) -> TTLCache:
        cache = self._caches.get(dependency_key)
        if cache is None:
            cfg = self.config_for(dependency_key).cache
            cache = TTLCache(cfg.ttl_seconds, cfg.max_entries, clock=self._clock)
            self._caches[dependency_key] = cache
        return cache

    def rate_limiter_for(self, dependency_key: DependencyKey) -> RateLimiter:
        limiter = self._limiters.get(dependency_key)
        if limiter is None:
            cfg = self.config_for(dependency_key).rate_limit
            limiter = RateLimiter(cfg.requests_per_minute, cfg.window_seconds, clock=self._clock)
            self._limiters[dependency_key] = limiter
        return limiter

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _validate(
        self,
        dependency_key: Any,
        operation: Any,
        fallbacks: Sequence[Any],
        caller_key: Any,
        cache_inputs: Any,
        cache_key: Any,
        validate: Callable[[], Any] | None,
    ) -> str | None:
        """Fail fast on malformed input. Returns the resolved cache key."""
        if not isinstance(dependency_key, str) or not dependency_key.strip():
            raise ValidationError("dependency_key must be a non-empty string")
        if not callable(operation):
            raise ValidationError("operation must be callable", dependency_key=dependency_key)
        for index, fallback in enumerate(fallbacks):
            if not callable(fallback):
                raise ValidationError(
                    f"fallback {index} must be callable", dependency_key=dependency_key
                )
        if caller_key is not None and (not isinstance(caller_key, str) or not caller_key.strip()):
            raise ValidationError(
                "caller_key must be a non-empty string", dependency_key=dependency_key
            )
        if cache_key is not None and cache_inputs is not None:
            raise ValidationError(
                "pass cache_key or cache_inputs, not both", dependency_key=dependency_key
            )
        if cache_key is not None and (not isinstance(cache_key, str) or not cache_key):
            raise ValidationError("cache_key must be a non-empty string", dependency_key=dependency_key)

        if validate is not None:
            try:
                verdict = validate()
            except ValidationError:
                raise
            except (TypeError, ValueError) as exc:
                raise ValidationError(str(exc), dependency_key=dependency_key) from exc
            if verdict is False:
                raise ValidationError("input validation failed", dependency_key=dependency_key)

        if cache_key is not None:
            return f"{dependency_key}:{cache_key}"
        if cache_inputs is not None:
            try:
                return make_cache_key(dependency_key, cache_inputs)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"cache_inputs must be JSON-serialisable: {exc}", dependency_key=dependency_key
                ) from exc
        return None

    async def execute(
        self,
        dependency_key: DependencyKey,
        operation: Operation[T],
        *,
        fallbacks: Sequence[Operation[T]] = (),
        cache_inputs: Any = None,
        cache_key: str | None = None,
        caller_key: str | None = None,
        validate: Callable[[], Any] | None = None,
        retryable: Callable[[BaseException], bool] | None = None,
        request_id: str | None = None,
    ) -> OrchestratedResult[T]:
        """Run one protected call through the full pipeline.

        Args:
            dependency_key: Protected dependency; selects circuit, cache and
                rate-limit state.
            operation: Zero-argument callable returning an awaitable.
            fallbacks: Ordered zero-argument degraded alternatives.
            cache_inputs: JSON-serialisable call inputs; enables caching.
            cache_key: Explicit cache key (alternative to ``cache_inputs``).
            caller_key: Rate-limit identity (default: the dependency key).
            validate: Optional input check; raise ValidationError/ValueError
                or return False to reject.
            retryable: Override the retry predicate for this call.
            request_id: Propagate an upstream correlation id.

        Returns:
            OrchestratedResult with the value and its provenance.

        Raises:
            ValidationError: Malformed input.
            RateLimitError: Caller over quota.
            ServiceUnavailableError: Circuit open or primary and all
                fallbacks failed.
        """
        ctx = RequestContext.start(
            dependency_key if isinstance(dependency_key, str) else "",
            caller_key=caller_key or "",
            prefix=self._prefix,
            request_id=request_id,
        )
        with ctx.activate():
            try:
                result = await self._run(
                    ctx,
                    dependency_key,
                    operation,
                    fallbacks=fallbacks,
                    cache_inputs=cache_inputs,
                    cache_key=cache_key,
                    caller_key=caller_key,
                    validate=validate,
                    retryable=retryable,
                )
            except Exception as exc:
                self.metrics.record_request(
                    ctx.dependency_key, outcome="failure", elapsed_ms=ctx.elapsed_ms()
                )
                logger.warning(
                    "orchestrator: %s failed (%s) in %.1fms",
                    ctx.dependency_key,
                    getattr(exc, "code", type(exc).__name__),
                    ctx.elapsed_ms(),
                    extra=ctx.log_fields(),
                )
                raise

            outcome = "degraded" if result.degraded else "success"
            self.metrics.record_request(
                ctx.dependency_key, outcome=outcome, elapsed_ms=result.elapsed_ms
            )
            logger.info(
                "orchestrator: %s completed (%s%s) in %.1fms",
                ctx.dependency_key,
                outcome,
                ", cache" if result.from_cache else "",
                result.elapsed_ms,
                extra=ctx.log_fields(),
            )
            return result

    async def _run(
        self,
        ctx: RequestContext,
        dependency_key: DependencyKey,
        operation: Operation[T],
        *,
        fallbacks: Sequence[Operation[T]],
        cache_inputs: Any,
        cache_key: str | None,
        caller_key: str | None,
        validate: Callable[[], Any] | None,
        retryable: Callable[[BaseException], bool] | None,
    ) -> OrchestratedResult[T]:
        # 1. Validate
        try:
            resolved_key = self._validate(
                dependency_key, operation, fallbacks, caller_key, cache_inputs, cache_key, validate
            )
        except ValidationError:
            self.metrics.record_error("validation")
            raise

        config = self.config_for(dependency_key)
        state = _CallState()

        # 2. Rate limit
        decision = self.rate_limiter_for(dependency_key).try_acquire(caller_key or dependency_key)
        if not decision.allowed:
            self.metrics.record_rate_limited(dependency_key)
            self.metrics.record_error("rate_limit")
            raise RateLimitError(
                f"Rate limit exceeded for '{caller_key or dependency_key}' on {dependency_key}",
                retry_after_seconds=decision.retry_after,
                dependency_key=dependency_key,
            )

        # 3. Circuit
        admission = self._breaker.admit(dependency_key)
        if admission is None:
            self.metrics.record_circuit_rejected(dependency_key)
            rejection = ServiceUnavailableError(
                f"{dependency_key} is temporarily unavailable (circuit open)",
                dependency_key=dependency_key,
                reason="circuit_open",
                retry_after_seconds=self._breaker.retry_after(dependency_key),
            )
            logger.warning(
                "orchestrator: %s circuit open, using fallbacks", dependency_key, extra=ctx.log_fields()
            )
            return await self._degrade(ctx, rejection, fallbacks, state)

        # 4. Cache
        cache = self.cache_for(dependency_key) if resolved_key is not None else None
        if cache is not None and resolved_key is not None:
            cached = cache.get(resolved_key)
            if cached is not MISS:
                self.metrics.record_cache_hit(dependency_key)
                self._release_slot(admission)
                logger.debug(
                    "orchestrator: %s served from cache", dependency_key, extra=ctx.log_fields()
                )
                return OrchestratedResult(
                    value=cached,
                    request_id=ctx.request_id,
                    dependency_key=dependency_key,
                    from_cache=True,
                    elapsed_ms=ctx.elapsed_ms(),
                )
            self.metrics.record_cache_miss(dependency_key)

        # 5. Retry around the operation
        policy = config.retries.to_policy(retryable)

        async def attempt() -> T:
            state.attempts += 1
            return await operation()

        def on_retry(_attempt: int, _exc: BaseException, _delay: float) -> None:
            self.metrics.record_retry(dependency_key)

        try:
            value = await self._retry.execute(
                attempt, policy, label=dependency_key, on_retry=on_retry
            )
        except Exception as exc:
            failure = classify_exception(exc, dependency_key)
            if isinstance(failure, ValidationError):
                # The dependency rejected the input: not a dependency failure.
                self._release_slot(admission)
                self.metrics.record_error("validation")
                raise
            if isinstance(failure, RateLimitError):
                # Upstream quota (e.g. HTTP 429): the dependency is healthy.
                self._release_slot(admission)
                self.metrics.record_rate_limited(dependency_key)
                self.metrics.record_error("rate_limit")
                raise
            self._breaker.on_result(dependency_key, success=False, generation=admission.generation)
            self.metrics.record_error(failure_kind(failure))
            logger.warning(
                "orchestrator: %s primary failed after %d attempt(s): %s",
                dependency_key,
                state.attempts,
                failure.message,
                extra=ctx.log_fields(code=failure.code),
            )
            return await self._degrade(ctx, failure, fallbacks, state)
        except BaseException:
            # Cancelled mid-call: there is no outcome to report, but a HALF-OPEN
            # slot must not stay reserved forever.
            self._release_slot(admission)
            raise

        # 6. Success
        if cache is not None and resolved_key is not None:
            cache.set(resolved_key, value)
        self._breaker.on_result(dependency_key, success=True, generation=admission.generation)
        return OrchestratedResult(
            value=value,
            request_id=ctx.request_id,
            dependency_key=dependency_key,
            attempts=state.attempts,
            elapsed_ms=ctx.elapsed_ms(),
        )

    def _release_slot(self, admission: Admission) -> None:
        if admission.half_open:
            self._breaker.release(admission.key, admission.generation)

    def _on_circuit_state_change(
        self, dependency_key: DependencyKey, old_state: CircuitState, new_state: CircuitState
    ) -> None:
        self.metrics.record_circuit_state_change(dependency_key, old_state.value, new_state.value)
        if self._state_listener is not None:
            self._state_listener(dependency_key, old_state, new_state)

    def _on_failure_rate_alert(self, dependency_key: DependencyKey, failure_rate: float) -> None:
        # CircuitBreaker already logged the alert with its threshold.
        self.metrics.record_failure_rate_alert(dependency_key)

    async def _degrade(
        self,
        ctx: RequestContext,
        primary: Exception,
        fallbacks: Sequence[Operation[T]],
        state: _CallState,
    ) -> OrchestratedResult[T]:
        dependency_key = ctx.dependency_key
        chain = FallbackChain(
            dependency_key,
            on_attempt=lambda _i, ok: self.metrics.record_fallback(dependency_key, succeeded=ok),
        )
        try:
            degraded = await chain.resolve(primary, fallbacks)
        except ServiceUnavailableError:
            self.metrics.record_error("service_unavailable")
            raise
        except Exception as exc:
            failure = classify_exception(exc, dependency_key)
            self.metrics.record_error("service_unavailable")
            raise ServiceUnavailableError(
                f"{dependency_key} unavailable: {failure.message}",
                dependency_key=dependency_key,
                reason="exhausted",
                primary=failure.to_record(),
                fallback_failures=failure.fallback_failures,
            ) from exc

        return OrchestratedResult(
            value=degraded.value,
            request_id=ctx.request_id,
            dependency_key=dependency_key,
            degraded=True,
            fallback_index=degraded.fallback_index,
            degradation_reason=degraded.reason,
            attempts=state.attempts,
            elapsed_ms=ctx.elapsed_ms(),
        )

    # ------------------------------------------------------------------
    # Status and administration
    # ------------------------------------------------------------------

    def cache_size(self) -> int:
        return sum(len(cache) for cache in self._caches.values())

    def health(self) -> dict[str, Any]:
        """HEALTHY, or DEGRADED with the list of open/half-open circuits
        and circuits with a high recent failure rate."""
        issues: list[str] = []
        for key, snap in self._breaker.snapshot().items():
            if snap["state"] != CircuitState.CLOSED.value:
                issues.append(f"circuit '{key}' is {snap['state']}")
            if snap["high_failure_rate"]:
                issues.append(
                    f"circuit '{key}' failure rate {snap['failure_rate']:.0%} "
                    f"at or above {snap['failure_rate_threshold']:.0%}"
                )
        return {"status": "DEGRADED" if issues else "HEALTHY", "issues": issues}

    def status(self) -> dict[str, Any]:
        """Snapshot of circuits, caches, rate-limit windows and metrics."""
        return {
            **self.health(),
            "timestamp": datetime.now(UTC).isoformat(),
            "circuits": self._breaker.snapshot(),
            "cache": {
                "size": self.cache_size(),
                "per_dependency": {k: c.stats() for k, c in self._caches.items()},
            },
            "rate_limits": {
                "active_keys": {
                    k: limiter.active_keys() for k, limiter in self._limiters.items()
                },
            },
            "metrics": self.metrics.snapshot(),
            "config": {
                "default": self._default_config.to_dict(),
                "dependencies": {k: c.to_dict() for k, c in self._configs.items()},
            },
        }

    def error_report(self) -> dict[str, Any]:
        return {"timestamp": datetime.now(UTC).isoformat(), **self.metrics.error_report()}

    def clear_cache(self, dependency_key: DependencyKey | None = None) -> int:
        """Drop cached results (for one dependency, or all). Returns count removed."""
        if dependency_key is not None:
            cache = self._caches.get(dependency_key)
            return cache.clear() if cache else 0
        cleared = sum(cache.clear() for cache in self._caches.values())
        logger.info("ResilienceOrchestrator: cache cleared (%d entries)", cleared)
        return cleared

    def reset_circuits(self, dependency_key: DependencyKey | None = None) -> list[str]:
        """Force circuits to CLOSED. Returns the keys that were reset."""
        if dependency_key is not None:
            return [dependency_key] if self._breaker.reset(dependency_key) else []
        return self._breaker.reset_all()

    def prune_inactive(self, max_idle_seconds: float) -> dict[str, int]:
        """Evict idle rate-limit windows and idle closed circuits."""
        windows = sum(limiter.prune_inactive() for limiter in self._limiters.values())
        circuits = self._breaker.prune_inactive(max_idle_seconds)
        return {"rate_limit_keys": windows, "circuits": circuits}
