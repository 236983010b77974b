"""Tests for infrastructure/orchestrator.py — the full resilience pipeline.

Covers:
- Transient timeouts retried to success, result cached, circuit untouched
- Idempotence: identical cache key inside the TTL invokes the operation once
- Validation: fail fast, never retried, never touches circuit state
- Rate limiting: RateLimitError with retry_after, not a dependency failure
- Upstream 429 from the operation: propagated, circuit untouched
- Fallbacks: degraded results, exhausted → ServiceUnavailableError
- Circuit: opens after N failed calls, short-circuits to fallbacks,
  recovers through HALF-OPEN, cache hits do not consume probes
- Cancelled and late calls around HALF-OPEN, state-change listener,
  failure-rate alert surfaced in health
- Per-dependency isolation and configuration
- Status snapshot, error report, cache clear, circuit reset, pruning
- Interleaved concurrent calls

All tests use a fake clock and a recording sleep: no real waiting.
"""

from __future__ import annotations

import asyncio

import pytest

from infrastructure.circuit_breaker import CircuitState
from infrastructure.config import ResilienceConfig
from infrastructure.errors import (
    DependencyError,
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
)
from infrastructure.orchestrator import ResilienceOrchestrator
from support import FAST_CONFIG, CodedError, ScriptedOperation

DRUG_API = "drugInteractionAPI"
INPUTS = {"patient_id": "p-001", "drug": "warfarin"}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _fail_calls(orchestrator: ResilienceOrchestrator, n: int, key: str = DRUG_API) -> None:
    """Run ``n`` orchestrated calls that exhaust their retries."""
    for _ in range(n):
        with pytest.raises(ServiceUnavailableError):
            await orchestrator.execute(key, ScriptedOperation(ConnectionError("down")))


def _with(options: dict) -> ResilienceConfig:
    return ResilienceConfig.from_mapping(options, base=FAST_CONFIG)


class GatedOperation:
    """Operation that blocks until ``gate`` is set, then returns or raises ``outcome``."""

    def __init__(self, outcome: object) -> None:
        self.outcome = outcome
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self) -> object:
        self.started.set()
        await self.gate.wait()
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


# ---------------------------------------------------------------------------
# Happy path, retries and caching
# ---------------------------------------------------------------------------


class TestSuccessPath:
    @pytest.mark.asyncio
    async def test_timeouts_then_success(self, orchestrator, sleep) -> None:
        op = ScriptedOperation(CodedError("TIMEOUT"), CodedError("TIMEOUT"), {"interactions": []})

        result = await orchestrator.execute(DRUG_API, op, cache_inputs=INPUTS)

        assert result.value == {"interactions": []}
        assert result.attempts == 3
        assert result.from_cache is False
        assert result.degraded is False
        assert op.calls == 3
        assert sleep.delays == pytest.approx([0.1, 0.2])

        metrics = orchestrator.metrics
        assert metrics.successful_requests == 1
        assert metrics.failed_requests == 0
        assert metrics.retry_attempts == 2
        assert orchestrator.circuit_breaker.consecutive_failures(DRUG_API) == 0
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_repeat_call_served_from_cache(self, orchestrator) -> None:
        op = ScriptedOperation(CodedError("TIMEOUT"), CodedError("TIMEOUT"), {"interactions": []})
        await orchestrator.execute(DRUG_API, op, cache_inputs=INPUTS)

        repeat = await orchestrator.execute(DRUG_API, op, cache_inputs=dict(INPUTS))

        assert repeat.value == {"interactions": []}
        assert repeat.from_cache is True
        assert repeat.attempts == 0
        assert op.calls == 3
        assert orchestrator.metrics.cache_hits == 1
        assert orchestrator.metrics.successful_requests == 2

    @pytest.mark.asyncio
    async def test_identical_cache_key_invokes_operation_once(self, orchestrator) -> None:
        op = ScriptedOperation({"formulary": ["A"]})

        first = await orchestrator.execute("formularyAPI", op, cache_key="plan-42")
        second = await orchestrator.execute("formularyAPI", op, cache_key="plan-42")

        assert first.value == second.value
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, orchestrator, clock) -> None:
        op = ScriptedOperation("v1", "v2")
        await orchestrator.execute(DRUG_API, op, cache_inputs=INPUTS)
        clock.advance(30)

        result = await orchestrator.execute(DRUG_API, op, cache_inputs=INPUTS)

        assert result.value == "v2"
        assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_no_cache_inputs_means_no_caching(self, orchestrator) -> None:
        op = ScriptedOperation("ok")
        await orchestrator.execute(DRUG_API, op)
        await orchestrator.execute(DRUG_API, op)
        assert op.calls == 2
        assert orchestrator.cache_size() == 0

    @pytest.mark.asyncio
    async def test_request_id_generated_and_propagated(self, orchestrator) -> None:
        generated = await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))
        propagated = await orchestrator.execute(
            DRUG_API, ScriptedOperation("ok"), request_id="upstream-123"
        )
        assert generated.request_id.startswith("test_")
        assert propagated.request_id == "upstream-123"
        assert propagated.provenance()["request_id"] == "upstream-123"

    @pytest.mark.asyncio
    async def test_retryable_override(self, orchestrator) -> None:
        op = ScriptedOperation(ConnectionError("flaky"), "ok")
        with pytest.raises(ServiceUnavailableError):
            await orchestrator.execute(DRUG_API, op, retryable=lambda exc: False)
        assert op.calls == 1


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"dependency_key": ""},
            {"dependency_key": "   "},
            {"operation": "not callable"},
            {"fallbacks": [None]},
            {"caller_key": ""},
            {"cache_key": "k", "cache_inputs": {"a": 1}},
            {"cache_inputs": {"when": object()}},
            {"validate": lambda: False},
        ],
    )
    async def test_invalid_input_fails_fast(self, orchestrator, kwargs: dict) -> None:
        op = ScriptedOperation("ok")
        call = {"dependency_key": DRUG_API, "operation": op, **kwargs}

        with pytest.raises(ValidationError):
            await orchestrator.execute(call.pop("dependency_key"), call.pop("operation"), **call)

        assert op.calls == 0
        assert orchestrator.circuit_breaker.keys() == []
        assert orchestrator.metrics.errors["validation"] == 1
        assert orchestrator.metrics.failed_requests == 1

    @pytest.mark.asyncio
    async def test_validate_value_error_wrapped(self, orchestrator) -> None:
        def check() -> None:
            raise ValueError("dose must be positive")

        with pytest.raises(ValidationError, match="dose must be positive"):
            await orchestrator.execute(DRUG_API, ScriptedOperation("ok"), validate=check)

    @pytest.mark.asyncio
    async def test_operation_validation_error_not_retried_or_counted(self, orchestrator) -> None:
        op = ScriptedOperation(ValidationError("unknown drug code"))
        fallback = ScriptedOperation("degraded")

        with pytest.raises(ValidationError):
            await orchestrator.execute(DRUG_API, op, fallbacks=[fallback])

        assert op.calls == 1
        assert fallback.calls == 0
        assert orchestrator.circuit_breaker.consecutive_failures(DRUG_API) == 0


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_over_quota_rejected(self, orchestrator, clock) -> None:
        orchestrator.configure_dependency(DRUG_API, _with({"rateLimit.requestsPerMinute": 2}))
        op = ScriptedOperation("ok")
        await orchestrator.execute(DRUG_API, op, caller_key="nurse-1")
        clock.advance(5)
        await orchestrator.execute(DRUG_API, op, caller_key="nurse-1")

        with pytest.raises(RateLimitError) as exc_info:
            await orchestrator.execute(DRUG_API, op, caller_key="nurse-1")

        assert exc_info.value.retry_after_seconds == pytest.approx(55.0)
        assert op.calls == 2
        assert orchestrator.metrics.rate_limit_hits == 1
        assert orchestrator.metrics.errors["rate_limit"] == 1
        assert orchestrator.circuit_breaker.consecutive_failures(DRUG_API) == 0

    @pytest.mark.asyncio
    async def test_quota_is_per_caller(self, orchestrator) -> None:
        orchestrator.configure_dependency(DRUG_API, _with({"rateLimit.requestsPerMinute": 1}))
        await orchestrator.execute(DRUG_API, ScriptedOperation("ok"), caller_key="nurse-1")
        result = await orchestrator.execute(DRUG_API, ScriptedOperation("ok"), caller_key="nurse-2")
        assert result.value == "ok"

    @pytest.mark.asyncio
    async def test_rejected_call_does_not_open_circuit(self, orchestrator) -> None:
        orchestrator.configure_dependency(DRUG_API, _with({"rateLimit.requestsPerMinute": 1}))
        await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))
        for _ in range(10):
            with pytest.raises(RateLimitError):
                await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_upstream_429_propagates_without_tripping(self, orchestrator) -> None:
        upstream = RateLimitError("HTTP 429 from drug API", retry_after_seconds=1.0)
        op = ScriptedOperation(upstream)

        for _ in range(5):
            with pytest.raises(RateLimitError) as exc_info:
                await orchestrator.execute(DRUG_API, op, fallbacks=[ScriptedOperation("stale")])
            assert exc_info.value.retry_after_seconds == 1.0

        assert op.calls == 5
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED
        assert orchestrator.circuit_breaker.consecutive_failures(DRUG_API) == 0
        assert orchestrator.metrics.rate_limit_hits == 5
        assert orchestrator.metrics.errors["rate_limit"] == 5
        assert orchestrator.metrics.errors["dependency"] == 0
        assert orchestrator.metrics.circuit_breaker_trips == 0

    @pytest.mark.asyncio
    async def test_upstream_429_in_half_open_frees_slot(self, orchestrator, clock) -> None:
        await _fail_calls(orchestrator, 5)
        clock.advance(60)

        with pytest.raises(RateLimitError):
            await orchestrator.execute(
                DRUG_API, ScriptedOperation(RateLimitError("429", retry_after_seconds=1.0))
            )
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.HALF_OPEN
        assert orchestrator.circuit_breaker.status(DRUG_API)["half_open_in_flight"] == 0

        result = await orchestrator.execute(DRUG_API, ScriptedOperation("back"))
        assert result.value == "back"
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_fallback_result_marked_degraded(self, orchestrator) -> None:
        op = ScriptedOperation(ConnectionError("pharmacy down"))
        fallback = ScriptedOperation({"interactions": [], "source": "local-rules"})

        result = await orchestrator.execute(
            DRUG_API, op, fallbacks=[fallback], cache_inputs=INPUTS
        )

        assert result.value == {"interactions": [], "source": "local-rules"}
        assert result.degraded is True
        assert result.fallback_index == 0
        assert result.degradation_reason == "DEPENDENCY_ERROR"
        assert result.attempts == 3
        assert orchestrator.metrics.degraded_requests == 1
        assert orchestrator.metrics.fallback_invocations == 1
        assert orchestrator.circuit_breaker.consecutive_failures(DRUG_API) == 1
        # Degraded answers are never cached.
        assert orchestrator.cache_size() == 0

    @pytest.mark.asyncio
    async def test_all_fallbacks_fail(self, orchestrator) -> None:
        op = ScriptedOperation(CodedError("TIMEOUT"))
        fallbacks = [ScriptedOperation(RuntimeError("a")), ScriptedOperation(KeyError("b"))]

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await orchestrator.execute(DRUG_API, op, fallbacks=fallbacks)

        exc = exc_info.value
        assert exc.reason == "exhausted"
        assert exc.dependency_key == DRUG_API
        assert exc.primary is not None and exc.primary.code == "TIMEOUT"
        assert len(exc.fallback_failures) == 2
        assert orchestrator.metrics.failed_requests == 1
        assert orchestrator.metrics.errors["timeout"] == 1
        assert orchestrator.metrics.errors["service_unavailable"] == 1

    @pytest.mark.asyncio
    async def test_no_fallbacks_raises_service_unavailable(self, orchestrator) -> None:
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await orchestrator.execute(DRUG_API, ScriptedOperation(RuntimeError("boom")))
        assert isinstance(exc_info.value.__cause__, DependencyError)
        assert exc_info.value.fallback_failures == []


# ---------------------------------------------------------------------------
# Circuit breaking
# ---------------------------------------------------------------------------


class TestCircuit:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_failed_calls(self, orchestrator) -> None:
        await _fail_calls(orchestrator, 5)

        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.OPEN
        assert orchestrator.metrics.circuit_breaker_trips == 1

    @pytest.mark.asyncio
    async def test_open_circuit_skips_operation_and_uses_fallback(self, orchestrator) -> None:
        await _fail_calls(orchestrator, 5)
        op = ScriptedOperation("live")

        result = await orchestrator.execute(
            DRUG_API, op, fallbacks=[ScriptedOperation("cached-formulary")]
        )

        assert op.calls == 0
        assert result.value == "cached-formulary"
        assert result.degraded is True
        assert result.degradation_reason == "SERVICE_UNAVAILABLE"
        assert orchestrator.metrics.circuit_breaker_rejections == 1

    @pytest.mark.asyncio
    async def test_open_circuit_without_fallback(self, orchestrator) -> None:
        await _fail_calls(orchestrator, 5)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await orchestrator.execute(DRUG_API, ScriptedOperation("live"))

        assert exc_info.value.reason == "circuit_open"
        assert 0 < exc_info.value.retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_recovers_through_half_open(self, orchestrator, clock) -> None:
        await _fail_calls(orchestrator, 5)
        clock.advance(60)

        result = await orchestrator.execute(DRUG_API, ScriptedOperation("back"))

        assert result.value == "back"
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED
        assert orchestrator.health()["status"] == "HEALTHY"

    @pytest.mark.asyncio
    async def test_failed_probe_reopens(self, orchestrator, clock) -> None:
        await _fail_calls(orchestrator, 5)
        clock.advance(60)

        await _fail_calls(orchestrator, 1)

        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.OPEN
        assert orchestrator.metrics.circuit_breaker_trips == 2

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_consume_probe(self, orchestrator, clock) -> None:
        orchestrator.configure_dependency(DRUG_API, _with({"cache.ttlSeconds": 3600}))
        await orchestrator.execute(DRUG_API, ScriptedOperation("cached"), cache_inputs=INPUTS)
        await _fail_calls(orchestrator, 5)
        clock.advance(60)

        hit = await orchestrator.execute(DRUG_API, ScriptedOperation("x"), cache_inputs=INPUTS)
        assert hit.from_cache is True
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.HALF_OPEN

        probe = await orchestrator.execute(DRUG_API, ScriptedOperation("live"))
        assert probe.value == "live"
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_dependencies_isolated(self, orchestrator) -> None:
        await _fail_calls(orchestrator, 5, key="pharmacyAPI")

        result = await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))

        assert result.value == "ok"
        assert orchestrator.circuit_breaker.state("pharmacyAPI") is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_per_dependency_threshold(self, clock, sleep) -> None:
        orchestrator = ResilienceOrchestrator(
            FAST_CONFIG,
            dependency_configs={"aiInference": _with({"circuitBreaker.failureThreshold": 2})},
            clock=clock,
            sleep=sleep,
        )
        await _fail_calls(orchestrator, 2, key="aiInference")
        await _fail_calls(orchestrator, 2, key=DRUG_API)

        assert orchestrator.circuit_breaker.state("aiInference") is CircuitState.OPEN
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_half_open_call_frees_slot(self, orchestrator, clock) -> None:
        await _fail_calls(orchestrator, 5)
        clock.advance(60)
        stuck = GatedOperation("never")

        task = asyncio.create_task(orchestrator.execute(DRUG_API, stuck))
        await stuck.started.wait()
        assert orchestrator.circuit_breaker.status(DRUG_API)["half_open_in_flight"] == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.HALF_OPEN
        assert orchestrator.circuit_breaker.status(DRUG_API)["half_open_in_flight"] == 0
        op = ScriptedOperation("back")
        result = await orchestrator.execute(DRUG_API, op)
        assert op.calls == 1
        assert result.degraded is False
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_slow_call_from_before_trip_does_not_decide_half_open(
        self, orchestrator, clock
    ) -> None:
        slow = GatedOperation(ConnectionError("late failure"))
        slow_task = asyncio.create_task(orchestrator.execute(DRUG_API, slow))
        await slow.started.wait()

        await _fail_calls(orchestrator, 5)
        clock.advance(60)
        trial = GatedOperation("recovered")
        trial_task = asyncio.create_task(orchestrator.execute(DRUG_API, trial))
        await trial.started.wait()

        slow.gate.set()
        with pytest.raises(ServiceUnavailableError):
            await slow_task
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.HALF_OPEN
        assert orchestrator.circuit_breaker.status(DRUG_API)["half_open_in_flight"] == 1

        trial.gate.set()
        result = await trial_task
        assert result.value == "recovered"
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED
        assert orchestrator.metrics.circuit_breaker_trips == 1


# ---------------------------------------------------------------------------
# Circuit events and failure-rate alerts
# ---------------------------------------------------------------------------


class TestCircuitEvents:
    @pytest.mark.asyncio
    async def test_state_change_listener_and_metrics(self, clock, sleep) -> None:
        seen: list[tuple[str, CircuitState, CircuitState]] = []
        orchestrator = ResilienceOrchestrator(
            FAST_CONFIG,
            clock=clock,
            sleep=sleep,
            on_state_change=lambda key, old, new: seen.append((key, old, new)),
        )
        await _fail_calls(orchestrator, 5)
        clock.advance(60)
        await orchestrator.execute(DRUG_API, ScriptedOperation("back"))

        assert seen == [
            (DRUG_API, CircuitState.CLOSED, CircuitState.OPEN),
            (DRUG_API, CircuitState.OPEN, CircuitState.HALF_OPEN),
            (DRUG_API, CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]
        assert orchestrator.metrics.circuit_state_changes == 3
        assert orchestrator.metrics.snapshot()["circuit_state_changes"] == 3

    @pytest.mark.asyncio
    async def test_high_failure_rate_reported_in_health(self, clock, sleep) -> None:
        orchestrator = ResilienceOrchestrator(
            FAST_CONFIG,
            dependency_configs={
                DRUG_API: _with(
                    {
                        "circuitBreaker.failureThreshold": 100,
                        "circuitBreaker.failureRateWindow": 4,
                    }
                )
            },
            clock=clock,
            sleep=sleep,
        )
        await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))
        await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))
        await _fail_calls(orchestrator, 1)
        assert orchestrator.health()["status"] == "HEALTHY"

        await _fail_calls(orchestrator, 1)

        health = orchestrator.health()
        assert health["status"] == "DEGRADED"
        assert health["issues"] == [f"circuit '{DRUG_API}' failure rate 50% at or above 50%"]
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED
        assert orchestrator.metrics.failure_rate_alerts == 1
        assert orchestrator.error_report()["failure_rate_alerts"] == 1

    @pytest.mark.asyncio
    async def test_failure_rate_alert_clears_on_recovery(self, clock, sleep) -> None:
        orchestrator = ResilienceOrchestrator(
            FAST_CONFIG,
            dependency_configs={
                DRUG_API: _with(
                    {
                        "circuitBreaker.failureThreshold": 100,
                        "circuitBreaker.failureRateWindow": 4,
                    }
                )
            },
            clock=clock,
            sleep=sleep,
        )
        await _fail_calls(orchestrator, 4)
        assert orchestrator.health()["status"] == "DEGRADED"

        for _ in range(3):
            await orchestrator.execute(DRUG_API, ScriptedOperation("ok"))

        assert orchestrator.health() == {"status": "HEALTHY", "issues": []}
        assert orchestrator.metrics.failure_rate_alerts == 1


# ---------------------------------------------------------------------------
# Status and administration
# ---------------------------------------------------------------------------


class TestAdministration:
    @pytest.mark.asyncio
    async def test_status_snapshot(self, orchestrator) -> None:
        await orchestrator.execute(
            DRUG_API, ScriptedOperation("ok"), cache_inputs=INPUTS, caller_key="nurse-1"
        )
        await _fail_calls(orchestrator, 5, key="pharmacyAPI")

        status = orchestrator.status()

        assert status["status"] == "DEGRADED"
        assert status["issues"] == ["circuit 'pharmacyAPI' is open"]
        assert status["circuits"]["pharmacyAPI"]["state"] == "open"
        assert status["circuits"][DRUG_API]["state"] == "closed"
        assert status["cache"]["size"] == 1
        assert status["rate_limits"]["active_keys"][DRUG_API] == ["nurse-1"]
        assert status["metrics"]["successful_requests"] == 1
        assert status["metrics"]["failed_requests"] == 5
        assert status["config"]["default"]["retries.maxAttempts"] == 3

    @pytest.mark.asyncio
    async def test_error_report(self, orchestrator) -> None:
        await _fail_calls(orchestrator, 2)
        report = orchestrator.error_report()
        assert report["total_errors"] == 4
        assert report["error_breakdown"]["dependency"] == 2
        assert report["error_breakdown"]["service_unavailable"] == 2
        assert "timestamp" in report

    @pytest.mark.asyncio
    async def test_clear_cache(self, orchestrator) -> None:
        await orchestrator.execute(DRUG_API, ScriptedOperation("a"), cache_key="1")
        await orchestrator.execute("pharmacyAPI", ScriptedOperation("b"), cache_key="1")

        assert orchestrator.clear_cache(DRUG_API) == 1
        assert orchestrator.clear_cache() == 1
        assert orchestrator.cache_size() == 0

    @pytest.mark.asyncio
    async def test_reset_circuits(self, orchestrator) -> None:
        await _fail_calls(orchestrator, 5)
        await _fail_calls(orchestrator, 5, key="pharmacyAPI")

        assert orchestrator.reset_circuits(DRUG_API) == [DRUG_API]
        assert orchestrator.circuit_breaker.state(DRUG_API) is CircuitState.CLOSED
        assert orchestrator.circuit_breaker.state("pharmacyAPI") is CircuitState.OPEN
        assert sorted(orchestrator.reset_circuits()) == sorted([DRUG_API, "pharmacyAPI"])
        assert orchestrator.reset_circuits("unknown") == []

    @pytest.mark.asyncio
    async def test_prune_inactive(self, orchestrator, clock) -> None:
        await orchestrator.execute(DRUG_API, ScriptedOperation("ok"), caller_key="nurse-1")
        clock.advance(3600)

        pruned = orchestrator.prune_inactive(max_idle_seconds=600)

        assert pruned == {"rate_limit_keys": 1, "circuits": 1}
        assert orchestrator.circuit_breaker.keys() == []

    @pytest.mark.asyncio
    async def test_configure_dependency_rebuilds_cache(self, orchestrator) -> None:
        await orchestrator.execute(DRUG_API, ScriptedOperation("a"), cache_key="1")
        orchestrator.configure_dependency(DRUG_API, _with({"cache.maxEntries": 1}))

        assert orchestrator.cache_for(DRUG_API).max_entries == 1
        assert orchestrator.cache_size() == 0

    def test_instances_do_not_share_state(self) -> None:
        a = ResilienceOrchestrator(FAST_CONFIG)
        b = ResilienceOrchestrator(FAST_CONFIG)
        a.cache_for(DRUG_API).set("k", 1)
        assert b.cache_size() == 0
        assert a.metrics is not b.metrics


# ---------------------------------------------------------------------------
# Interleaving
# ---------------------------------------------------------------------------


class TestInterleaving:
    @pytest.mark.asyncio
    async def test_concurrent_calls_keep_counters_consistent(self, orchestrator) -> None:
        async def lookup(i: int) -> int:
            await asyncio.sleep(0)
            return i

        results = await asyncio.gather(
            *(orchestrator.execute(DRUG_API, lambda i=i: lookup(i)) for i in range(20))
        )

        assert [r.value for r in results] == list(range(20))
        assert len({r.request_id for r in results}) == 20
        assert orchestrator.metrics.successful_requests == 20
        assert orchestrator.circuit_breaker.status(DRUG_API)["total_requests"] == 20
