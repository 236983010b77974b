"""Per-dependency circuit breaker registry.

Prevents cascading failures when an external dependency (an AI inference
endpoint, a drug-interaction lookup, a pharmacy integration) is degraded.
One ``CircuitRecord`` is kept per dependency key; thresholds and timeouts
are per dependency, not global.

    CLOSED    — Normal operation. Failures increment a consecutive counter;
                reaching ``failure_threshold`` opens the circuit. Any success
                resets the counter to 0.
    OPEN      — Calls are refused (callers go straight to their fallbacks)
                until ``reset_timeout_ms`` has elapsed since the last failure.
    HALF-OPEN — Recovery probe. At most ``half_open_max_probes`` probes may be
                in flight; further calls are treated as OPEN. A run of
                ``success_threshold`` probe successes closes the circuit and
                resets all counters. Any probe failure reopens it immediately.

State machine::

    CLOSED ──(N consecutive failures)──→ OPEN ──(reset timeout)──→ HALF-OPEN
      ↑                                                                 │
      └──────────────(success_threshold successes)─────────────────────┘
                                         OPEN ←──(any failure)──────────┘

Every state change goes through one of the transition functions
(``_trip``, ``_begin_probe``, ``_close``); nothing else assigns ``state``.
Each transition bumps the record's ``generation``. ``admit`` hands out an
``Admission`` stamped with the generation it was granted in, and outcomes
reported for an older generation only update statistics: a slow call that
was admitted while CLOSED cannot consume a HALF-OPEN slot or count
towards closing the circuit.

Listeners (``on_trip``, ``on_state_change``, ``on_alert``) run after the
lock is released, in the order the events happened.

Usage::

    from infrastructure.circuit_breaker import CircuitBreaker
    from infrastructure.config import CircuitBreakerConfig

    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=5))

    admission = breaker.admit("drugInteractionAPI")
    if admission is None:
        return await fallback()
    try:
        result = await op()
    except Exception:
        breaker.on_result("drugInteractionAPI", success=False, generation=admission.generation)
        raise
    breaker.on_result("drugInteractionAPI", success=True, generation=admission.generation)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from infrastructure.config import DEFAULT_CIRCUIT_BREAKER_CONFIG, CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker state machine states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


StateChangeListener = Callable[[str, CircuitState, CircuitState], None]
AlertListener = Callable[[str, float], None]


@dataclass
class CircuitStats:
    """Runtime statistics for one circuit."""

    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0  # calls refused because circuit was OPEN
    trips: int = 0
    state_changes: list[tuple[str, float]] = field(default_factory=list)

    def record_state_change(self, new_state: CircuitState) -> None:
        """Record a state transition with wall-clock timestamp."""
        self.state_changes.append((new_state.value, time.time()))
        # Keep the tail only; long-lived processes flap many times.
        del self.state_changes[:-20]


@dataclass(frozen=True)
class Admission:
    """Permission for one call, granted by ``CircuitBreaker.admit``.

    Attributes:
        key: Dependency key.
        generation: Circuit generation the call was admitted in. Pass it
            back to ``on_result``/``release``.
        half_open: True if the call holds one of the HALF-OPEN slots.
    """

    key: str
    generation: int
    half_open: bool = False


@dataclass
class CircuitRecord:
    """Mutable state for one dependency key. Owned by one CircuitBreaker.

    Times are monotonic-clock seconds.
    """

    key: str
    config: CircuitBreakerConfig
    state: CircuitState = CircuitState.CLOSED
    generation: int = 0
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    consecutive_half_open_successes: int = 0
    half_open_in_flight: int = 0
    total_requests: int = 0
    last_activity: float = 0.0
    recent_outcomes: deque[bool] = field(default_factory=deque)
    high_failure_rate: bool = False
    stats: CircuitStats = field(default_factory=CircuitStats)

    @property
    def failure_rate(self) -> float:
        """Fraction of failures among the recent outcomes (0.0 when empty)."""
        if not self.recent_outcomes:
            return 0.0
        return self.recent_outcomes.count(False) / len(self.recent_outcomes)


class CircuitBreaker:
    """Keyed circuit breaker: one independent state machine per dependency.

    Args:
        default_config: Thresholds for keys without an explicit override.
        overrides: Per-key configuration.
        clock: Monotonic time source, injectable for tests.
        on_trip: Called with the key whenever a circuit trips to OPEN.
        on_state_change: Called with ``(key, old_state, new_state)`` on every
            transition, including recovery to HALF_OPEN and CLOSED.
        on_alert: Called with ``(key, failure_rate)`` when a circuit's recent
            failure rate reaches ``failure_rate_threshold``.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig = DEFAULT_CIRCUIT_BREAKER_CONFIG,
        *,
        overrides: dict[str, CircuitBreakerConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Callable[[str], None] | None = None,
        on_state_change: StateChangeListener | None = None,
        on_alert: AlertListener | None = None,
    ) -> None:
        self._default = default_config
        self._overrides: dict[str, CircuitBreakerConfig] = dict(overrides or {})
        self._clock = clock
        self._on_trip = on_trip
        self._on_state_change = on_state_change
        self._on_alert = on_alert
        self._records: dict[str, CircuitRecord] = {}
        self._pending: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, key: str, config: CircuitBreakerConfig) -> None:
        """Set thresholds for ``key``. Applies to an existing record too."""
        with self._lock:
            self._overrides[key] = config
            record = self._records.get(key)
            if record is not None:
                record.config = config
                record.recent_outcomes = deque(
                    record.recent_outcomes, maxlen=config.failure_rate_window
                )

    def config_for(self, key: str) -> CircuitBreakerConfig:
        return self._overrides.get(key, self._default)

    def _record(self, key: str) -> CircuitRecord:
        """Get or create the record for ``key``. Must be called with lock held."""
        record = self._records.get(key)
        if record is None:
            config = self.config_for(key)
            record = CircuitRecord(
                key=key,
                config=config,
                last_activity=self._clock(),
                recent_outcomes=deque(maxlen=config.failure_rate_window),
            )
            self._records[key] = record
        return record

    # ------------------------------------------------------------------
    # Transitions (lock held)
    # ------------------------------------------------------------------

    def _transition(self, record: CircuitRecord, new_state: CircuitState) -> None:
        old_state = record.state
        record.state = new_state
        record.generation += 1
        record.stats.record_state_change(new_state)
        logger.warning(
            "CircuitBreaker '%s': %s → %s",
            record.key,
            old_state.value.upper(),
            new_state.value.upper(),
        )
        if self._on_state_change is not None:
            self._pending.append(partial(self._on_state_change, record.key, old_state, new_state))

    def _trip(self, record: CircuitRecord, now: float) -> None:
        """CLOSED/HALF_OPEN → OPEN."""
        record.last_failure_time = now
        record.consecutive_half_open_successes = 0
        record.half_open_in_flight = 0
        record.stats.trips += 1
        self._transition(record, CircuitState.OPEN)
        if self._on_trip is not None:
            self._pending.append(partial(self._on_trip, record.key))

    def _begin_probe(self, record: CircuitRecord) -> None:
        """OPEN → HALF_OPEN."""
        record.consecutive_half_open_successes = 0
        record.half_open_in_flight = 0
        self._transition(record, CircuitState.HALF_OPEN)

    def _close(self, record: CircuitRecord) -> None:
        """HALF_OPEN (or forced) → CLOSED, zeroing every counter."""
        record.consecutive_failures = 0
        record.consecutive_half_open_successes = 0
        record.half_open_in_flight = 0
        if record.state is not CircuitState.CLOSED:
            self._transition(record, CircuitState.CLOSED)

    def _force_close(self, record: CircuitRecord) -> None:
        """Admin reset: CLOSED with a fresh generation and no failure history."""
        if record.state is CircuitState.CLOSED:
            # No transition, but calls admitted before the reset are still stale.
            record.generation += 1
        self._close(record)
        record.last_failure_time = None
        record.recent_outcomes.clear()
        record.high_failure_rate = False

    def _reset_elapsed(self, record: CircuitRecord, now: float) -> bool:
        if record.last_failure_time is None:
            return True
        return now - record.last_failure_time >= record.config.reset_timeout_seconds

    def _observe(self, record: CircuitRecord, success: bool) -> None:
        """Feed the failure-rate window and raise or clear the alert."""
        record.recent_outcomes.append(success)
        if len(record.recent_outcomes) < record.config.failure_rate_window:
            return
        rate = record.failure_rate
        exceeded = rate >= record.config.failure_rate_threshold
        if exceeded and not record.high_failure_rate:
            record.high_failure_rate = True
            logger.error(
                "CircuitBreaker '%s': HIGH FAILURE RATE %.0f%% over last %d calls (threshold %.0f%%)",
                record.key,
                rate * 100,
                len(record.recent_outcomes),
                record.config.failure_rate_threshold * 100,
            )
            if self._on_alert is not None:
                self._pending.append(partial(self._on_alert, record.key, rate))
        elif not exceeded and record.high_failure_rate:
            record.high_failure_rate = False
            logger.info(
                "CircuitBreaker '%s': failure rate back to %.0f%%", record.key, rate * 100
            )

    def _notify(self) -> None:
        """Run listener callbacks queued by transitions. Lock must NOT be held."""
        with self._lock:
            pending, self._pending = self._pending, []
        for callback in pending:
            try:
                callback()
            except Exception:
                logger.exception("CircuitBreaker: listener %r failed", callback)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def admit(self, key: str) -> Admission | None:
        """Admit one call to ``key``, or return None if the circuit refuses it.

        In HALF_OPEN an admission holds a probe slot; the caller must report
        the outcome through ``on_result`` or hand the slot back through
        ``release``.
        """
        with self._lock:
            now = self._clock()
            record = self._record(key)
            record.total_requests += 1
            record.last_activity = now
            admission = self._admit_locked(record, now)
        self._notify()
        return admission

    def _admit_locked(self, record: CircuitRecord, now: float) -> Admission | None:
        if record.state is CircuitState.OPEN:
            if not self._reset_elapsed(record, now):
                record.stats.rejected_calls += 1
                return None
            self._begin_probe(record)

        if record.state is CircuitState.HALF_OPEN:
            if record.half_open_in_flight >= record.config.half_open_max_probes:
                record.stats.rejected_calls += 1
                return None
            record.half_open_in_flight += 1
            return Admission(record.key, record.generation, half_open=True)

        return Admission(record.key, record.generation)

    def allow(self, key: str) -> bool:
        """Return True if a call to ``key`` may proceed.

        Same bookkeeping as ``admit``; use ``admit`` when calls can overlap
        a state change, so late outcomes are recognised as stale.
        """
        return self.admit(key) is not None

    def on_result(self, key: str, success: bool, generation: int | None = None) -> CircuitState:
        """Report the outcome of a call that ``admit``/``allow`` let through.

        Args:
            key: Dependency key.
            success: True if the dependency answered successfully.
            generation: ``Admission.generation`` of the call. When it no
                longer matches the circuit, the outcome is counted in the
                statistics only and leaves the state machine untouched.

        Returns:
            The circuit state after applying the result.
        """
        with self._lock:
            now = self._clock()
            record = self._record(key)
            record.last_activity = now
            self._observe(record, success)
            if success:
                record.last_success_time = now
                record.stats.successful_calls += 1
            else:
                record.stats.failed_calls += 1

            if generation is not None and generation != record.generation:
                logger.debug(
                    "CircuitBreaker '%s': outcome from generation %d ignored (now %d)",
                    key,
                    generation,
                    record.generation,
                )
            elif success:
                self._apply_success(record)
            else:
                self._apply_failure(record, now)
            state = record.state

        self._notify()
        return state

    def _apply_success(self, record: CircuitRecord) -> None:
        if record.state is CircuitState.HALF_OPEN:
            record.half_open_in_flight = max(0, record.half_open_in_flight - 1)
            record.consecutive_half_open_successes += 1
            if record.consecutive_half_open_successes >= record.config.success_threshold:
                self._close(record)
                logger.info("CircuitBreaker '%s': dependency recovered", record.key)
        elif record.state is CircuitState.CLOSED:
            record.consecutive_failures = 0

    def _apply_failure(self, record: CircuitRecord, now: float) -> None:
        record.consecutive_failures += 1
        record.last_failure_time = now
        if record.state is CircuitState.HALF_OPEN:
            # Probe failed: straight back to OPEN
            self._trip(record, now)
        elif (
            record.state is CircuitState.CLOSED
            and record.consecutive_failures >= record.config.failure_threshold
        ):
            self._trip(record, now)
            logger.error(
                "CircuitBreaker '%s': TRIPPED after %d consecutive failures",
                record.key,
                record.consecutive_failures,
            )

    def release(self, key: str, generation: int | None = None) -> None:
        """Give back a HALF_OPEN probe slot without reporting an outcome.

        Used when an admitted call never produced a dependency outcome:
        served from cache, rejected by the dependency as invalid or over
        quota, or cancelled while in flight. A slot from an older generation
        is already void and is not given back twice.
        """
        with self._lock:
            record = self._records.get(key)
            if record is None or record.state is not CircuitState.HALF_OPEN:
                return
            if generation is not None and generation != record.generation:
                return
            record.half_open_in_flight = max(0, record.half_open_in_flight - 1)

    def state(self, key: str) -> CircuitState:
        """Current state for ``key`` (CLOSED for unknown keys)."""
        with self._lock:
            record = self._records.get(key)
            return record.state if record else CircuitState.CLOSED

    def consecutive_failures(self, key: str) -> int:
        with self._lock:
            record = self._records.get(key)
            return record.consecutive_failures if record else 0

    def retry_after(self, key: str) -> float:
        """Seconds until an OPEN circuit will admit a probe (0.0 otherwise)."""
        with self._lock:
            record = self._records.get(key)
            if record is None or record.state is not CircuitState.OPEN:
                return 0.0
            if record.last_failure_time is None:
                return 0.0
            elapsed = self._clock() - record.last_failure_time
            return max(0.0, record.config.reset_timeout_seconds - elapsed)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def reset(self, key: str) -> bool:
        """Force ``key`` to CLOSED with zeroed counters.

        Outcomes of calls admitted before the reset are ignored.

        Returns:
            True if a record existed for ``key``.
        """
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                self._force_close(record)
        self._notify()
        return record is not None

    def reset_all(self) -> list[str]:
        """Force every known circuit to CLOSED. Returns the keys reset."""
        with self._lock:
            for record in self._records.values():
                self._force_close(record)
            keys = list(self._records)
        self._notify()
        logger.info("CircuitBreaker: reset %d circuits", len(keys))
        return keys

    def prune_inactive(self, max_idle_seconds: float) -> int:
        """Forget CLOSED, failure-free circuits idle longer than ``max_idle_seconds``.

        Returns:
            Number of records removed.
        """
        with self._lock:
            now = self._clock()
            idle = [
                key
                for key, record in self._records.items()
                if record.state is CircuitState.CLOSED
                and record.consecutive_failures == 0
                and now - record.last_activity > max_idle_seconds
            ]
            for key in idle:
                del self._records[key]
        return len(idle)

    def status(self, key: str) -> dict[str, Any]:
        """Return a snapshot of one circuit.

        Returns:
            Dict with state, counters, failure rate, config, and stats.
        """
        with self._lock:
            now = self._clock()
            record = self._records.get(key)
            if record is None:
                record = CircuitRecord(key=key, config=self.config_for(key))
            return {
                "name": key,
                "state": record.state.value,
                "consecutive_failures": record.consecutive_failures,
                "consecutive_half_open_successes": record.consecutive_half_open_successes,
                "half_open_in_flight": record.half_open_in_flight,
                "failure_threshold": record.config.failure_threshold,
                "success_threshold": record.config.success_threshold,
                "reset_timeout_ms": record.config.reset_timeout_ms,
                "total_requests": record.total_requests,
                "failure_rate": round(record.failure_rate, 4),
                "failure_rate_threshold": record.config.failure_rate_threshold,
                "high_failure_rate": record.high_failure_rate,
                "last_failure_ago_seconds": (
                    round(now - record.last_failure_time, 3)
                    if record.last_failure_time is not None
                    else None
                ),
                "last_success_ago_seconds": (
                    round(now - record.last_success_time, 3)
                    if record.last_success_time is not None
                    else None
                ),
                "stats": {
                    "success": record.stats.successful_calls,
                    "failed": record.stats.failed_calls,
                    "rejected": record.stats.rejected_calls,
                    "trips": record.stats.trips,
                },
            }

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Status of every known circuit, keyed by dependency."""
        return {key: self.status(key) for key in self.keys()}
