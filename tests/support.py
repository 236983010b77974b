"""Test doubles shared across the suite: fake time and scripted operations."""

from __future__ import annotations

from infrastructure.config import ResilienceConfig

# ---------------------------------------------------------------------------
# Deterministic time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that records delays and advances a FakeClock instead of waiting."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


# ---------------------------------------------------------------------------
# Operation helpers
# ---------------------------------------------------------------------------


class CodedError(Exception):
    """Dependency error carrying a ``code`` attribute, like HTTP client errors."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code


class ScriptedOperation:
    """Zero-argument async operation that replays a script of outcomes.

    Each entry is either an exception instance (raised) or a value (returned).
    The last entry repeats once the script is exhausted.
    """

    def __init__(self, *outcomes: object) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> object:
        outcome = self._outcomes[min(self.calls, len(self._outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


FAST_CONFIG = ResilienceConfig.from_mapping(
    {
        "rateLimit": {"requestsPerMinute": 100},
        "cache": {"ttlSeconds": 30, "maxEntries": 10},
        "circuitBreaker": {"failureThreshold": 5, "resetTimeoutMs": 60_000},
        "retries": {
            "maxAttempts": 3,
            "baseDelayMs": 100,
            "backoffMultiplier": 2,
            "jitter": False,
        },
    }
)
"""Default test config: no jitter, 100ms base delay, 60s circuit reset."""

