"""Per-caller sliding-window rate limiter.

Bounds how often one caller (a clinician, an integration, a batch job) may
hit a protected dependency, so a runaway loop cannot burn through a
rate-limited external quota for everyone else.

Algorithm (true sliding window, not fixed buckets):
- Each caller owns an ordered deque of accepted-call timestamps.
- On every check, timestamps older than ``now - window`` are pruned.
- If the remaining count is already at the limit, the call is rejected
  and NOT recorded; ``retry_after`` is when the oldest call leaves the window.
- Otherwise ``now`` is appended and the call is accepted.

A burst that straddles what a fixed bucket would call a boundary is still
bounded by ``max_requests`` over any trailing window.

State is process-local and guarded by a ``threading.Lock``, like the
circuit breaker registry. Keys accumulate until ``prune_inactive()`` or
``reset()`` removes them.

Usage::

    from infrastructure.rate_limiter import RateLimiter

    limiter = RateLimiter(max_requests=60, window_seconds=60)

    decision = limiter.try_acquire("nurse_42")
    if not decision.allowed:
        raise RateLimitError("slow down", retry_after_seconds=decision.retry_after)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Default: 60 requests per minute per caller
_DEFAULT_MAX = 60
_DEFAULT_WINDOW = 60.0  # seconds


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one ``try_acquire`` call.

    Attributes:
        allowed: True if the call was accepted and recorded.
        remaining: Calls still available in the current window.
        retry_after: Seconds until a slot frees up (0.0 when allowed).
    """

    allowed: bool
    remaining: int
    retry_after: float = 0.0

    def __bool__(self) -> bool:
        return self.allowed


class RateLimiter:
    """In-process sliding-window limiter keyed by caller.

    Args:
        max_requests: Maximum accepted calls per window (default: 60).
        window_seconds: Sliding window size in seconds (default: 60).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_requests: int = _DEFAULT_MAX,
        window_seconds: float = _DEFAULT_WINDOW,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self._max = max_requests
        self._window = float(window_seconds)
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max

    @property
    def window_seconds(self) -> float:
        return self._window

    def _prune(self, timestamps: deque[float], now: float) -> None:
        """Drop timestamps outside the window. Must be called with lock held."""
        cutoff = now - self._window
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def try_acquire(self, caller_key: str) -> RateLimitDecision:
        """Check and, if within limits, record one call for ``caller_key``.

        Args:
            caller_key: Unique caller identifier.

        Returns:
            RateLimitDecision; falsy when the call was rejected.
        """
        with self._lock:
            now = self._clock()
            timestamps = self._windows.setdefault(caller_key, deque())
            self._prune(timestamps, now)

            if len(timestamps) >= self._max:
                retry_after = max(0.0, timestamps[0] + self._window - now)
                logger.warning(
                    "RateLimiter: caller '%s' exceeded %d req/%.0fs (retry in %.2fs)",
                    caller_key,
                    self._max,
                    self._window,
                    retry_after,
                )
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            timestamps.append(now)
            return RateLimitDecision(allowed=True, remaining=self._max - len(timestamps))

    def allow(self, caller_key: str) -> bool:
        """Boolean shorthand for ``try_acquire``."""
        return self.try_acquire(caller_key).allowed

    def remaining(self, caller_key: str) -> int:
        """Return remaining calls allowed in the current window (no recording)."""
        with self._lock:
            timestamps = self._windows.get(caller_key)
            if not timestamps:
                return self._max
            self._prune(timestamps, self._clock())
            return max(0, self._max - len(timestamps))

    def active_keys(self) -> list[str]:
        """Caller keys that still have calls inside the window."""
        with self._lock:
            now = self._clock()
            active = []
            for key, timestamps in self._windows.items():
                self._prune(timestamps, now)
                if timestamps:
                    active.append(key)
            return active

    def prune_inactive(self) -> int:
        """Forget callers with no calls left in the window. Returns count removed."""
        with self._lock:
            now = self._clock()
            idle = []
            for key, timestamps in self._windows.items():
                self._prune(timestamps, now)
                if not timestamps:
                    idle.append(key)
            for key in idle:
                del self._windows[key]
        return len(idle)

    def reset(self, caller_key: str | None = None) -> None:
        """Clear one caller's window, or every window when no key is given."""
        with self._lock:
            if caller_key is None:
                self._windows.clear()
            else:
                self._windows.pop(caller_key, None)
