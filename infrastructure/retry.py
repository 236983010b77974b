"""Bounded retry with exponential backoff, jitter and per-attempt timeout.

Designed for clinical workflows where a transient timeout from an external
dependency must not surface as an error when a second attempt would have
succeeded. Each attempt races independently against its own deadline;
losing the race cancels the attempt and counts as a (retryable) timeout.

Delay before retry ``n`` (0-indexed: the wait after the first failure is
``n = 0``)::

    delay(n) = min(max_delay, base_delay * backoff_multiplier ** n)

scaled by a uniform factor in [0.5, 1.0] when jitter is enabled, so many
callers failing together do not retry in lockstep.

Usage::

    from infrastructure.retry import RetryExecutor, RetryPolicy, with_retry

    policy = RetryPolicy(max_attempts=3, base_delay=0.1, backoff_multiplier=2, jitter=False)
    result = await RetryExecutor().execute(fetch_interactions, policy)

    @with_retry(max_attempts=4, base_delay=0.5)
    async def lookup(drug: str) -> dict:
        ...
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from infrastructure.errors import DependencyTimeoutError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry policy.

    Attributes:
        max_attempts: Total attempts including the first (default: 3).
        base_delay: Seconds before the first retry (default: 1.0).
        max_delay: Cap on any single delay in seconds (default: 30.0).
        backoff_multiplier: Growth factor per attempt (default: 2.0).
        jitter: Scale delays by a uniform factor in [0.5, 1.0] (default: True).
        attempt_timeout: Per-attempt deadline in seconds; None disables it.
        retryable: Predicate deciding whether a failure may be retried.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    attempt_timeout: float | None = 60.0
    retryable: Callable[[BaseException], bool] = is_retryable

    def __post_init__(self) -> None:
        """Validate policy parameters."""
        if self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be non-negative, got {self.base_delay}")
        if self.max_delay < 0:
            raise ValueError(f"max_delay must be non-negative, got {self.max_delay}")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError(f"attempt_timeout must be positive, got {self.attempt_timeout}")


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Seconds to wait after failed attempt ``attempt`` (0-indexed).

    Args:
        attempt: Index of the attempt that just failed.
        policy: Retry policy.
        rng: Uniform random source, injectable for tests.

    Returns:
        Delay in seconds.
    """
    delay = min(policy.max_delay, policy.base_delay * (policy.backoff_multiplier**attempt))
    if policy.jitter:
        delay *= rng(0.5, 1.0)
    return delay


class RetryExecutor:
    """Runs an async operation under a RetryPolicy.

    Args:
        sleep: Coroutine used to wait between attempts (default: asyncio.sleep).
        rng: Uniform random source for jitter.
    """

    def __init__(
        self,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._sleep = sleep
        self._rng = rng

    async def _attempt(self, operation: Operation[T], timeout: float | None, label: str) -> T:
        if timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except TimeoutError as exc:
            raise DependencyTimeoutError(
                f"{label} did not complete within {timeout:.3f}s"
            ) from exc

    async def execute(
        self,
        operation: Operation[T],
        policy: RetryPolicy,
        *,
        label: str = "operation",
        on_retry: RetryHook | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument callable returning an awaitable.
            policy: Retry policy.
            label: Name used in log lines and timeout messages.
            on_retry: Called as ``on_retry(attempt, exc, delay)`` before each wait.

        Returns:
            The operation's result.

        Raises:
            Exception: The last failure, unchanged, once attempts are exhausted
                or the failure is not retryable.
        """
        for attempt in range(policy.max_attempts):
            try:
                result = await self._attempt(operation, policy.attempt_timeout, label)
            except Exception as exc:
                is_last = attempt == policy.max_attempts - 1
                if is_last or not policy.retryable(exc):
                    if attempt:
                        logger.warning(
                            "retry: %s giving up after %d/%d attempts (%s)",
                            label,
                            attempt + 1,
                            policy.max_attempts,
                            exc,
                        )
                    raise
                delay = compute_delay(attempt, policy, self._rng)
                logger.warning(
                    "retry: %s attempt %d/%d failed (%s), retrying in %.3fs",
                    label,
                    attempt + 1,
                    policy.max_attempts,
                    exc,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)
            else:
                if attempt:
                    logger.info("retry: %s succeeded on attempt %d", label, attempt + 1)
                return result
        raise AssertionError("unreachable: retry loop always returns or raises")


def with_retry(
    policy: RetryPolicy | None = None,
    *,
    executor: RetryExecutor | None = None,
    **policy_kwargs: Any,
) -> Callable[[F], F]:
    """Decorator factory applying a RetryPolicy to a coroutine function.

    Args:
        policy: Full policy. If omitted, one is built from ``policy_kwargs``.
        executor: RetryExecutor to use (default: a fresh one).
        **policy_kwargs: RetryPolicy fields (``max_attempts``, ``base_delay``...).

    Returns:
        Decorator that wraps the coroutine function with retry logic.

    Example::

        @with_retry(max_attempts=4, base_delay=2.0)
        async def fetch_formulary(plan_id: str) -> dict:
            ...
    """
    if policy is not None and policy_kwargs:
        raise TypeError("pass either a RetryPolicy or policy keyword arguments, not both")
    resolved = policy or RetryPolicy(**policy_kwargs)
    runner = executor or RetryExecutor()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await runner.execute(
                lambda: func(*args, **kwargs), resolved, label=func.__name__
            )

        return wrapper  # type: ignore[return-value]

    return decorator
