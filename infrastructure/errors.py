"""Failure taxonomy for orchestrated dependency calls.

Every failure that leaves the orchestrator is exactly one of these types.
Callers branch on the type (or on ``code``) rather than on message text:

    ValidationError          Malformed input. Never retried, never touches
                             circuit state.
    RateLimitError           Caller quota exceeded. Carries retry_after.
    DependencyTimeoutError   An attempt exceeded its deadline. Retryable.
    ServiceUnavailableError  Circuit open, or retries and fallbacks exhausted.
    DependencyError          Anything else the dependency raised.

``FailureRecord`` is the uniform, serialisable shape used for logging and
for fallback diagnostics.

Usage::

    from infrastructure.errors import ServiceUnavailableError

    try:
        result = await orchestrator.execute("drugInteractionAPI", op)
    except ServiceUnavailableError as exc:
        logger.warning("degraded: %s", exc.reason)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any

# Codes an arbitrary exception may carry on a ``code`` attribute that mean
# "the dependency did not answer in time".
_TIMEOUT_CODES: frozenset[str] = frozenset({"TIMEOUT", "ETIMEDOUT", "OPERATION_TIMEOUT"})


@dataclass(frozen=True)
class FailureRecord:
    """Uniform description of one failure.

    Attributes:
        code: Stable machine-readable code (e.g. ``"TIMEOUT"``).
        message: Human-readable message.
        dependency_key: Dependency the failure belongs to (may be empty for
            input validation that fails before a dependency is resolved).
        timestamp: Wall-clock epoch seconds when the failure was recorded.
        retryable: Whether a retry policy may try again.
    """

    code: str
    message: str
    dependency_key: str
    timestamp: float
    retryable: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResilienceError(Exception):
    """Base class for every classified failure.

    Args:
        message: Human-readable message.
        dependency_key: Dependency this failure belongs to.
        retryable: Override the class default retryability.
    """

    code: str = "RESILIENCE_ERROR"
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        dependency_key: str = "",
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.dependency_key = dependency_key
        self.retryable = self.default_retryable if retryable is None else retryable
        self.timestamp = time.time()
        self.fallback_failures: list[FailureRecord] = []

    def to_record(self) -> FailureRecord:
        """Return the uniform FailureRecord for this failure."""
        return FailureRecord(
            code=self.code,
            message=self.message,
            dependency_key=self.dependency_key,
            timestamp=self.timestamp,
            retryable=self.retryable,
        )

    def with_fallback_failures(self, failures: Sequence[FailureRecord]) -> ResilienceError:
        """Return a copy of this error that also carries ``failures``.

        The original is left untouched, so an exception instance an
        operation raises on every call does not accumulate records.
        """
        clone = type(self).__new__(type(self))
        clone.__dict__.update(self.__dict__)
        clone.args = self.args
        clone.__cause__ = self.__cause__
        clone.fallback_failures = [*self.fallback_failures, *failures]
        return clone


class ValidationError(ResilienceError):
    """Malformed input. Surfaced immediately."""

    code = "VALIDATION_ERROR"


class RateLimitError(ResilienceError):
    """Caller exceeded its quota for the current window.

    Args:
        message: Human-readable message.
        retry_after_seconds: Seconds until the oldest call leaves the window.
    """

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float,
        dependency_key: str = "",
    ) -> None:
        super().__init__(message, dependency_key=dependency_key, retryable=False)
        self.retry_after_seconds = retry_after_seconds


class DependencyTimeoutError(ResilienceError):
    """An attempt did not finish before its per-attempt deadline."""

    code = "TIMEOUT"
    default_retryable = True


class DependencyError(ResilienceError):
    """Unclassified dependency failure. Retryable unless stated otherwise."""

    code = "DEPENDENCY_ERROR"
    default_retryable = True


class ServiceUnavailableError(ResilienceError):
    """Terminal failure: the dependency cannot serve this call right now.

    Args:
        message: Human-readable message.
        dependency_key: The protected dependency.
        reason: ``"circuit_open"`` or ``"exhausted"``.
        primary: Record of the primary failure, if the primary ran.
        fallback_failures: Records of every fallback that also failed.
        retry_after_seconds: For ``circuit_open``, seconds until the next probe.
    """

    code = "SERVICE_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        dependency_key: str,
        reason: str,
        primary: FailureRecord | None = None,
        fallback_failures: list[FailureRecord] | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message, dependency_key=dependency_key, retryable=False)
        self.reason = reason
        self.primary = primary
        self.fallback_failures = list(fallback_failures or [])
        self.retry_after_seconds = retry_after_seconds


def _classify(exc: BaseException) -> tuple[type[ResilienceError], bool | None]:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return DependencyTimeoutError, None
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.upper() in _TIMEOUT_CODES:
        return DependencyTimeoutError, None
    if isinstance(exc, (ConnectionError, OSError)):
        return DependencyError, True
    retryable = getattr(exc, "retryable", None)
    return DependencyError, retryable if isinstance(retryable, bool) else None


def classify_exception(exc: BaseException, dependency_key: str = "") -> ResilienceError:
    """Map any exception onto the failure taxonomy.

    ``ResilienceError`` instances pass through untouched (their dependency
    key is filled in if missing). Everything else is wrapped; the original
    exception is kept as ``__cause__``.

    Args:
        exc: The exception raised by an operation or fallback.
        dependency_key: Dependency the call was made against.

    Returns:
        A ResilienceError subclass instance.
    """
    if isinstance(exc, ResilienceError):
        if not exc.dependency_key:
            exc.dependency_key = dependency_key
        return exc

    kind, retryable = _classify(exc)
    message = str(exc) or type(exc).__name__
    classified = kind(message, dependency_key=dependency_key, retryable=retryable)
    classified.__cause__ = exc
    return classified


def is_retryable(exc: BaseException) -> bool:
    """Default retryable predicate used by RetryPolicy."""
    return classify_exception(exc).retryable


def failure_kind(exc: BaseException) -> str:
    """Return the metrics error-breakdown bucket for a failure."""
    classified = classify_exception(exc)
    if isinstance(classified, ValidationError):
        return "validation"
    if isinstance(classified, RateLimitError):
        return "rate_limit"
    if isinstance(classified, DependencyTimeoutError):
        return "timeout"
    if isinstance(classified, ServiceUnavailableError):
        return "service_unavailable"
    return "dependency"
