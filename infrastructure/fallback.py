"""Tiered fallback chains for graceful degradation.

When the primary path to a dependency is unavailable (circuit open, or
retries exhausted), a degraded answer is almost always better than an error
in the middle of a care workflow: a cached formulary, a local rule-based
interaction screen, an empty-but-flagged result the UI can render.

``FallbackChain.resolve`` tries the fallbacks in order. The first one that
succeeds wins and its value is wrapped in ``DegradedResult`` so callers can
tell it apart from a primary answer. If every fallback fails, the original
primary failure is re-raised, enriched with every fallback's failure record.

Usage::

    from infrastructure.fallback import FallbackChain

    chain = FallbackChain("drugInteractionAPI")
    degraded = await chain.resolve(primary_error, [local_screen, empty_result])
    degraded.value, degraded.fallback_index
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from infrastructure.errors import FailureRecord, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fallback = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class DegradedResult(Generic[T]):
    """A fallback's value, marked as degraded.

    Attributes:
        value: What the fallback returned.
        fallback_index: Position of the winning fallback in the chain.
        reason: Code of the primary failure that triggered degradation.
        skipped: Failure records of fallbacks tried before the winner.
    """

    value: T
    fallback_index: int
    reason: str
    skipped: list[FailureRecord] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return True


class FallbackChain:
    """Ordered degraded alternatives for one dependency.

    Args:
        dependency_key: Dependency the chain belongs to (for logs and records).
        on_attempt: Optional callback ``on_attempt(index, succeeded)`` invoked
            after each fallback runs.
    """

    def __init__(
        self,
        dependency_key: str,
        *,
        on_attempt: Callable[[int, bool], None] | None = None,
    ) -> None:
        self.dependency_key = dependency_key
        self._on_attempt = on_attempt

    async def resolve(
        self,
        primary_failure: BaseException,
        fallbacks: Sequence[Fallback[T]],
    ) -> DegradedResult[T]:
        """Invoke ``fallbacks`` in order until one succeeds.

        Args:
            primary_failure: Why the primary path did not produce a result.
            fallbacks: Zero-argument callables returning awaitables.

        Returns:
            DegradedResult wrapping the first successful fallback's value.

        Raises:
            ResilienceError: A copy of the classified primary failure whose
                ``fallback_failures`` lists every fallback's failure record,
                when all fallbacks fail (or none were supplied).
        """
        primary = classify_exception(primary_failure, self.dependency_key)
        failures: list[FailureRecord] = []

        for index, fallback in enumerate(fallbacks):
            try:
                value = await fallback()
            except Exception as exc:  # noqa: BLE001
                record = classify_exception(exc, self.dependency_key).to_record()
                failures.append(record)
                self._notify(index, succeeded=False)
                logger.warning(
                    "fallback: %s fallback %d/%d failed (%s)",
                    self.dependency_key,
                    index + 1,
                    len(fallbacks),
                    record.message,
                )
                continue

            self._notify(index, succeeded=True)
            logger.info(
                "fallback: %s served degraded result from fallback %d/%d (primary: %s)",
                self.dependency_key,
                index + 1,
                len(fallbacks),
                primary.code,
            )
            return DegradedResult(
                value=value,
                fallback_index=index,
                reason=primary.code,
                skipped=failures,
            )

        if fallbacks:
            logger.error(
                "fallback: %s all %d fallbacks failed", self.dependency_key, len(fallbacks)
            )
        raise primary.with_fallback_failures(failures)

    def _notify(self, index: int, *, succeeded: bool) -> None:
        if self._on_attempt is not None:
            self._on_attempt(index, succeeded)
