"""
Configuration dataclasses for the resilience-orchestration core.

These immutable config objects are built once (from code, a mapping, or the
environment) and handed to one ``ResilienceOrchestrator``. Every dependency
may carry its own ``ResilienceConfig``; keys without one use the default.

Recognised option names (dotted form, as used by service configuration)::

    rateLimit.requestsPerMinute           cache.ttlSeconds
    rateLimit.windowSeconds               cache.maxEntries
    circuitBreaker.failureThreshold       retries.maxAttempts
    circuitBreaker.resetTimeoutMs         retries.baseDelayMs
    circuitBreaker.successThreshold       retries.maxDelayMs
    circuitBreaker.halfOpenMaxProbes      retries.backoffMultiplier
    circuitBreaker.failureRateThreshold   retries.jitter
    circuitBreaker.failureRateWindow      retries.attemptTimeoutMs
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

from dotenv import load_dotenv

from infrastructure.retry import RetryPolicy


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Sliding-window quota applied per caller.

    Attributes:
        requests_per_minute: Maximum accepted calls per window. Defaults to 60.
        window_seconds: Window length. Defaults to 60 seconds, which makes
            ``requests_per_minute`` literal.
    """

    requests_per_minute: int = 60
    window_seconds: float = 60.0

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.requests_per_minute <= 0:
            raise ValueError(
                f"requests_per_minute must be positive, got {self.requests_per_minute}"
            )
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {self.window_seconds}")


@dataclass(frozen=True)
class CacheConfig:
    """
    Result cache sizing.

    Attributes:
        ttl_seconds: Entry lifetime. Defaults to 300 (5 minutes).
        max_entries: Capacity before insertion-order eviction. Defaults to 1000.
    """

    ttl_seconds: float = 300.0
    max_entries: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {self.max_entries}")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Circuit breaker thresholds for one dependency.

    Attributes:
        failure_threshold: Consecutive failures that trip the circuit.
            Defaults to 5.
        reset_timeout_ms: How long to stay OPEN after the last failure before
            probing. Defaults to 300000 (5 minutes).
        success_threshold: Consecutive HALF-OPEN successes needed to close.
            Defaults to 1.
        half_open_max_probes: Probe calls allowed in flight while HALF-OPEN.
            Defaults to 1.
        failure_rate_threshold: Fraction of failed calls, over the last
            ``failure_rate_window`` outcomes, that raises a high-failure-rate
            alert. Defaults to 0.5.
        failure_rate_window: Number of recent outcomes the failure rate is
            computed over. No alert until the window is full. Defaults to 20.
    """

    failure_threshold: int = 5
    reset_timeout_ms: int = 300_000
    success_threshold: int = 1
    half_open_max_probes: int = 1
    failure_rate_threshold: float = 0.5
    failure_rate_window: int = 20

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.failure_threshold <= 0:
            raise ValueError(f"failure_threshold must be positive, got {self.failure_threshold}")
        if self.reset_timeout_ms < 0:
            raise ValueError(
                f"reset_timeout_ms must be non-negative, got {self.reset_timeout_ms}"
            )
        if self.success_threshold <= 0:
            raise ValueError(f"success_threshold must be positive, got {self.success_threshold}")
        if self.half_open_max_probes <= 0:
            raise ValueError(
                f"half_open_max_probes must be positive, got {self.half_open_max_probes}"
            )
        if not 0.0 < self.failure_rate_threshold <= 1.0:
            raise ValueError(
                f"failure_rate_threshold must be in (0, 1], got {self.failure_rate_threshold}"
            )
        if self.failure_rate_window <= 0:
            raise ValueError(
                f"failure_rate_window must be positive, got {self.failure_rate_window}"
            )

    @property
    def reset_timeout_seconds(self) -> float:
        return self.reset_timeout_ms / 1000.0


@dataclass(frozen=True)
class RetryConfig:
    """
    Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first. Defaults to 3.
        base_delay_ms: Delay before the first retry. Defaults to 1000.
        max_delay_ms: Cap on any single delay. Defaults to 30000.
        backoff_multiplier: Growth factor per attempt. Defaults to 2.0.
        jitter: Scale each delay by a uniform factor in [0.5, 1.0].
            Defaults to True.
        attempt_timeout_ms: Deadline for one attempt. Defaults to 60000.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    attempt_timeout_ms: int = 60_000

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be non-negative, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}"
            )
        if self.attempt_timeout_ms <= 0:
            raise ValueError(
                f"attempt_timeout_ms must be positive, got {self.attempt_timeout_ms}"
            )

    def to_policy(
        self, retryable: Callable[[BaseException], bool] | None = None
    ) -> RetryPolicy:
        """Build the immutable RetryPolicy used by RetryExecutor."""
        kwargs: dict[str, Any] = {}
        if retryable is not None:
            kwargs["retryable"] = retryable
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_ms / 1000.0,
            max_delay=self.max_delay_ms / 1000.0,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            attempt_timeout=self.attempt_timeout_ms / 1000.0,
            **kwargs,
        )


# Dotted option name → (section attribute, field name)
_OPTION_MAP: dict[str, tuple[str, str]] = {
    "rateLimit.requestsPerMinute": ("rate_limit", "requests_per_minute"),
    "rateLimit.windowSeconds": ("rate_limit", "window_seconds"),
    "cache.ttlSeconds": ("cache", "ttl_seconds"),
    "cache.maxEntries": ("cache", "max_entries"),
    "circuitBreaker.failureThreshold": ("circuit_breaker", "failure_threshold"),
    "circuitBreaker.resetTimeoutMs": ("circuit_breaker", "reset_timeout_ms"),
    "circuitBreaker.successThreshold": ("circuit_breaker", "success_threshold"),
    "circuitBreaker.halfOpenMaxProbes": ("circuit_breaker", "half_open_max_probes"),
    "circuitBreaker.failureRateThreshold": ("circuit_breaker", "failure_rate_threshold"),
    "circuitBreaker.failureRateWindow": ("circuit_breaker", "failure_rate_window"),
    "retries.maxAttempts": ("retries", "max_attempts"),
    "retries.baseDelayMs": ("retries", "base_delay_ms"),
    "retries.maxDelayMs": ("retries", "max_delay_ms"),
    "retries.backoffMultiplier": ("retries", "backoff_multiplier"),
    "retries.jitter": ("retries", "jitter"),
    "retries.attemptTimeoutMs": ("retries", "attempt_timeout_ms"),
}

# Environment suffix → dotted option name
_ENV_MAP: dict[str, str] = {
    "RATE_LIMIT": "rateLimit.requestsPerMinute",
    "CACHE_TTL": "cache.ttlSeconds",
    "CACHE_MAX_SIZE": "cache.maxEntries",
    "CIRCUIT_BREAKER_THRESHOLD": "circuitBreaker.failureThreshold",
    "CIRCUIT_BREAKER_RESET": "circuitBreaker.resetTimeoutMs",
    "CIRCUIT_BREAKER_SUCCESS_THRESHOLD": "circuitBreaker.successThreshold",
    "CIRCUIT_BREAKER_FAILURE_RATE": "circuitBreaker.failureRateThreshold",
    "MAX_RETRIES": "retries.maxAttempts",
    "BACKOFF_DELAY": "retries.baseDelayMs",
    "BACKOFF_MAX_DELAY": "retries.maxDelayMs",
    "BACKOFF_MULTIPLIER": "retries.backoffMultiplier",
    "RETRY_JITTER": "retries.jitter",
    "ATTEMPT_TIMEOUT": "retries.attemptTimeoutMs",
}

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def _flatten(options: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in options.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def _coerce(value: Any, target: Any, option: str) -> Any:
    """Coerce ``value`` to the type of the field default ``target``."""
    if isinstance(target, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"{option} must be a boolean, got {value!r}")
    try:
        if isinstance(target, int):
            return int(value)
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{option} must be numeric, got {value!r}") from exc


@dataclass(frozen=True)
class ResilienceConfig:
    """
    Complete configuration for one protected dependency (or the default).

    Example:
        >>> config = ResilienceConfig.from_mapping(
        ...     {"retries.maxAttempts": 3, "circuitBreaker": {"failureThreshold": 5}}
        ... )
        >>> config.circuit_breaker.failure_threshold
        5
    """

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retries: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_mapping(
        cls, options: Mapping[str, Any], base: ResilienceConfig | None = None
    ) -> ResilienceConfig:
        """Build a config from dotted or nested option names.

        Args:
            options: e.g. ``{"cache.ttlSeconds": 30}`` or
                ``{"cache": {"ttlSeconds": 30}}``.
            base: Config whose values are used for unspecified options.

        Raises:
            ValueError: On unknown option names or invalid values.
        """
        base = base or cls()
        updates: dict[str, dict[str, Any]] = {}
        for option, value in _flatten(options).items():
            if option not in _OPTION_MAP:
                raise ValueError(
                    f"Unknown resilience option {option!r}, valid options: {sorted(_OPTION_MAP)}"
                )
            section, name = _OPTION_MAP[option]
            current = getattr(getattr(base, section), name)
            updates.setdefault(section, {})[name] = _coerce(value, current, option)

        sections = {
            f.name: replace(getattr(base, f.name), **updates.get(f.name, {}))
            for f in fields(cls)
        }
        return cls(**sections)

    @classmethod
    def from_env(
        cls, prefix: str, base: ResilienceConfig | None = None
    ) -> ResilienceConfig:
        """Build a config from ``<PREFIX>_*`` environment variables.

        Reads ``.env`` first (via python-dotenv) without overriding variables
        already set in the process environment.

        Args:
            prefix: e.g. ``"MEDICATION"`` reads ``MEDICATION_RATE_LIMIT``,
                ``MEDICATION_CACHE_TTL``, ``MEDICATION_MAX_RETRIES``, ...
            base: Config used for variables that are not set.
        """
        load_dotenv()
        options: dict[str, str] = {}
        for suffix, option in _ENV_MAP.items():
            value = os.environ.get(f"{prefix}_{suffix}")
            if value is not None and value.strip():
                options[option] = value.strip()
        return cls.from_mapping(options, base=base)

    def to_dict(self) -> dict[str, Any]:
        """Dotted-option view of this config (for status endpoints)."""
        return {
            option: getattr(getattr(self, section), name)
            for option, (section, name) in _OPTION_MAP.items()
        }


# Pre-defined configurations

DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()
"""Default breaker: 5 consecutive failures, 5 minute reset, 1 probe success."""

DEFAULT_CONFIG = ResilienceConfig()
"""Default configuration: 60 req/min, 5 min cache, 5-failure breaker, 3 attempts."""

AI_INFERENCE_CONFIG = ResilienceConfig(
    rate_limit=RateLimitConfig(requests_per_minute=30),
    cache=CacheConfig(ttl_seconds=600.0, max_entries=500),
    circuit_breaker=CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=60_000),
    retries=RetryConfig(max_attempts=3, base_delay_ms=1000, attempt_timeout_ms=30_000),
)
"""Slow, quota-bound AI endpoints: tighter quota, longer cache, faster trip."""

LOOKUP_API_CONFIG = ResilienceConfig(
    cache=CacheConfig(ttl_seconds=300.0, max_entries=1000),
    circuit_breaker=CircuitBreakerConfig(failure_threshold=5, reset_timeout_ms=60_000),
    retries=RetryConfig(max_attempts=3, base_delay_ms=200, max_delay_ms=5_000, attempt_timeout_ms=10_000),
)
"""Reference lookups (drug interactions, formularies): short backoff, short deadline."""
