"""Request correlation and structured logging.

Each orchestrated call gets a ``RequestContext``: a request id, the
dependency key, and start timestamps. The id is also published on a
``ContextVar`` so any log line emitted while the call is in flight (including
from retry and fallback code deeper in the stack) can be tagged with it.

Request ids look like ``med_1718000000000_42_9f3a1c2b``:
prefix, epoch milliseconds, a per-process counter, 4 random bytes as hex.

Usage::

    from infrastructure.correlation import RequestContext, setup_logging

    setup_logging(level="INFO", json_output=True)

    ctx = RequestContext.start("drugInteractionAPI")
    with ctx.activate():
        logger.info("calling dependency", extra=ctx.log_fields())
"""

from __future__ import annotations

import itertools
import json
import logging
import secrets
import sys
import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
dependency_key_var: ContextVar[str] = ContextVar("dependency_key", default="")

_counter = itertools.count()
_DEFAULT_PREFIX = "req"


def new_request_id(prefix: str = _DEFAULT_PREFIX) -> str:
    """Generate a unique, roughly time-ordered request id.

    Args:
        prefix: Short tag identifying the caller family (e.g. ``"med"``).

    Returns:
        Request id string.
    """
    millis = int(time.time() * 1000)
    return f"{prefix}_{millis}_{next(_counter)}_{secrets.token_hex(4)}"


def current_request_id() -> str:
    """Request id of the call in flight in this task, or ``""``."""
    return request_id_var.get()


@dataclass
class RequestContext:
    """Correlation data for one orchestrated call.

    Attributes:
        request_id: Unique id for this call.
        dependency_key: Protected dependency being called.
        caller_key: Rate-limit identity of the caller.
        started_at: Wall-clock start (epoch seconds), for log records.
        started_monotonic: Monotonic start, for latency.
    """

    request_id: str
    dependency_key: str
    caller_key: str = ""
    started_at: float = field(default_factory=time.time)
    started_monotonic: float = field(default_factory=time.perf_counter)

    @classmethod
    def start(
        cls,
        dependency_key: str,
        *,
        caller_key: str = "",
        prefix: str = _DEFAULT_PREFIX,
        request_id: str | None = None,
    ) -> RequestContext:
        """Create a context with a fresh request id (unless one is given)."""
        return cls(
            request_id=request_id or new_request_id(prefix),
            dependency_key=dependency_key,
            caller_key=caller_key,
        )

    def elapsed_ms(self) -> float:
        """Milliseconds since the call started."""
        return (time.perf_counter() - self.started_monotonic) * 1000.0

    def log_fields(self, **extra: Any) -> dict[str, Any]:
        """Fields for ``logger.xxx(..., extra=...)``."""
        fields: dict[str, Any] = {
            "request_id": self.request_id,
            "dependency_key": self.dependency_key,
        }
        if self.caller_key:
            fields["caller_key"] = self.caller_key
        fields.update(extra)
        return fields

    @contextmanager
    def activate(self) -> Iterator[RequestContext]:
        """Publish this context on the ContextVars for the enclosed block."""
        rid_token = request_id_var.set(self.request_id)
        dep_token = dependency_key_var.set(self.dependency_key)
        try:
            yield self
        finally:
            dependency_key_var.reset(dep_token)
            request_id_var.reset(rid_token)


class RequestIdFilter(logging.Filter):
    """Stamp ``request_id`` and ``dependency_key`` onto every record.

    Values passed explicitly via ``extra=`` win over the ContextVars.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get() or None
        if not getattr(record, "dependency_key", None):
            record.dependency_key = dependency_key_var.get() or None
        return True


# Attributes every LogRecord has; anything else on the record came from extra=.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime"}
)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", *, json_output: bool = True) -> logging.Logger:
    """Configure the root logger for the service.

    Args:
        level: Logging level name.
        json_output: JSON lines when True, plain text otherwise.

    Returns:
        The configured root logger.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
            )
        )
    root.addHandler(handler)
    return root
