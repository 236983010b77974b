"""In-process result cache with per-entry TTL and bounded capacity.

Memoizes dependency results so identical calls inside the TTL window are
served without touching the dependency. State is process-local, guarded by
a ``threading.Lock``, and starts empty on every restart.

Expiry is lazy: a stale entry is dropped when it is read (or when
``purge_expired()`` runs). Capacity is enforced on insert by evicting the
earliest-inserted entry. Reads do not refresh an entry's position, so this
is insertion-order eviction, not LRU.

Cache key = ``<dependency>:<SHA-256 of canonical JSON inputs>``.

Usage::

    from infrastructure.cache import TTLCache, make_cache_key

    cache = TTLCache(ttl_seconds=300, max_entries=1000)
    key = make_cache_key("drugInteractionAPI", {"patient_id": "p1", "drug": "warfarin"})
    hit = cache.get(key)
    if hit is MISS:
        hit = await fetch()
        cache.set(key, hit)
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 300
_DEFAULT_MAX_ENTRIES = 1000


class _Miss:
    """Sentinel type for cache misses (``None`` is a cacheable value)."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


def make_cache_key(namespace: str, inputs: Any) -> str:
    """Deterministic cache key from a namespace and JSON-serialisable inputs.

    Args:
        namespace: Usually the dependency key.
        inputs: Call inputs. Dict key order does not matter.

    Returns:
        Namespaced key string.

    Raises:
        TypeError: If ``inputs`` is not JSON-serialisable.
    """
    raw = json.dumps(inputs, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"{namespace}:{digest}"


@dataclass(frozen=True)
class CacheEntry:
    """One stored value and the (monotonic) time it was stored."""

    key: str
    value: Any
    stored_at: float


class TTLCache:
    """Key/value store with per-entry expiry and insertion-order eviction.

    Args:
        ttl_seconds: Lifetime of an entry (default: 300). An entry is valid
            while ``now - stored_at < ttl_seconds``.
        max_entries: Capacity (default: 1000).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = _DEFAULT_TTL_SECONDS,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self._ttl = float(ttl_seconds)
        self._max = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._evictions = 0
        self._expirations = 0
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> int:
        return self._max

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not MISS

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at < self._ttl

    def get(self, key: str) -> Any:
        """Return the cached value, or ``MISS``.

        A stale entry is removed as a side effect of reading it.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            if not self._is_fresh(entry, self._clock()):
                del self._entries[key]
                self._expirations += 1
                logger.debug("TTLCache EXPIRED: %s", key)
                return MISS
            logger.debug("TTLCache HIT: %s", key)
            return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``.

        Re-setting an existing key replaces it and moves it to the newest
        insertion position. When full, the earliest-inserted entry is evicted
        first.
        """
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self._max:
                oldest_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("TTLCache EVICT (capacity %d): %s", self._max, oldest_key)
            self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock())

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop every stale entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if not self._is_fresh(e, now)]
            for key in stale:
                del self._entries[key]
            self._expirations += len(stale)
        return len(stale)

    def clear(self) -> int:
        """Delete every entry. Returns how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            logger.info("TTLCache: cleared %d entries", count)
        return count

    def stats(self) -> dict[str, Any]:
        """Return basic cache statistics."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_entries": self._max,
                "ttl_seconds": self._ttl,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }
