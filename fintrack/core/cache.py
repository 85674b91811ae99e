"""Versioned in-memory TTL cache.

Modelled on Django's local-memory cache backend: keys are namespaced by an
integer version (``"{version}:{key}"``), every entry carries its own timeout,
and expired entries are evicted lazily on access and eagerly by a periodic
sweep scheduled on the event loop.

The cache is single-process and best-effort. One instance is built by the
application lifespan and handed to consumers through dependencies, so tests
can construct isolated instances with a fake clock.
"""

import asyncio
import inspect
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300  # seconds
DEFAULT_VERSION = 1
COUNTER_TIMEOUT = 300  # incr/decr always re-store with this timeout
SWEEP_INTERVAL = 300.0  # seconds between background sweeps
ENTRY_OVERHEAD_BYTES = 32
INFO_ENTRY_LIMIT = 100


@dataclass
class CacheEntry:
    data: Any
    created_at: float  # clock seconds
    ttl_ms: int
    version: int


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    total_requests: int = 0
    hit_rate: float = 0
    cache_size: int = 0
    memory_usage: int = 0


class CacheEntryInfo(BaseModel):
    key: str
    age: int  # ms
    ttl: int  # ms
    version: int
    size: int


class CacheInfo(BaseModel):
    stats: CacheStats
    entries: list[CacheEntryInfo]
    total_entries: int


def make_key(key: str, version: int = DEFAULT_VERSION) -> str:
    """Build the composite ``version:key`` string used as the map key."""
    return f"{version}:{key}"


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``*`` glob into an unanchored regular expression."""
    return re.compile(re.escape(pattern).replace(r"\*", ".*"))


def _serialize(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _serialized_size(value: Any) -> int:
    try:
        return len(_serialize(value))
    except (TypeError, ValueError):
        # Not JSON-serializable; repr() is close enough for an estimate
        return len(repr(value))


class VersionedTTLCache:
    """Versioned key-value store with per-entry TTL and usage statistics."""

    def __init__(
        self,
        sweep_interval: float = SWEEP_INTERVAL,
        info_entry_limit: int = INFO_ENTRY_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sweep_interval = sweep_interval
        self.info_entry_limit = info_entry_limit
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._sweep_handle: asyncio.TimerHandle | None = None

    # ── Liveness ─────────────────────────────────────────────

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _is_live(self, entry: CacheEntry, now_ms: float | None = None) -> bool:
        if now_ms is None:
            now_ms = self._now_ms()
        return now_ms - entry.created_at * 1000 < entry.ttl_ms

    def _live_entry(self, cache_key: str) -> CacheEntry | None:
        """Return the live entry for ``cache_key``, evicting it if expired."""
        entry = self._entries.get(cache_key)
        if entry is None:
            return None
        if self._is_live(entry):
            return entry
        del self._entries[cache_key]
        return None

    # ── Basic operations ─────────────────────────────────────

    def set(
        self,
        key: str,
        value: Any,
        timeout: float = DEFAULT_TIMEOUT,
        version: int = DEFAULT_VERSION,
    ) -> bool:
        try:
            cache_key = make_key(key, version)
            self._entries[cache_key] = CacheEntry(
                data=value,
                created_at=self._clock(),
                ttl_ms=int(timeout * 1000),
                version=version,
            )
            self._sets += 1
            logger.debug("Cache set %s (timeout=%ss)", cache_key, timeout)
            return True
        except Exception:
            logger.exception("Error setting cache key %s", key)
            return False

    def get(self, key: str, version: int = DEFAULT_VERSION, default: Any = None) -> Any:
        try:
            cache_key = make_key(key, version)
            entry = self._live_entry(cache_key)
            if entry is not None:
                self._hits += 1
                logger.debug("Cache hit %s", cache_key)
                return entry.data
            self._misses += 1
            logger.debug("Cache miss %s", cache_key)
            return default
        except Exception:
            logger.exception("Error getting cache key %s", key)
            return default

    def delete(self, key: str, version: int = DEFAULT_VERSION) -> bool:
        try:
            cache_key = make_key(key, version)
            if self._entries.pop(cache_key, None) is None:
                return False
            self._deletes += 1
            logger.debug("Cache deleted %s", cache_key)
            return True
        except Exception:
            logger.exception("Error deleting cache key %s", key)
            return False

    def delete_many(self, keys: Iterable[str], version: int = DEFAULT_VERSION) -> int:
        """Delete each key independently; not atomic across keys."""
        deleted = sum(1 for key in keys if self.delete(key, version))
        logger.debug("Cache deleted %d keys (version=%d)", deleted, version)
        return deleted

    def has_key(self, key: str, version: int = DEFAULT_VERSION) -> bool:
        """Like get() without touching hit/miss counters."""
        try:
            return self._live_entry(make_key(key, version)) is not None
        except Exception:
            logger.exception("Error checking cache key %s", key)
            return False

    def add(
        self,
        key: str,
        value: Any,
        timeout: float = DEFAULT_TIMEOUT,
        version: int = DEFAULT_VERSION,
    ) -> bool:
        """Set ``key`` only if it is absent.

        Presence is checked on the raw map, so an expired entry that has not
        been evicted yet still blocks the add.
        """
        try:
            if make_key(key, version) in self._entries:
                return False
            return self.set(key, value, timeout, version)
        except Exception:
            logger.exception("Error adding cache key %s", key)
            return False

    def pop(self, key: str, version: int = DEFAULT_VERSION, default: Any = None) -> Any:
        try:
            value = self.get(key, version, default)
            self.delete(key, version)
            return value
        except Exception:
            logger.exception("Error popping cache key %s", key)
            return default

    def touch(
        self,
        key: str,
        timeout: float = DEFAULT_TIMEOUT,
        version: int = DEFAULT_VERSION,
    ) -> bool:
        """Restart the clock of an existing entry with a new timeout."""
        try:
            cache_key = make_key(key, version)
            entry = self._entries.get(cache_key)
            if entry is None:
                return False
            entry.created_at = self._clock()
            entry.ttl_ms = int(timeout * 1000)
            logger.debug("Cache touched %s (timeout=%ss)", cache_key, timeout)
            return True
        except Exception:
            logger.exception("Error touching cache key %s", key)
            return False

    # ── Cache-aside ──────────────────────────────────────────

    async def get_or_set(
        self,
        key: str,
        fetch_fn: Callable[[], Any | Awaitable[Any]],
        timeout: float = DEFAULT_TIMEOUT,
        version: int = DEFAULT_VERSION,
    ) -> Any:
        """Return the cached value or fetch, store and return a fresh one.

        A cached ``None`` is indistinguishable from a miss and is re-fetched.
        Concurrent callers for the same missing key may each run ``fetch_fn``.
        Errors raised by ``fetch_fn`` propagate and nothing is stored.
        """
        cached = self.get(key, version)
        if cached is not None:
            return cached

        try:
            data = fetch_fn()
            if inspect.isawaitable(data):
                data = await data
        except Exception as exc:
            logger.error("Error in get_or_set for %s: %s", key, exc)
            raise

        self.set(key, data, timeout, version)
        return data

    # ── Counters ─────────────────────────────────────────────

    def incr(self, key: str, delta: int | float = 1, version: int = DEFAULT_VERSION) -> int | float | None:
        """Add ``delta`` to a numeric value (absent counts as 0).

        Returns None, leaving the entry untouched, when the stored value is
        not a number. The result is stored with COUNTER_TIMEOUT regardless of
        the entry's previous timeout.
        """
        try:
            current = self.get(key, version, 0)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                return None
            new_value = current + delta
            self.set(key, new_value, COUNTER_TIMEOUT, version)
            return new_value
        except Exception:
            logger.exception("Error incrementing cache key %s", key)
            return None

    def decr(self, key: str, delta: int | float = 1, version: int = DEFAULT_VERSION) -> int | float | None:
        return self.incr(key, -delta, version)

    # ── Key enumeration ──────────────────────────────────────

    def get_keys(self, pattern: str | None = None) -> list[str]:
        """Composite keys, optionally filtered by a ``*`` glob.

        Entries that have expired but not yet been evicted are included.
        """
        try:
            keys = list(self._entries)
            if not pattern:
                return keys
            regex = glob_to_regex(pattern)
            return [k for k in keys if regex.search(k)]
        except Exception:
            logger.exception("Error listing cache keys for pattern %r", pattern)
            return []

    def delete_pattern(self, pattern: str, version: int = DEFAULT_VERSION) -> int:
        """Delete the keys of ``version`` whose composite key matches ``pattern``."""
        try:
            prefix = make_key("", version)
            raw_keys = [
                k[len(prefix):] for k in self.get_keys(pattern) if k.startswith(prefix)
            ]
            deleted = self.delete_many(raw_keys, version)
            logger.info("Cache pattern %r deleted %d keys", pattern, deleted)
            return deleted
        except Exception:
            logger.exception("Error deleting cache pattern %r", pattern)
            return 0

    def clear(self) -> bool:
        """Drop every entry and reset all counters."""
        try:
            self._entries.clear()
            self._hits = self._misses = self._sets = self._deletes = 0
            logger.info("Cache cleared")
            return True
        except Exception:
            logger.exception("Error clearing cache")
            return False

    # ── Introspection ────────────────────────────────────────

    def _estimate_memory_usage(self) -> int:
        total = 0
        for cache_key, entry in self._entries.items():
            total += len(cache_key) * 2
            total += _serialized_size(entry.data) * 2
            total += ENTRY_OVERHEAD_BYTES
        return total

    def get_stats(self) -> CacheStats:
        try:
            total = self._hits + self._misses
            hit_rate = round(self._hits / total * 100, 2) if total > 0 else 0
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                deletes=self._deletes,
                total_requests=total,
                hit_rate=hit_rate,
                cache_size=len(self._entries),
                memory_usage=self._estimate_memory_usage(),
            )
        except Exception:
            logger.exception("Error computing cache stats")
            return CacheStats(cache_size=len(self._entries))

    def get_cache_info(self) -> CacheInfo:
        """Debugging view of the first ``info_entry_limit`` entries."""
        now_ms = self._now_ms()
        try:
            entries = [
                CacheEntryInfo(
                    key=cache_key,
                    age=int(now_ms - entry.created_at * 1000),
                    ttl=entry.ttl_ms,
                    version=entry.version,
                    size=_serialized_size(entry.data),
                )
                for cache_key, entry in list(self._entries.items())[: self.info_entry_limit]
            ]
        except Exception:
            logger.exception("Error collecting cache entry info")
            entries = []
        return CacheInfo(
            stats=self.get_stats(),
            entries=entries,
            total_entries=len(self._entries),
        )

    # ── Background sweep ─────────────────────────────────────

    def sweep_expired(self) -> int:
        """Evict every entry that is no longer live. Returns the count removed."""
        now_ms = self._now_ms()
        expired = [k for k, e in self._entries.items() if not self._is_live(e, now_ms)]
        for cache_key in expired:
            del self._entries[cache_key]
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    @property
    def running(self) -> bool:
        return self._sweep_handle is not None

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Schedule the periodic sweep on ``loop`` (default: the running loop)."""
        if self._sweep_handle is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        self._schedule_sweep()
        logger.info("Cache sweep scheduled every %ss", self.sweep_interval)

    def _schedule_sweep(self) -> None:
        if self._loop is None:
            raise RuntimeError("cache sweep has no event loop; call start() first")
        self._sweep_handle = self._loop.call_later(self.sweep_interval, self._on_sweep_timer)

    def _on_sweep_timer(self) -> None:
        try:
            self.sweep_expired()
        except Exception:
            logger.exception("Cache sweep failed")
        if self._sweep_handle is not None:
            self._schedule_sweep()

    def close(self) -> None:
        """Cancel the sweep and drop all entries. Safe to call repeatedly."""
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
        self._loop = None
        self._entries.clear()
        logger.info("Cache closed")
