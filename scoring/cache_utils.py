"""Read-through result cache for leaderboard queries.

Backends are injected: ``TTLCache`` keeps entries in process memory,
``RedisCacheBackend`` shares them through Redis. ``ResultCache`` sits in
front of either one, collapses concurrent misses for the same key, and
treats any backend failure as a miss.
"""

from __future__ import annotations

import json
import logging
import threading
import weakref
from dataclasses import dataclass
from fnmatch import fnmatchcase
from time import monotonic
from typing import Any, Callable, Optional, Protocol

import redis

from scoring.errors import CacheBackendError

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete_pattern(self, pattern: str) -> int: ...


class TTLCache:
    """Thread-safe in-memory backend with per-entry expiry.

    Expired entries are swept from the write path at most once every
    ``purge_interval_seconds``, so keys that are never read again do not
    pile up.
    """

    def __init__(self, clock: Callable[[], float] = monotonic, purge_interval_seconds: float = 60.0):
        self._clock = clock
        self._store: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()
        self.purge_interval_seconds = purge_interval_seconds
        self._next_purge = clock() + purge_interval_seconds

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, (expires_at, _) in self._store.items() if now >= expires_at]
        for k in expired:
            del self._store[k]
        self._next_purge = now + self.purge_interval_seconds
        return len(expired)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        with self._lock:
            if now >= self._next_purge:
                self._purge_locked(now)
            self._store[key] = (now + ttl_seconds, value)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            expires_at, val = item
            if self._clock() >= expires_at:
                self._store.pop(key, None)
                return None
            return val

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._store if fnmatchcase(k, pattern)]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class RedisCacheBackend:
    """Redis backend: SETEX for writes, SCAN MATCH + DEL for invalidation."""

    def __init__(self, client: "redis.Redis", scan_count: int = 500):
        self.client = client
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=2.0))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis ping failed: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis GET failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.setex(key, ttl_seconds, value)
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis SETEX failed: {exc}") from exc

    def delete_pattern(self, pattern: str) -> int:
        try:
            keys = list(self.client.scan_iter(match=pattern, count=self.scan_count))
            if not keys:
                return 0
            return int(self.client.delete(*keys))
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis pattern delete failed: {exc}") from exc


@dataclass
class CacheCounter:
    hits: int = 0
    misses: int = 0
    errors: int = 0


class ResultCache:
    def __init__(self, backend: CacheBackend, ttl_seconds: int = 300, prefix: str = "gse"):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self.counter = CacheCounter()
        # Entries vanish once no caller holds the lock.
        self._key_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()
        # Bumped on every invalidation of a group; a compute that started
        # under an older generation must not be stored.
        self._generations: dict[int, int] = {}
        self._generation_lock = threading.Lock()

    # ── Keys ────────────────────────────────────────────────────────────

    def leaderboard_key(self, group_id: int, period: str, limit: int) -> str:
        return f"{self.prefix}:group-leaderboard:{group_id}:{period}:{limit}"

    def leaderboard_pattern(self, group_id: int, period: str | None = None) -> str:
        if period:
            return f"{self.prefix}:group-leaderboard:{group_id}:{period}:*"
        return f"{self.prefix}:group-leaderboard:{group_id}:*"

    # ── Read-through ────────────────────────────────────────────────────

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def generation(self, group_id: int) -> int:
        with self._generation_lock:
            return self._generations.get(group_id, 0)

    def _safe_get(self, key: str) -> Optional[str]:
        try:
            return self.backend.get(key)
        except CacheBackendError as exc:
            self.counter.errors += 1
            logger.warning("cache_backend_error", extra={"op": "get", "key": key, "error": str(exc)})
            return None

    def _safe_set(self, key: str, value: str) -> None:
        try:
            self.backend.set(key, value, self.ttl_seconds)
        except CacheBackendError as exc:
            self.counter.errors += 1
            logger.warning("cache_backend_error", extra={"op": "set", "key": key, "error": str(exc)})

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        encode: Callable[[Any], Any] = lambda v: v,
        decode: Callable[[Any], Any] = lambda v: v,
        group_id: int | None = None,
    ) -> Any:
        """Return the cached value for ``key`` or compute, store and return it.

        Values go through ``encode`` → JSON on the way in and JSON →
        ``decode`` on the way out, also on a miss, so hot and cold reads
        return identical results.

        With ``group_id``, a result is only stored if the group was not
        invalidated while it was being computed.
        """
        raw = self._safe_get(key)
        if raw is not None:
            self.counter.hits += 1
            return decode(json.loads(raw))

        with self._lock_for(key):
            # Another thread may have filled the key while we waited.
            raw = self._safe_get(key)
            if raw is not None:
                self.counter.hits += 1
                return decode(json.loads(raw))
            self.counter.misses += 1
            started_at = self.generation(group_id) if group_id is not None else None
            raw = json.dumps(encode(compute()), default=str)
            if group_id is None:
                self._safe_set(key, raw)
            else:
                with self._generation_lock:
                    current = self._generations.get(group_id, 0)
                    if current == started_at:
                        self._safe_set(key, raw)
                if current != started_at:
                    logger.info("cache_store_skipped", extra={"key": key, "reason": "invalidated_during_compute"})
            return decode(json.loads(raw))

    # ── Invalidation ────────────────────────────────────────────────────

    def invalidate_group(self, group_id: int, period: str | None = None) -> int:
        pattern = self.leaderboard_pattern(group_id, period)
        with self._generation_lock:
            self._generations[group_id] = self._generations.get(group_id, 0) + 1
        try:
            removed = self.backend.delete_pattern(pattern)
        except CacheBackendError as exc:
            self.counter.errors += 1
            logger.warning("cache_backend_error", extra={"op": "delete_pattern", "key": pattern, "error": str(exc)})
            return 0
        logger.info("cache_invalidated", extra={"pattern": pattern, "removed": removed})
        return removed
