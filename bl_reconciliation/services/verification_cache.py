"""Verification result cache with TTL and lazy expiry.

Entries are keyed by VerificationKey (delivery, store). Expired entries are
never returned by ``get`` but stay stored until ``cleanup`` compacts them,
so stats can report them separately. Hit/miss counters are kept per store
and reset by ``cleanup``/``reset_stats``.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

from bl_reconciliation.config import VERIFICATION_CACHE
from bl_reconciliation.models.verification import CacheStats, VerificationKey, VerificationResult
from bl_reconciliation.utils import get_logger
from bl_reconciliation.utils.time import utc_now

logger = get_logger(__name__)


class CacheUnavailableError(RuntimeError):
    """The cache backend cannot be reached; callers must fail hard."""


class VerificationCache(Protocol):
    default_ttl: timedelta

    def get(self, key: VerificationKey) -> Tuple[Optional[VerificationResult], bool]: ...
    def put(self, key: VerificationKey, result: VerificationResult, ttl: Optional[timedelta] = None) -> None: ...
    def invalidate(self, key: VerificationKey) -> bool: ...
    def stats(self, store_id: Optional[int] = None) -> CacheStats: ...
    def cleanup(self, store_id: Optional[int] = None) -> int: ...
    def reset_stats(self, store_id: Optional[int] = None) -> None: ...


def default_ttl() -> timedelta:
    return timedelta(seconds=int(VERIFICATION_CACHE["ttl_seconds"]))


@dataclass
class CacheEntry:
    key: VerificationKey
    result: VerificationResult
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class _Counters:
    hits: int = 0
    misses: int = 0


class InMemoryVerificationCache:
    """Process-local cache guarded by one coarse re-entrant lock."""

    def __init__(self, ttl: Optional[timedelta] = None, *, clock: Callable[[], datetime] = utc_now):
        self.default_ttl = ttl or default_ttl()
        self._clock = clock
        self._entries: Dict[VerificationKey, CacheEntry] = {}
        self._counters: Dict[int, _Counters] = {}
        self._lock = threading.RLock()

    def get(self, key: VerificationKey) -> Tuple[Optional[VerificationResult], bool]:
        with self._lock:
            counters = self._counters.setdefault(key.store_id, _Counters())
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                counters.misses += 1
                return None, False
            counters.hits += 1
            return entry.result, True

    def put(self, key: VerificationKey, result: VerificationResult, ttl: Optional[timedelta] = None) -> None:
        with self._lock:
            expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
            self._entries[key] = CacheEntry(key=key, result=result, expires_at=expires_at)

    def invalidate(self, key: VerificationKey) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("Cache entry invalidated", delivery_id=key.delivery_id, store_id=key.store_id)
        return removed

    def stats(self, store_id: Optional[int] = None) -> CacheStats:
        with self._lock:
            now = self._clock()
            entries = [e for e in self._entries.values() if store_id is None or e.key.store_id == store_id]
            expired = sum(1 for e in entries if e.is_expired(now))
            if store_id is None:
                hits = sum(c.hits for c in self._counters.values())
                misses = sum(c.misses for c in self._counters.values())
            else:
                counters = self._counters.get(store_id, _Counters())
                hits, misses = counters.hits, counters.misses
            return CacheStats(
                total_entries=len(entries),
                valid_entries=len(entries) - expired,
                expired_entries=expired,
                hits=hits,
                misses=misses,
            )

    def cleanup(self, store_id: Optional[int] = None) -> int:
        with self._lock:
            now = self._clock()
            doomed = [
                k for k, e in self._entries.items()
                if e.is_expired(now) and (store_id is None or k.store_id == store_id)
            ]
            for k in doomed:
                del self._entries[k]
            self.reset_stats(store_id)
        logger.info("Verification cache cleaned", store_id=store_id, cleaned_count=len(doomed))
        return len(doomed)

    def reset_stats(self, store_id: Optional[int] = None) -> None:
        with self._lock:
            if store_id is None:
                self._counters.clear()
            else:
                self._counters.pop(store_id, None)


def create_verification_cache(backend: Optional[str] = None) -> VerificationCache:
    """Build the configured cache backend ("memory" or "redis")."""
    name = str(backend or VERIFICATION_CACHE["backend"]).lower()
    if name == "redis":
        from bl_reconciliation.services.redis_cache import RedisVerificationCache

        cache = RedisVerificationCache()
        logger.info("Using Redis-backed verification cache", ttl_seconds=int(cache.default_ttl.total_seconds()))
        return cache
    if name != "memory":
        raise ValueError(f"Unknown verification cache backend '{name}'")
    cache = InMemoryVerificationCache()
    logger.info("Using in-memory verification cache", ttl_seconds=int(cache.default_ttl.total_seconds()))
    return cache


__all__ = [
    "VerificationCache",
    "InMemoryVerificationCache",
    "CacheEntry",
    "CacheUnavailableError",
    "create_verification_cache",
    "default_ttl",
]
