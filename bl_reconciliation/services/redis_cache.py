"""Redis-backed verification cache.

Shares the cache across API workers and survives restarts. Layout:

 1. String  <prefix>:<store_id>:<delivery_id>  JSON {"result": {...}, "expires_at": <epoch>}
 2. Hash    <prefix>:counters                   fields "<store_id>:hits" / "<store_id>:misses"

Logical expiry is ``expires_at`` inside the payload; the Redis key itself
lives ``redis_expiry_grace_seconds`` longer so expired entries remain visible
to stats and cleanup. Any Redis failure raises CacheUnavailableError.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, Tuple

import redis

from bl_reconciliation.config import VERIFICATION_CACHE
from bl_reconciliation.models.verification import CacheStats, VerificationKey, VerificationResult
from bl_reconciliation.services.verification_cache import CacheUnavailableError, default_ttl
from bl_reconciliation.utils import get_logger
from bl_reconciliation.utils.time import utc_now

logger = get_logger(__name__)


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(_text(value))
    except (TypeError, ValueError):
        return 0


class RedisVerificationCache:
    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        ttl: Optional[timedelta] = None,
        prefix: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.default_ttl = ttl or default_ttl()
        self._prefix = str(prefix or VERIFICATION_CACHE["redis_key_prefix"])
        self._grace_seconds = int(VERIFICATION_CACHE["redis_expiry_grace_seconds"])
        self._counters_key = f"{self._prefix}:counters"
        self._clock = clock
        if client is None:
            url = str(VERIFICATION_CACHE["redis_url"])
            timeout = float(VERIFICATION_CACHE["redis_socket_timeout"])
            client = redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
            self._call(client.ping)
            logger.info("Connected to Redis verification cache", url=url)
        self._redis = client

    # ------------------------------------------------------------------ helpers
    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (redis.RedisError, ConnectionError) as e:
            logger.error("Redis verification cache unavailable", operation=getattr(fn, "__name__", "call"), error=str(e))
            raise CacheUnavailableError(f"Verification cache unavailable: {e}") from e

    def _entry_key(self, key: VerificationKey) -> str:
        return f"{self._prefix}:{key.store_id}:{key.delivery_id}"

    def _pattern(self, store_id: Optional[int]) -> str:
        return f"{self._prefix}:{store_id}:*" if store_id is not None else f"{self._prefix}:*:*"

    def _iter_entries(self, store_id: Optional[int]) -> Iterator[Tuple[str, Optional[dict[str, Any]]]]:
        keys = self._call(lambda: list(self._redis.scan_iter(match=self._pattern(store_id))))
        for raw_key in keys:
            key = _text(raw_key)
            raw = self._call(self._redis.get, key)
            yield key, self._decode(raw)

    @staticmethod
    def _decode(raw: Any) -> Optional[dict[str, Any]]:
        if raw is None:
            return None
        try:
            payload = json.loads(_text(raw))
        except ValueError:
            return None
        return payload if isinstance(payload, dict) and "expires_at" in payload else None

    def _expired(self, payload: dict[str, Any]) -> bool:
        return float(payload["expires_at"]) <= self._clock().timestamp()

    def _count(self, store_id: int, field: str) -> None:
        self._call(self._redis.hincrby, self._counters_key, f"{store_id}:{field}", 1)

    # ---------------------------------------------------------------- interface
    def get(self, key: VerificationKey) -> Tuple[Optional[VerificationResult], bool]:
        payload = self._decode(self._call(self._redis.get, self._entry_key(key)))
        if payload is None or self._expired(payload):
            self._count(key.store_id, "misses")
            return None, False
        try:
            result = VerificationResult.from_dict(payload["result"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cache entry", key=self._entry_key(key), error=str(e))
            self._count(key.store_id, "misses")
            return None, False
        self._count(key.store_id, "hits")
        return result, True

    def put(self, key: VerificationKey, result: VerificationResult, ttl: Optional[timedelta] = None) -> None:
        lifetime = ttl if ttl is not None else self.default_ttl
        expires_at = self._clock() + lifetime
        payload = json.dumps({"result": result.to_dict(), "expires_at": expires_at.timestamp()}, default=str)
        redis_ttl = max(1, int(lifetime.total_seconds()) + self._grace_seconds)
        self._call(self._redis.set, self._entry_key(key), payload, ex=redis_ttl)

    def invalidate(self, key: VerificationKey) -> bool:
        return _to_int(self._call(self._redis.delete, self._entry_key(key))) > 0

    def stats(self, store_id: Optional[int] = None) -> CacheStats:
        total = expired = 0
        for _key, payload in self._iter_entries(store_id):
            if payload is None:
                continue
            total += 1
            if self._expired(payload):
                expired += 1
        counters = {_text(k): _to_int(v) for k, v in (self._call(self._redis.hgetall, self._counters_key) or {}).items()}
        if store_id is None:
            hits = sum(v for k, v in counters.items() if k.endswith(":hits"))
            misses = sum(v for k, v in counters.items() if k.endswith(":misses"))
        else:
            hits = counters.get(f"{store_id}:hits", 0)
            misses = counters.get(f"{store_id}:misses", 0)
        return CacheStats(total_entries=total, valid_entries=total - expired, expired_entries=expired, hits=hits, misses=misses)

    def cleanup(self, store_id: Optional[int] = None) -> int:
        cleaned = 0
        for key, payload in self._iter_entries(store_id):
            if payload is None or self._expired(payload):
                cleaned += _to_int(self._call(self._redis.delete, key))
        self.reset_stats(store_id)
        logger.info("Verification cache cleaned", store_id=store_id, cleaned_count=cleaned, backend="redis")
        return cleaned

    def reset_stats(self, store_id: Optional[int] = None) -> None:
        if store_id is None:
            self._call(self._redis.delete, self._counters_key)
        else:
            self._call(self._redis.hdel, self._counters_key, f"{store_id}:hits", f"{store_id}:misses")


__all__ = ["RedisVerificationCache"]
