"""Tests for the Redis-backed verification cache using an in-process Redis double."""
import fnmatch
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import redis

from bl_reconciliation.models.db.enums import MatchType
from bl_reconciliation.models.verification import VerificationKey, VerificationResult
from bl_reconciliation.services.redis_cache import RedisVerificationCache
from bl_reconciliation.services.verification_cache import CacheUnavailableError


class DictRedis:
    """Minimal subset of the redis-py client API backed by dicts (bytes values like the real client)."""

    def __init__(self):
        self.strings: dict[str, bytes] = {}
        self.expiry: dict[str, int] = {}
        self.hashes: dict[str, dict[str, int]] = {}

    def ping(self):
        return True

    def set(self, key, value, ex=None):
        self.strings[key] = value.encode("utf-8") if isinstance(value, str) else value
        if ex is not None:
            self.expiry[key] = ex
        return True

    def get(self, key):
        return self.strings.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.strings.pop(key, None) is not None:
                removed += 1
            if self.hashes.pop(key, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match=None):
        for key in list(self.strings):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key.encode("utf-8")

    def hincrby(self, name, field, amount=1):
        bucket = self.hashes.setdefault(name, {})
        bucket[field] = bucket.get(field, 0) + amount
        return bucket[field]

    def hgetall(self, name):
        return {k.encode("utf-8"): str(v).encode("utf-8") for k, v in self.hashes.get(name, {}).items()}

    def hdel(self, name, *fields):
        bucket = self.hashes.get(name, {})
        return sum(1 for f in fields if bucket.pop(f, None) is not None)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture()
def fake_redis():
    return DictRedis()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def redis_cache(fake_redis, clock):
    return RedisVerificationCache(fake_redis, ttl=timedelta(hours=24), prefix="test:verif", clock=clock)


def test_round_trip_keeps_result_fields(redis_cache, fake_redis):
    key = VerificationKey(42, 7)
    result = VerificationResult.matched(
        MatchType.INVOICE_REF, {"RefFacture": "FAC123456", "Fournisseurs": "CMP"}, candidate_count=2, ambiguous=True
    )
    redis_cache.put(key, result)
    assert "test:verif:7:42" in fake_redis.strings
    assert fake_redis.expiry["test:verif:7:42"] == 24 * 3600 + 3600

    cached, hit = redis_cache.get(key)
    assert hit is True
    assert cached == result


def test_expiry_is_logical_and_visible_to_stats(redis_cache, clock):
    redis_cache.put(VerificationKey(1, 7), VerificationResult.not_found(), ttl=timedelta(minutes=5))
    redis_cache.put(VerificationKey(2, 7), VerificationResult.not_found(3))
    clock.now += timedelta(minutes=5)

    cached, hit = redis_cache.get(VerificationKey(1, 7))
    assert hit is False and cached is None
    stats = redis_cache.stats(store_id=7)
    assert (stats.total_entries, stats.valid_entries, stats.expired_entries) == (2, 1, 1)
    assert stats.misses == 1 and stats.hits == 0

    assert redis_cache.cleanup(store_id=7) == 1
    after = redis_cache.stats(store_id=7)
    assert after.total_entries == 1
    assert after.hits == 0 and after.misses == 0


def test_counters_hash_is_not_counted_as_entry(redis_cache):
    redis_cache.get(VerificationKey(9, 7))
    redis_cache.put(VerificationKey(9, 7), VerificationResult.not_found())
    redis_cache.get(VerificationKey(9, 7))
    stats = redis_cache.stats()
    assert stats.total_entries == 1
    assert stats.hit_rate == 0.5


def test_invalidate(redis_cache):
    key = VerificationKey(5, 7)
    redis_cache.put(key, VerificationResult.not_found())
    assert redis_cache.invalidate(key) is True
    assert redis_cache.invalidate(key) is False


def test_redis_errors_become_cache_unavailable():
    broken = MagicMock()
    broken.get.side_effect = redis.ConnectionError("connection refused")
    cache = RedisVerificationCache(broken, prefix="test:verif")
    with pytest.raises(CacheUnavailableError):
        cache.get(VerificationKey(1, 7))
