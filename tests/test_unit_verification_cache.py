import threading
from datetime import datetime, timedelta, timezone

from bl_reconciliation.models.db.enums import MatchType
from bl_reconciliation.models.verification import VerificationKey, VerificationResult
from bl_reconciliation.services.verification_cache import InMemoryVerificationCache


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


def _matched():
    return VerificationResult.matched(MatchType.INVOICE_REF, {"RefFacture": "FAC1"}, candidate_count=1)


def test_get_hit_before_expiry_and_miss_after():
    clock = FakeClock()
    cache = InMemoryVerificationCache(ttl=timedelta(hours=24), clock=clock)
    key = VerificationKey(delivery_id=42, store_id=7)
    result = _matched()
    cache.put(key, result)

    clock.advance(hours=23, minutes=59)
    cached, hit = cache.get(key)
    assert hit is True and cached == result

    clock.advance(minutes=1)  # now == expires_at
    cached, hit = cache.get(key)
    assert hit is False and cached is None


def test_expired_entries_counted_separately_and_cleaned():
    clock = FakeClock()
    cache = InMemoryVerificationCache(ttl=timedelta(minutes=10), clock=clock)
    cache.put(VerificationKey(1, 7), _matched())
    cache.put(VerificationKey(2, 7), VerificationResult.not_found(), ttl=timedelta(hours=1))
    cache.put(VerificationKey(3, 8), _matched())
    clock.advance(minutes=30)

    stats = cache.stats()
    assert (stats.total_entries, stats.valid_entries, stats.expired_entries) == (3, 1, 2)
    assert cache.stats(store_id=7).expired_entries == 1

    assert cache.cleanup(store_id=7) == 1
    assert cache.stats().total_entries == 2
    assert cache.cleanup() == 1
    assert cache.stats().total_entries == 1


def test_invalidate_removes_regardless_of_expiry():
    clock = FakeClock()
    cache = InMemoryVerificationCache(ttl=timedelta(minutes=1), clock=clock)
    live, dead = VerificationKey(1, 7), VerificationKey(2, 7)
    cache.put(live, _matched())
    cache.put(dead, _matched())
    clock.advance(minutes=5)
    cache.put(live, _matched())
    assert cache.invalidate(live) is True
    assert cache.invalidate(dead) is True
    assert cache.invalidate(dead) is False
    assert cache.stats().total_entries == 0


def test_hit_rate_counts_since_last_reset():
    cache = InMemoryVerificationCache()
    keys = [VerificationKey(i, 7) for i in range(10)]
    for k in keys[:4]:
        cache.put(k, _matched())
    for k in keys:
        cache.get(k)
    stats = cache.stats(store_id=7)
    assert stats.hits == 4 and stats.misses == 6
    assert stats.hit_rate == 0.4

    cache.cleanup(store_id=7)
    assert cache.stats(store_id=7).hit_rate == 0.0
    cache.get(keys[0])
    assert cache.stats(store_id=7).hit_rate == 1.0


def test_hit_counters_are_per_store():
    cache = InMemoryVerificationCache()
    cache.put(VerificationKey(1, 7), _matched())
    cache.get(VerificationKey(1, 7))
    cache.get(VerificationKey(1, 8))
    assert cache.stats(store_id=7).hit_rate == 1.0
    assert cache.stats(store_id=8).hit_rate == 0.0
    assert cache.stats().hit_rate == 0.5
    cache.reset_stats(store_id=8)
    assert cache.stats().hit_rate == 1.0


def test_concurrent_access_is_safe():
    cache = InMemoryVerificationCache()
    errors: list[Exception] = []

    def work(offset: int):
        try:
            for i in range(200):
                key = VerificationKey(offset * 1000 + i, offset)
                cache.put(key, _matched())
                cache.get(key)
                if i % 3 == 0:
                    cache.invalidate(key)
                cache.stats()
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=work, args=(n,)) for n in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    stats = cache.stats()
    assert stats.hits == 1000 and stats.misses == 0
    assert stats.total_entries == 5 * (200 - 67)
