import time

from kline_sync.cache.ttl_cache import NullCache, TTLCache


def test_cache_expiry():
    cache = TTLCache()
    cache.set("sync.realtime.enabled", "true", ttl_seconds=1)
    assert cache.get("sync.realtime.enabled") == "true"
    time.sleep(1.1)
    assert cache.get("sync.realtime.enabled") is None


def test_cache_invalidate_and_clear():
    cache = TTLCache()
    cache.set("a", "1", ttl_seconds=60)
    cache.set("b", "2", ttl_seconds=60)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == "2"
    cache.clear()
    assert cache.metrics()["size"] == 0


def test_null_cache_never_stores():
    cache = NullCache()
    cache.set("a", "1", ttl_seconds=60)
    assert cache.get("a") is None
