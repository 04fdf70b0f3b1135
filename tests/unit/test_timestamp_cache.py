from datetime import timedelta

from l1beat.core.cooldown import TimestampCache


def test_try_acquire_respects_ttl(clock):
    cache = TimestampCache(ttl=timedelta(minutes=5), clock=clock)

    assert cache.try_acquire("refresh:daily") is True
    assert cache.try_acquire("refresh:daily") is False
    assert cache.try_acquire("refresh:weekly") is True

    clock.advance(minutes=5)
    assert cache.is_fresh("refresh:daily") is False
    assert cache.try_acquire("refresh:daily") is True
    assert cache.get("refresh:daily") == clock.now


def test_custom_ttl_and_clear(clock):
    cache = TimestampCache(ttl=timedelta(minutes=5), clock=clock)
    cache.touch("k")
    clock.advance(minutes=2)

    assert cache.is_fresh("k") is True
    assert cache.is_fresh("k", ttl=timedelta(minutes=1)) is False

    cache.clear("k")
    assert cache.get("k") is None
    cache.touch("a")
    cache.touch("b")
    cache.clear()
    assert cache.get("a") is None and cache.get("b") is None
