"""Tests for TTLCache and RequestDeduplicator."""

import asyncio

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tram_matcher.core.cache import RequestDeduplicator, TTLCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Producer:
    """Counts calls; optionally fails or waits for a release signal."""

    def __init__(self, value="value", error: Exception | None = None, delay: float = 0) -> None:
        self.value = value
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        n = self.calls
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return f"{self.value}-{n}"


def test_hit_within_ttl_skips_producer():
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    produce = Producer()

    async def scenario():
        first = await cache.get("k", produce)
        clock.now += 9
        second = await cache.get("k", produce)
        return first, second

    assert asyncio.run(scenario()) == ("value-1", "value-1")
    assert produce.calls == 1


def test_expired_entry_is_refetched():
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    produce = Producer()

    async def scenario():
        await cache.get("k", produce)
        clock.now += 10
        return await cache.get("k", produce)

    assert asyncio.run(scenario()) == "value-2"
    assert produce.calls == 2


def test_per_call_ttl_overrides_default():
    clock = FakeClock()
    cache = TTLCache(default_ttl=60, clock=clock)
    produce = Producer()

    async def scenario():
        await cache.get("k", produce, ttl=3)
        clock.now += 4
        await cache.get("k", produce, ttl=3)

    asyncio.run(scenario())
    assert produce.calls == 2


def test_least_recently_used_entry_is_evicted():
    clock = FakeClock()
    cache = TTLCache(default_ttl=60, max_size=2, clock=clock)

    async def scenario():
        await cache.get("A", Producer("a"))
        clock.now += 1
        await cache.get("B", Producer("b"))
        clock.now += 1
        await cache.get("A", Producer("a"))  # hit, A becomes most recent
        clock.now += 1
        await cache.get("C", Producer("c"))

    asyncio.run(scenario())
    assert "A" in cache
    assert "B" not in cache
    assert "C" in cache
    assert len(cache) == 2


def test_failures_are_not_cached():
    cache = TTLCache(default_ttl=60, clock=FakeClock())
    failing = Producer(error=RuntimeError("upstream down"))
    working = Producer()

    async def scenario():
        with pytest.raises(RuntimeError):
            await cache.get("k", failing)
        return await cache.get("k", working)

    assert asyncio.run(scenario()) == "value-1"
    assert failing.calls == 1
    assert working.calls == 1


def test_concurrent_misses_share_one_fetch():
    cache = TTLCache(default_ttl=60)
    produce = Producer(delay=0.01)

    async def scenario():
        return await asyncio.gather(*(cache.get("k", produce) for _ in range(5)))

    assert asyncio.run(scenario()) == ["value-1"] * 5
    assert produce.calls == 1


def test_cleanup_removes_expired_entries():
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)

    async def scenario():
        await cache.get("old", Producer())
        clock.now += 5
        await cache.get("new", Producer())
        clock.now += 5

    asyncio.run(scenario())
    assert cache.cleanup() == 1
    assert "old" not in cache
    assert "new" in cache


def test_delete_and_clear():
    cache = TTLCache(default_ttl=10, clock=FakeClock())

    async def scenario():
        await cache.get("a", Producer())
        await cache.get("b", Producer())

    asyncio.run(scenario())
    assert cache.delete("a")
    assert not cache.delete("a")
    cache.clear()
    assert len(cache) == 0


def test_stats():
    cache = TTLCache(default_ttl=10, max_size=5, clock=FakeClock())
    produce = Producer()

    async def scenario():
        await cache.get("k", produce)
        await cache.get("k", produce)

    asyncio.run(scenario())
    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["max_size"] == 5
    assert stats["hit_rate"] == 0.5
    assert stats["entries"][0]["access_count"] == 2


def test_invalid_configuration():
    with pytest.raises(ValueError):
        TTLCache(default_ttl=-1)
    with pytest.raises(ValueError):
        TTLCache(max_size=0)


def test_sweep_job_registered_and_removed():
    cache = TTLCache(default_ttl=10, name="test-cache")

    async def scenario():
        scheduler = AsyncIOScheduler()
        cache.start(scheduler)
        registered = scheduler.get_job("test-cache:cleanup") is not None
        cache.close()
        return registered, scheduler.get_job("test-cache:cleanup")

    registered, after_close = asyncio.run(scenario())
    assert registered
    assert after_close is None


def test_dedupe_shares_result():
    dedup = RequestDeduplicator(window=5)
    produce = Producer(delay=0.01)

    async def scenario():
        return await asyncio.gather(
            dedup.dedupe("k", produce), dedup.dedupe("k", produce), dedup.dedupe("k", produce)
        )

    assert asyncio.run(scenario()) == ["value-1"] * 3
    assert produce.calls == 1


def test_dedupe_shares_failure():
    dedup = RequestDeduplicator(window=5)
    produce = Producer(error=RuntimeError("boom"), delay=0.01)

    async def scenario():
        return await asyncio.gather(
            dedup.dedupe("k", produce), dedup.dedupe("k", produce), return_exceptions=True
        )

    results = asyncio.run(scenario())
    assert all(isinstance(r, RuntimeError) for r in results)
    assert produce.calls == 1


def test_dedupe_releases_key_after_settling():
    dedup = RequestDeduplicator(window=5)
    produce = Producer()

    async def scenario():
        first = await dedup.dedupe("k", produce)
        # Let the done callback run
        await asyncio.sleep(0)
        released = "k" not in dedup
        second = await dedup.dedupe("k", produce)
        return first, released, second

    assert asyncio.run(scenario()) == ("value-1", True, "value-2")


def test_dedupe_keys_are_independent():
    dedup = RequestDeduplicator(window=5)
    produce = Producer(delay=0.01)

    async def scenario():
        return await asyncio.gather(dedup.dedupe("a", produce), dedup.dedupe("b", produce))

    assert sorted(asyncio.run(scenario())) == ["value-1", "value-2"]
    assert produce.calls == 2


def test_dedupe_outside_window_starts_new_request():
    clock = FakeClock()
    dedup = RequestDeduplicator(window=5, clock=clock)
    produce = Producer(delay=0.01)

    async def scenario():
        first = asyncio.ensure_future(dedup.dedupe("k", produce))
        await asyncio.sleep(0)
        clock.now += 6
        second = asyncio.ensure_future(dedup.dedupe("k", produce))
        return await asyncio.gather(first, second)

    assert asyncio.run(scenario()) == ["value-1", "value-2"]
    assert produce.calls == 2


def test_dedupe_cleanup_drops_stale_registrations():
    clock = FakeClock()
    dedup = RequestDeduplicator(window=5, clock=clock)

    async def scenario():
        task = asyncio.ensure_future(dedup.dedupe("k", Producer(delay=0.01)))
        await asyncio.sleep(0)
        clock.now += 5
        removed = dedup.cleanup()
        await task
        return removed

    assert asyncio.run(scenario()) == 1
    assert len(dedup) == 0
