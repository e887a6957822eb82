"""Tests for the market signal cache and typed signal access."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import FakePoolSource, FakePriceSource, ManualClock
from treasury.config import CacheConfig
from treasury.market_data.cache import UNAVAILABLE, MarketSignalCache, SignalClass, ttl_for
from treasury.market_data.signals import MarketSignals


class CountingFetcher:
    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        value = self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


def test_default_ttls_per_signal_class():
    config = CacheConfig()
    assert ttl_for(config, SignalClass.SPOT_PRICE) == 30
    assert ttl_for(config, SignalClass.POOL_YIELDS) == 60
    assert ttl_for(config, SignalClass.NATIVE_YIELDS) == 120
    assert ttl_for(config, SignalClass.FUNDING_RATE) == 60
    assert ttl_for(config, SignalClass.MARKET_SNAPSHOT) == 15


@pytest.mark.asyncio
async def test_hit_within_ttl_does_not_call_source():
    clock = ManualClock()
    cache = MarketSignalCache(clock=clock)
    fetcher = CountingFetcher([2.0, 3.0])
    cache.register("spot:SUI", SignalClass.SPOT_PRICE, fetcher)

    assert await cache.get("spot:SUI") == 2.0
    clock.advance(29)
    assert await cache.get("spot:SUI") == 2.0
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_expired_entry_is_refetched():
    clock = ManualClock()
    cache = MarketSignalCache(clock=clock)
    fetcher = CountingFetcher([2.0, 3.0])
    cache.register("spot:SUI", SignalClass.SPOT_PRICE, fetcher)

    await cache.get("spot:SUI")
    clock.advance(30)
    assert await cache.get("spot:SUI") == 3.0
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_failure_serves_stale_value():
    clock = ManualClock()
    cache = MarketSignalCache(clock=clock)
    fetcher = CountingFetcher([2.0, RuntimeError("feed down")])
    cache.register("spot:SUI", SignalClass.SPOT_PRICE, fetcher)

    await cache.get("spot:SUI")
    clock.advance(31)
    assert await cache.get("spot:SUI") == 2.0

    status = cache.status()[0]
    assert status["failures"] == 1
    assert "feed down" in status["last_error"]
    assert status["fresh"] is False
    assert status["available"] is True


@pytest.mark.asyncio
async def test_failure_with_nothing_cached_returns_sentinel():
    cache = MarketSignalCache(clock=ManualClock())
    cache.register("pools", SignalClass.POOL_YIELDS, CountingFetcher([RuntimeError("down")]))

    value = await cache.get("pools")

    assert value is UNAVAILABLE
    assert not value


@pytest.mark.asyncio
async def test_successful_fetch_refreshes_timestamp_even_if_unchanged():
    clock = ManualClock()
    cache = MarketSignalCache(clock=clock)
    cache.register("spot:SUI", SignalClass.SPOT_PRICE, CountingFetcher([2.0, 2.0]))

    await cache.get("spot:SUI")
    clock.advance(45)
    await cache.get("spot:SUI")

    assert cache.status()[0]["age_seconds"] == 0


@pytest.mark.asyncio
async def test_slow_source_is_bounded_by_timeout():
    cache = MarketSignalCache(config=CacheConfig(fetch_timeout_seconds=0.01), clock=ManualClock())

    async def hang():
        await asyncio.sleep(5)
        return 1.0

    cache.register("spot:SUI", SignalClass.SPOT_PRICE, hang)

    assert await cache.get("spot:SUI") is UNAVAILABLE
    assert "timed out" in cache.status()[0]["last_error"]


@pytest.mark.asyncio
async def test_concurrent_gets_share_one_fetch():
    cache = MarketSignalCache(clock=ManualClock())
    gate = asyncio.Event()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await gate.wait()
        return 2.5

    cache.register("spot:SUI", SignalClass.SPOT_PRICE, fetch)

    first = asyncio.ensure_future(cache.get("spot:SUI"))
    second = asyncio.ensure_future(cache.get("spot:SUI"))
    await asyncio.sleep(0)
    gate.set()

    assert await asyncio.gather(first, second) == [2.5, 2.5]
    assert calls == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refetch():
    cache = MarketSignalCache(clock=ManualClock())
    fetcher = CountingFetcher([2.0, 2.2])
    cache.register("spot:SUI", SignalClass.SPOT_PRICE, fetcher)

    await cache.get("spot:SUI")
    cache.invalidate("spot:SUI")

    assert await cache.get("spot:SUI") == 2.2


@pytest.mark.asyncio
async def test_unregistered_key_raises():
    cache = MarketSignalCache()
    with pytest.raises(KeyError):
        await cache.get("nope")


@pytest.mark.asyncio
async def test_signals_convert_sentinel_to_neutral_values():
    prices = FakePriceSource()
    prices.fail = True
    pools = FakePoolSource()
    pools.fail = True
    signals = MarketSignals(cache=MarketSignalCache(clock=ManualClock()), price_source=prices, pool_source=pools)

    assert await signals.spot_price("sui") == 0.0
    assert await signals.pool_yields() == []
    assert await signals.funding_rates() == []
    assert await signals.native_yields() == []


@pytest.mark.asyncio
async def test_signals_spot_price_goes_through_cache():
    prices = FakePriceSource(price=1.75)
    signals = MarketSignals(cache=MarketSignalCache(clock=ManualClock()), price_source=prices, pool_source=FakePoolSource())

    assert await signals.spot_price("SUI") == 1.75
    assert await signals.spot_price("sui") == 1.75
    assert prices.calls == 1
