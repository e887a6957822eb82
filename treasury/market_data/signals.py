"""Typed access to cached market signals.

Converts the cache's `UNAVAILABLE` sentinel into neutral typed values so the
scoring code always receives numbers and lists.
"""

from __future__ import annotations

from typing import Optional, Sequence

from treasury.market_data.cache import UNAVAILABLE, MarketSignalCache, SignalClass
from treasury.market_data.interfaces import (
    FundingRateSource,
    MarketSnapshotSource,
    NativeYieldSource,
    PoolYieldSource,
    SpotPriceSource,
)
from treasury.types import FundingRate, NativeYield, PerpMarket, PoolYield

POOLS_KEY = "pools"
NATIVE_KEY = "native"
FUNDING_KEY = "funding"
MARKETS_KEY = "markets"


def spot_key(asset: str) -> str:
    return f"spot:{asset.upper()}"


async def _empty() -> list:
    return []


class MarketSignals:
    def __init__(
        self,
        *,
        cache: MarketSignalCache,
        price_source: SpotPriceSource,
        pool_source: PoolYieldSource,
        native_source: Optional[NativeYieldSource] = None,
        funding_source: Optional[FundingRateSource] = None,
        market_source: Optional[MarketSnapshotSource] = None,
    ) -> None:
        self.cache = cache
        self._price_source = price_source

        cache.register(POOLS_KEY, SignalClass.POOL_YIELDS, pool_source.get_pool_yields)
        cache.register(
            NATIVE_KEY,
            SignalClass.NATIVE_YIELDS,
            native_source.get_native_yields if native_source else _empty,
        )
        cache.register(
            FUNDING_KEY,
            SignalClass.FUNDING_RATE,
            funding_source.get_funding_rates if funding_source else _empty,
        )
        cache.register(
            MARKETS_KEY,
            SignalClass.MARKET_SNAPSHOT,
            market_source.get_market_snapshot if market_source else _empty,
        )

    async def spot_price(self, asset: str) -> float:
        key = spot_key(asset)
        if not self.cache.is_registered(key):
            symbol = asset.upper()

            async def fetch() -> float:
                return await self._price_source.get_spot_price(symbol)

            self.cache.register(key, SignalClass.SPOT_PRICE, fetch)

        value = await self.cache.get(key)
        return 0.0 if value is UNAVAILABLE else float(value)

    async def pool_yields(self) -> Sequence[PoolYield]:
        return await self._get_list(POOLS_KEY)

    async def native_yields(self) -> Sequence[NativeYield]:
        return await self._get_list(NATIVE_KEY)

    async def funding_rates(self) -> Sequence[FundingRate]:
        return await self._get_list(FUNDING_KEY)

    async def perp_markets(self) -> Sequence[PerpMarket]:
        return await self._get_list(MARKETS_KEY)

    async def _get_list(self, key: str) -> list:
        value = await self.cache.get(key)
        return [] if value is UNAVAILABLE else list(value)
