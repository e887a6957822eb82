from __future__ import annotations

from typing import Protocol, Sequence

from treasury.types import FundingRate, NativeYield, PerpMarket, PoolYield


class SpotPriceSource(Protocol):
    async def get_spot_price(self, asset: str) -> float:
        """Return the USD spot price for an asset."""


class PoolYieldSource(Protocol):
    async def get_pool_yields(self) -> Sequence[PoolYield]:
        """Return the generic cross-protocol pool list."""


class NativeYieldSource(Protocol):
    async def get_native_yields(self) -> Sequence[NativeYield]:
        """Return supply rates from a venue's own feed."""


class FundingRateSource(Protocol):
    async def get_funding_rates(self) -> Sequence[FundingRate]:
        """Return current funding rates for tracked perpetual markets."""


class MarketSnapshotSource(Protocol):
    async def get_market_snapshot(self) -> Sequence[PerpMarket]:
        """Return a perp market overview (prices, open interest, funding)."""
