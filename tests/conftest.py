"""Shared test fixtures for pytest.

Provides fake market data sources, a manual clock, and a context builder
wired to paper adapters and an in-memory offline queue store.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from treasury.config import CacheConfig, SchedulerConfig, TreasuryConfig
from treasury.context import TreasuryContext, build_context
from treasury.execution.paper import PaperSafetyVault
from treasury.storage.kv import MemoryKeyValueStore
from treasury.types import FundingRate, NativeYield, PerpMarket, PoolYield, YieldOpportunity, YieldPosition


class ManualClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePriceSource:
    def __init__(self, price: float = 2.0) -> None:
        self.price = price
        self.fail = False
        self.calls = 0

    async def get_spot_price(self, asset: str) -> float:
        self.calls += 1
        if self.fail:
            raise RuntimeError("price feed down")
        return self.price


class FakePoolSource:
    def __init__(self, pools: Optional[list[PoolYield]] = None) -> None:
        self.pools = list(pools) if pools is not None else default_pools()
        self.fail = False
        self.calls = 0

    async def get_pool_yields(self) -> list[PoolYield]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("pool feed down")
        return list(self.pools)


class FakeNativeSource:
    def __init__(self, native: Optional[list[NativeYield]] = None) -> None:
        self.native = list(native) if native is not None else []
        self.calls = 0

    async def get_native_yields(self) -> list[NativeYield]:
        self.calls += 1
        return list(self.native)


class FakeFundingSource:
    def __init__(self, rates: Optional[list[FundingRate]] = None) -> None:
        self.rates = list(rates) if rates is not None else []
        self.calls = 0

    async def get_funding_rates(self) -> list[FundingRate]:
        self.calls += 1
        return list(self.rates)

    async def get_market_snapshot(self) -> list[PerpMarket]:
        return []


def default_pools() -> list[PoolYield]:
    """Scallop 6% and NAVI 4% on Sui, Aave 12% on Arbitrum, Compound 3% on Optimism."""
    return [
        PoolYield(pool="pool-scallop-sui", project="scallop-lend", chain="Sui", symbol="SUI", apy=6.0, tvl_usd=5_000_000),
        PoolYield(pool="pool-navi-sui", project="navi-lending", chain="Sui", symbol="SUI", apy=4.0, tvl_usd=8_000_000),
        PoolYield(pool="pool-aave-usdc", project="aave-v3", chain="Arbitrum", symbol="USDC", apy=12.0, tvl_usd=50_000_000),
        PoolYield(pool="pool-comp-usdc", project="compound-v3", chain="Optimism", symbol="USDC", apy=3.0, tvl_usd=20_000_000),
    ]


def make_opportunity(
    venue: str = "Scallop",
    net_apy: float = 6.0,
    *,
    chain: str = "Sui",
    bridge_cost_pct: float = 0.0,
    asset: str = "SUI",
    tvl: float = 5_000_000,
) -> YieldOpportunity:
    return YieldOpportunity(
        id=f"{venue.lower()}-{asset.lower()}",
        venue=venue,
        chain=chain,
        asset=asset,
        gross_apy=net_apy + bridge_cost_pct,
        net_apy=net_apy,
        bridge_cost_pct=bridge_cost_pct,
        tvl=tvl,
        is_native=bridge_cost_pct == 0,
        observed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def make_position(venue: str = "Scallop", principal_usd: float = 1000.0, apy: float = 6.0, chain: str = "Sui") -> YieldPosition:
    return YieldPosition(
        venue=venue,
        chain=chain,
        asset="SUI",
        principal=principal_usd / 2.0,
        principal_usd=principal_usd,
        apy=apy,
    )


@pytest.fixture
def price_source() -> FakePriceSource:
    return FakePriceSource()


@pytest.fixture
def pool_source() -> FakePoolSource:
    return FakePoolSource()


@pytest.fixture
def funding_source() -> FakeFundingSource:
    return FakeFundingSource()


@pytest.fixture
def make_context(price_source, pool_source, funding_source):
    """Build a dry-run context on fakes. Keyword overrides go to TreasuryConfig."""

    def _make(*, safety_usd: float = 0.0, vault: Any = None, **config_overrides: Any) -> TreasuryContext:
        config = TreasuryConfig(
            network="testnet",
            dry_run=True,
            database_url=None,
            initial_safety_usd=safety_usd,
            # Cache off so each call sees the fakes' current values
            cache=CacheConfig(
                spot_price_ttl=0,
                pool_yields_ttl=0,
                native_yields_ttl=0,
                funding_rate_ttl=0,
                market_snapshot_ttl=0,
            ),
            scheduler=SchedulerConfig(loop_interval_seconds=60),
        )
        if config_overrides:
            config = replace(config, **config_overrides)
        return build_context(
            config,
            price_source=price_source,
            pool_source=pool_source,
            native_source=FakeNativeSource(),
            funding_source=funding_source,
            market_source=funding_source,
            vault=vault or PaperSafetyVault(balance=safety_usd),
            store=MemoryKeyValueStore(),
        )

    return _make


@pytest.fixture
def ctx(make_context) -> TreasuryContext:
    return make_context()
