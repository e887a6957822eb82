"""Tests for yield aggregation, ranking and best-venue selection."""

from __future__ import annotations

import pytest

from tests.conftest import FakeFundingSource, FakeNativeSource, FakePoolSource, ManualClock, make_opportunity, make_position
from treasury.config import AggregatorConfig
from treasury.market_data.cache import MarketSignalCache, SignalClass
from treasury.market_data.signals import MarketSignals
from treasury.opportunities.aggregator import (
    YieldAggregator,
    bridge_cost,
    filter_pools,
    format_yields_for_voice,
    funding_opportunities,
    overlay_native,
    pool_to_opportunity,
    rank,
    select_best,
)
from treasury.types import FundingRate, NativeYield, PoolYield


def _aggregator(pools=None, native=None, rates=None) -> YieldAggregator:
    signals = MarketSignals(
        cache=MarketSignalCache(clock=ManualClock()),
        price_source=None,
        pool_source=FakePoolSource(pools),
        native_source=FakeNativeSource(native),
        funding_source=FakeFundingSource(rates),
    )
    return YieldAggregator(signals=signals, config=AggregatorConfig())


class TestBridgeCost:
    def test_same_chain_is_free(self):
        assert bridge_cost("Sui", "sui") == 0.0

    def test_known_route(self):
        assert bridge_cost("Sui", "Arbitrum") == 0.3
        assert bridge_cost("Sui", "Arc") == 0.1

    def test_unknown_route_uses_default(self):
        assert bridge_cost("Sui", "Base") == 0.5


class TestFilterPools:
    def test_keeps_allow_listed_pools_only(self):
        pools = [
            PoolYield("a", "scallop-lend", "Sui", "SUI", 5.0, 200_000),
            PoolYield("b", "scallop-lend", "Ethereum", "SUI", 5.0, 200_000),  # wrong chain
            PoolYield("c", "random-farm", "Sui", "SUI", 50.0, 900_000),  # unknown project
            PoolYield("d", "navi-lending", "Sui", "DOGE", 5.0, 200_000),  # unknown asset
            PoolYield("e", "navi-lending", "Sui", "SUI", 0.0, 200_000),  # no yield
            PoolYield("f", "navi-lending", "Sui", "USDC", 5.0, 100_000),  # TVL at the floor
        ]

        kept = filter_pools(pools, min_tvl_usd=100_000)

        assert [p.pool for p in kept] == ["a"]


class TestOpportunities:
    def test_net_apy_is_gross_minus_bridge_cost(self):
        opps = [pool_to_opportunity(p) for p in FakePoolSource().pools]

        for o in opps:
            assert o.net_apy == pytest.approx(o.gross_apy - o.bridge_cost_pct)
            if o.is_native:
                assert o.bridge_cost_pct == 0.0
            else:
                assert o.bridge_cost_pct > 0

        aave = next(o for o in opps if o.venue == "Aave V3")
        assert aave.net_apy == pytest.approx(11.7)

    def test_native_overlay_replaces_rate_and_zeroes_bridge_cost(self):
        opps = [pool_to_opportunity(p) for p in FakePoolSource().pools]
        original = next(o for o in opps if o.venue == "NAVI")

        merged = overlay_native(opps, [NativeYield(venue="NAVI", asset="SUI", supply_apy=7.5, tvl_usd=9_000_000)])

        navi = next(o for o in merged if o.venue == "NAVI" and o.asset == "SUI")
        assert navi.gross_apy == navi.net_apy == 7.5
        assert navi.tvl == 9_000_000
        assert navi.bridge_cost_pct == 0.0
        assert navi.is_native is True
        # Snapshots are immutable; the original is untouched
        assert original.gross_apy == 4.0
        assert len(merged) == len(opps)

    def test_unmatched_native_pool_is_appended(self):
        merged = overlay_native([], [NativeYield(venue="NAVI", asset="USDC", supply_apy=9.0, tvl_usd=2_000_000)])

        assert len(merged) == 1
        assert merged[0].id == "navi-usdc-direct"
        assert merged[0].chain == "Sui"

    def test_native_overlay_ignores_zero_rates(self):
        merged = overlay_native([], [NativeYield(venue="NAVI", asset="SUI", supply_apy=0.0, tvl_usd=1.0)])
        assert merged == []

    def test_funding_opportunities_tag_collect_side(self):
        rates = [
            FundingRate(market="SUI-PERP", rate=0.0001, annualized_pct=10.95),
            FundingRate(market="ETH-PERP", rate=-0.0002, annualized_pct=-21.9),
            FundingRate(market="BTC-PERP", rate=0.00001, annualized_pct=1.095),
        ]

        opps = funding_opportunities(rates, floor_pct=5.0)

        assert [(o.id, o.direction) for o in opps] == [
            ("bluefin-sui-perp-funding", "short"),
            ("bluefin-eth-perp-funding", "long"),
        ]
        assert opps[1].net_apy == pytest.approx(21.9)
        assert all(o.venue == "Bluefin" and o.is_native for o in opps)

    def test_rank_is_stable_for_ties(self):
        a = make_opportunity("Scallop", 5.0)
        b = make_opportunity("NAVI", 5.0)
        c = make_opportunity("Aave V3", 8.0, chain="Arbitrum", bridge_cost_pct=0.3)

        assert [o.venue for o in rank([a, b, c])] == ["Aave V3", "Scallop", "NAVI"]


class TestSelectBest:
    def test_conservative_excludes_cross_chain(self):
        opps = [pool_to_opportunity(p) for p in FakePoolSource().pools]

        result = select_best(opps, "conservative")

        assert result.best.venue == "Scallop"
        assert all(o.is_native for o in result.opportunities)

    def test_moderate_allows_cross_chain(self):
        opps = [pool_to_opportunity(p) for p in FakePoolSource().pools]

        result = select_best(opps, "moderate")

        assert result.best.venue == "Aave V3"
        assert result.recommendation.startswith("Deploy to Aave V3 on Arbitrum")

    def test_min_tvl_floor(self):
        small = make_opportunity("Scallop", 20.0, tvl=500_000)
        big = make_opportunity("NAVI", 4.0, tvl=5_000_000)

        result = select_best([small, big], "moderate", min_tvl_usd=1_000_000)

        assert result.best.venue == "NAVI"

    def test_no_eligible_opportunity(self):
        result = select_best([], "moderate")

        assert result.best is None
        assert "No eligible yield opportunities" in result.recommendation

    def test_recommends_move_when_improvement_beats_threshold(self):
        result = select_best(
            [make_opportunity("NAVI", 9.0)],
            "moderate",
            [make_position("Scallop", apy=4.0)],
        )
        assert result.recommendation.startswith("Move funds from Scallop")
        assert "+5.0%" in result.recommendation

    def test_recommends_stay_below_threshold(self):
        result = select_best(
            [make_opportunity("NAVI", 5.0)],
            "moderate",
            [make_position("Scallop", apy=4.0)],
        )
        assert result.recommendation.startswith("Stay in Scallop")


@pytest.mark.asyncio
async def test_scan_merges_all_sources_sorted_by_net_apy():
    aggregator = _aggregator(
        native=[NativeYield(venue="NAVI", asset="SUI", supply_apy=7.0, tvl_usd=8_000_000)],
        rates=[FundingRate(market="SUI-PERP", rate=0.0002, annualized_pct=21.9)],
    )

    opps = await aggregator.scan()

    assert [o.net_apy for o in opps] == sorted((o.net_apy for o in opps), reverse=True)
    assert opps[0].venue == "Bluefin"
    navi = next(o for o in opps if o.venue == "NAVI")
    assert navi.net_apy == 7.0


@pytest.mark.asyncio
async def test_find_best_uses_risk_profile():
    aggregator = _aggregator()

    result = await aggregator.find_best("conservative")

    assert result.best.venue == "Scallop"
    assert "Scallop" in result.to_dict()["best"]["venue"]


@pytest.mark.asyncio
async def test_scan_with_pool_feed_down_is_empty():
    aggregator = _aggregator()
    aggregator.signals.cache.register("pools", SignalClass.POOL_YIELDS, _feed_down)

    assert await aggregator.scan() == []


async def _feed_down():
    raise RuntimeError("down")


def test_format_yields_for_voice():
    opps = [make_opportunity("Aave V3", 11.7, chain="Arbitrum", bridge_cost_pct=0.3, asset="USDC")]

    text = format_yields_for_voice(opps)

    assert text.startswith("Top yield opportunities:")
    assert "1. Aave V3 on Arbitrum: 12.0% APY (11.7% net after 0.3% bridge fee) on USDC" in text
    assert format_yields_for_voice([]) == "No yield opportunities found."
