"""Yield aggregator: one ranked opportunity list across venues and chains.

Sources, in order of application:
- generic pool list, filtered to the venue/asset allow-list
- native lending feed, overlaid on matching (venue, asset) entries
- perp funding rates above a floor, as collect-the-funding opportunities

Every opportunity carries `net_apy = gross_apy - bridge_cost_pct`, where the
bridge cost is zero for venues on the home chain.

Usage:
    aggregator = YieldAggregator(signals=signals)
    result = await aggregator.find_best("moderate", positions=book.positions.all())
    print(result.recommendation)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from treasury.config import (
    BRIDGE_FEES,
    DEFAULT_BRIDGE_FEE_PCT,
    HOME_CHAIN,
    NATIVE_FEED_ASSETS,
    YIELD_ASSETS,
    YIELD_VENUES,
    AggregatorConfig,
    get_risk_profile,
)
from treasury.market_data.signals import MarketSignals
from treasury.types import (
    FundingRate,
    NativeYield,
    PoolYield,
    RiskLevel,
    YieldOpportunity,
    YieldPosition,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class YieldScanResult:
    """Outcome of `find_best`.

    Attributes:
        opportunities: Eligible opportunities for the risk level, best first
        best: Head of `opportunities`, or None
        current_positions: Positions the recommendation was computed against
        recommendation: Human-readable move/deploy/stay explanation
    """

    opportunities: tuple[YieldOpportunity, ...]
    best: Optional[YieldOpportunity]
    current_positions: tuple[YieldPosition, ...]
    recommendation: str

    def to_dict(self) -> dict:
        return {
            "opportunities": [o.to_dict() for o in self.opportunities],
            "best": self.best.to_dict() if self.best else None,
            "current_positions": [p.to_dict() for p in self.current_positions],
            "recommendation": self.recommendation,
        }


def bridge_cost(from_chain: str, to_chain: str) -> float:
    """Estimated bridge fee (%) for a route; same chain costs nothing."""
    if from_chain.upper() == to_chain.upper():
        return 0.0
    key = f"{from_chain.upper()}_TO_{to_chain.upper()}"
    return BRIDGE_FEES.get(key, DEFAULT_BRIDGE_FEE_PCT)


def _venue_for(project: str, chain: str) -> Optional[str]:
    entry = YIELD_VENUES.get(project)
    if entry is None or entry[0] != chain:
        return None
    return entry[1]


def filter_pools(pools: Sequence[PoolYield], *, min_tvl_usd: float) -> list[PoolYield]:
    """Keep allow-listed (project, chain, asset) pools with positive APY and enough TVL."""
    return [
        p
        for p in pools
        if _venue_for(p.project, p.chain) is not None
        and p.symbol in YIELD_ASSETS
        and p.apy > 0
        and p.tvl_usd > min_tvl_usd
    ]


def pool_to_opportunity(pool: PoolYield, *, observed_at=None) -> YieldOpportunity:
    is_native = pool.chain == HOME_CHAIN
    cost = 0.0 if is_native else bridge_cost(HOME_CHAIN, pool.chain)
    return YieldOpportunity(
        id=pool.pool,
        venue=_venue_for(pool.project, pool.chain) or pool.project,
        chain=pool.chain,
        asset=pool.symbol,
        gross_apy=pool.apy,
        net_apy=pool.apy - cost,
        bridge_cost_pct=cost,
        tvl=pool.tvl_usd,
        is_native=is_native,
        observed_at=observed_at or utc_now(),
        pool=pool.pool,
    )


def overlay_native(
    opportunities: list[YieldOpportunity],
    native: Sequence[NativeYield],
    *,
    observed_at=None,
) -> list[YieldOpportunity]:
    """Replace matching (venue, asset) entries with native-feed rates.

    Overlaid entries are new objects; unmatched native pools for the core
    home-chain assets are appended.
    """
    merged = list(opportunities)
    observed_at = observed_at or utc_now()
    for feed in native:
        if feed.supply_apy <= 0:
            continue

        idx = next(
            (i for i, o in enumerate(merged) if o.venue == feed.venue and o.asset == feed.asset),
            None,
        )
        if idx is not None:
            merged[idx] = replace(
                merged[idx],
                gross_apy=feed.supply_apy,
                net_apy=feed.supply_apy,
                bridge_cost_pct=0.0,
                tvl=feed.tvl_usd,
                is_native=True,
                observed_at=observed_at,
            )
        elif feed.asset in NATIVE_FEED_ASSETS:
            slug = f"{feed.venue.lower()}-{feed.asset.lower()}"
            merged.append(
                YieldOpportunity(
                    id=f"{slug}-direct",
                    venue=feed.venue,
                    chain=HOME_CHAIN,
                    asset=feed.asset,
                    gross_apy=feed.supply_apy,
                    net_apy=feed.supply_apy,
                    bridge_cost_pct=0.0,
                    tvl=feed.tvl_usd,
                    is_native=True,
                    observed_at=observed_at,
                    pool=slug,
                )
            )
    return merged


def funding_opportunities(
    rates: Sequence[FundingRate],
    *,
    floor_pct: float,
    observed_at=None,
) -> list[YieldOpportunity]:
    """One opportunity per market whose annualized funding magnitude beats the floor."""
    observed_at = observed_at or utc_now()
    result = []
    for rate in rates:
        magnitude = abs(rate.annualized_pct)
        if magnitude <= floor_pct:
            continue
        direction = rate.collect_direction
        result.append(
            YieldOpportunity(
                id=f"bluefin-{rate.market.lower()}-funding",
                venue="Bluefin",
                chain=HOME_CHAIN,
                asset=f"{rate.market} ({direction})",
                gross_apy=magnitude,
                net_apy=magnitude,
                bridge_cost_pct=0.0,
                # Funding yield is not TVL-based
                tvl=0.0,
                is_native=True,
                observed_at=observed_at,
                pool=f"bluefin-{rate.market.lower()}",
                direction=direction,
            )
        )
    return result


def rank(opportunities: Sequence[YieldOpportunity]) -> list[YieldOpportunity]:
    # sorted() is stable, so equal net APYs keep their source order
    return sorted(opportunities, key=lambda o: o.net_apy, reverse=True)


def select_best(
    opportunities: Sequence[YieldOpportunity],
    risk_level: RiskLevel,
    positions: Sequence[YieldPosition] = (),
    *,
    min_tvl_usd: float = 1_000_000,
) -> YieldScanResult:
    """Pick the best eligible opportunity for a risk level.

    Eligibility: cross-chain only if the profile allows it, and TVL of at least
    `min_tvl_usd`. The recommendation compares against the highest-APY current
    position and only suggests moving when the improvement beats the profile's
    rebalance threshold.
    """
    profile = get_risk_profile(risk_level)
    eligible = tuple(
        o
        for o in rank(opportunities)
        if (profile.allow_cross_chain or o.is_native) and o.tvl >= min_tvl_usd
    )
    best = eligible[0] if eligible else None

    open_positions = [p for p in positions if p.principal_usd > 0]
    current = max(open_positions, key=lambda p: p.apy) if open_positions else None

    if best is None:
        recommendation = "No eligible yield opportunities found. Consider adjusting risk level."
    elif current is None:
        recommendation = (
            f"Deploy to {best.venue} on {best.chain} for {best.net_apy:.1f}% net APY on {best.asset}"
        )
    elif best.net_apy - current.apy > profile.rebalance_threshold_apy:
        recommendation = (
            f"Move funds from {current.venue} ({current.apy:.1f}% APY) to {best.venue} on {best.chain} "
            f"({best.net_apy:.1f}% net APY). Yield improvement: +{best.net_apy - current.apy:.1f}%"
        )
    else:
        recommendation = (
            f"Stay in {current.venue} ({current.apy:.1f}% APY). Best alternative: {best.venue} at "
            f"{best.net_apy:.1f}%, difference below {profile.rebalance_threshold_apy}% threshold."
        )

    return YieldScanResult(
        opportunities=eligible,
        best=best,
        current_positions=tuple(positions),
        recommendation=recommendation,
    )


class YieldAggregator:
    """Builds ranked yield opportunities from cached market signals."""

    def __init__(self, *, signals: MarketSignals, config: Optional[AggregatorConfig] = None) -> None:
        self.signals = signals
        self.config = config or AggregatorConfig()

    async def scan(self) -> list[YieldOpportunity]:
        pools, native, rates = await asyncio.gather(
            self.signals.pool_yields(),
            self.signals.native_yields(),
            self.signals.funding_rates(),
        )

        observed_at = utc_now()
        relevant = filter_pools(pools, min_tvl_usd=self.config.min_pool_tvl_usd)
        opportunities = [pool_to_opportunity(p, observed_at=observed_at) for p in relevant]
        opportunities = overlay_native(opportunities, native, observed_at=observed_at)
        opportunities.extend(
            funding_opportunities(
                rates,
                floor_pct=self.config.funding_floor_annualized_pct,
                observed_at=observed_at,
            )
        )

        ranked = rank(opportunities)
        logger.info(
            f"Found {len(ranked)} yield opportunities: "
            + ", ".join(f"{o.venue} {o.asset} {o.net_apy:.1f}%" for o in ranked[:5])
        )
        return ranked

    async def find_best(
        self,
        risk_level: RiskLevel,
        positions: Sequence[YieldPosition] = (),
    ) -> YieldScanResult:
        opportunities = await self.scan()
        return select_best(
            opportunities,
            risk_level,
            positions,
            min_tvl_usd=self.config.min_best_tvl_usd,
        )


def format_yields_for_voice(opportunities: Sequence[YieldOpportunity], limit: int = 5) -> str:
    if not opportunities:
        return "No yield opportunities found."

    lines = []
    for i, o in enumerate(opportunities[:limit], start=1):
        line = f"{i}. {o.venue} on {o.chain}: {o.gross_apy:.1f}% APY"
        if o.bridge_cost_pct > 0:
            line += f" ({o.net_apy:.1f}% net after {o.bridge_cost_pct:.1f}% bridge fee)"
        lines.append(line + f" on {o.asset}")
    return "Top yield opportunities:\n" + "\n".join(lines)
