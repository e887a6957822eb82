"""Treasury risk scoring.

The score is a weighted composite of three components, each clamped to
[0, 100]:

    price   = max(0, -change_24h_pct) * 5          (40%)
    funding = -avg_signed_annualized_funding * 2 + 50   (30%)
    yield   = (5 - best_net_apy) * 20               (30%)

and maps to a band with a target safety/yield split:

    >= 65  HIGH    70 / 30
    35-64  MEDIUM  40 / 60
    < 35   LOW     15 / 85

Triggers are audit strings only and never change the score.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional, Sequence

from treasury.config import HOME_ASSET, RiskConfig
from treasury.market_data.signals import MarketSignals
from treasury.opportunities.aggregator import YieldAggregator
from treasury.risk.history import PriceHistory
from treasury.types import FundingRate, RiskBand, RiskLevel, YieldOpportunity, YieldPosition, utc_now

logger = logging.getLogger(__name__)

FundingSignal = Literal["bearish", "neutral", "bullish"]

PRICE_WEIGHT = 0.4
FUNDING_WEIGHT = 0.3
YIELD_WEIGHT = 0.3

# band -> (safety %, yield %)
TARGET_SPLITS: dict[RiskBand, tuple[float, float]] = {
    "HIGH": (70.0, 30.0),
    "MEDIUM": (40.0, 60.0),
    "LOW": (15.0, 85.0),
}


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def price_drop_component(pct_change_24h: float) -> float:
    """Only downside counts: 0 for any non-negative change, 5 points per % down."""
    return clamp(max(0.0, -pct_change_24h) * 5)


def funding_component(avg_annualized_funding: float) -> float:
    """Negative (bearish) funding raises risk; zero funding scores 50."""
    return clamp(-avg_annualized_funding * 2 + 50)


def yield_component(best_net_apy: float) -> float:
    """Scarce yield raises risk; 5% or better scores 0."""
    return clamp((5 - best_net_apy) * 20)


def compute_risk_score(pct_change_24h: float, avg_annualized_funding: float, best_net_apy: float) -> int:
    return round_half_up(
        PRICE_WEIGHT * price_drop_component(pct_change_24h)
        + FUNDING_WEIGHT * funding_component(avg_annualized_funding)
        + YIELD_WEIGHT * yield_component(best_net_apy)
    )


def risk_band(score: int, config: Optional[RiskConfig] = None) -> RiskBand:
    config = config or RiskConfig()
    if score >= config.high_risk_threshold:
        return "HIGH"
    if score >= config.medium_risk_threshold:
        return "MEDIUM"
    return "LOW"


def average_funding(rates: Sequence[FundingRate]) -> float:
    if not rates:
        return 0.0
    return sum(r.annualized_pct for r in rates) / len(rates)


def funding_signal(avg_annualized_funding: float) -> FundingSignal:
    if avg_annualized_funding < -5:
        return "bearish"
    if avg_annualized_funding > 10:
        return "bullish"
    return "neutral"


def build_triggers(
    pct_change_24h: float,
    avg_annualized_funding: float,
    best_net_apy: float,
    asset: str = HOME_ASSET,
) -> list[str]:
    triggers = []
    if pct_change_24h < -5:
        triggers.append(f"{asset} down {abs(pct_change_24h):.1f}%")
    if pct_change_24h > 5:
        triggers.append(f"{asset} up {pct_change_24h:.1f}%")
    if avg_annualized_funding < -5:
        triggers.append(f"Negative funding ({avg_annualized_funding:.1f}% ann.)")
    if best_net_apy < 2:
        triggers.append(f"Low yields (best: {best_net_apy:.1f}%)")
    if best_net_apy > 5:
        triggers.append(f"Strong yields (best: {best_net_apy:.1f}%)")
    return triggers


@dataclass(frozen=True)
class RiskInputs:
    """Signals snapshotted once at the start of a cycle."""

    spot_price: float
    funding_rates: tuple[FundingRate, ...] = ()
    best_yield: Optional[YieldOpportunity] = None
    observed_at: datetime = field(default_factory=utc_now)

    @property
    def best_net_apy(self) -> float:
        return self.best_yield.net_apy if self.best_yield else 0.0


async def gather_inputs(
    signals: MarketSignals,
    aggregator: YieldAggregator,
    risk_level: RiskLevel,
    positions: Sequence[YieldPosition] = (),
    asset: str = HOME_ASSET,
) -> RiskInputs:
    """Fetch price, funding and best yield concurrently."""
    price, rates, scan = await asyncio.gather(
        signals.spot_price(asset),
        signals.funding_rates(),
        aggregator.find_best(risk_level, positions),
    )
    return RiskInputs(spot_price=price, funding_rates=tuple(rates), best_yield=scan.best)


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    band: RiskBand
    target_safety_pct: float
    target_yield_pct: float
    triggers: tuple[str, ...]
    spot_price: float
    price_change_24h: float
    avg_funding_annualized: float
    funding_signal: FundingSignal
    best_net_apy: float
    best_yield: Optional[YieldOpportunity] = None
    asset: str = HOME_ASSET

    @property
    def trigger_text(self) -> str:
        return ", ".join(self.triggers) or "Routine check"

    @property
    def reasoning(self) -> str:
        sign = "+" if self.price_change_24h >= 0 else ""
        return (
            f"{self.asset} at ${self.spot_price:.4f} ({sign}{self.price_change_24h:.1f}%), "
            f"funding {self.funding_signal} ({self.avg_funding_annualized:.1f}% ann.), "
            f"best yield {self.best_net_apy:.1f}%"
        )

    def format_for_voice(self) -> str:
        sign = "+" if self.price_change_24h >= 0 else ""
        triggers = f"Triggers: {', '.join(self.triggers)}" if self.triggers else "No active triggers."
        return (
            "Treasury Risk Assessment:\n"
            f"• Risk Score: {self.score}/100 ({self.band})\n"
            f"• {self.asset} Price: ${self.spot_price:.4f} ({sign}{self.price_change_24h:.1f}% trend)\n"
            f"• Funding: {self.funding_signal} ({self.avg_funding_annualized:.1f}% annualized)\n"
            f"• Best Yield: {self.best_net_apy:.1f}% APY\n\n"
            f"Recommendation: {self.target_safety_pct:.0f}% safety vault / "
            f"{self.target_yield_pct:.0f}% yield\n"
            f"{triggers}"
        )


class RiskScorer:
    """Scores treasury risk and owns the spot price history."""

    def __init__(
        self,
        *,
        config: Optional[RiskConfig] = None,
        history: Optional[PriceHistory] = None,
        asset: str = HOME_ASSET,
    ) -> None:
        self.config = config or RiskConfig()
        self.history = history or PriceHistory(maxlen=self.config.max_price_history)
        self.asset = asset

    def assess(self, inputs: RiskInputs) -> RiskAssessment:
        """Append the current price to the history, then score."""
        if inputs.spot_price > 0:
            self.history.append(inputs.spot_price, inputs.observed_at)
        else:
            # A missing price must not look like a crash in the history
            logger.warning(f"{self.asset} spot price unavailable; price history not updated")

        change = self.history.change_24h(inputs.observed_at)
        avg_funding = average_funding(inputs.funding_rates)
        best_apy = inputs.best_net_apy

        score = compute_risk_score(change, avg_funding, best_apy)
        band = risk_band(score, self.config)
        safety_pct, yield_pct = TARGET_SPLITS[band]

        assessment = RiskAssessment(
            score=score,
            band=band,
            target_safety_pct=safety_pct,
            target_yield_pct=yield_pct,
            triggers=tuple(build_triggers(change, avg_funding, best_apy, self.asset)),
            spot_price=inputs.spot_price,
            price_change_24h=change,
            avg_funding_annualized=avg_funding,
            funding_signal=funding_signal(avg_funding),
            best_net_apy=best_apy,
            best_yield=inputs.best_yield,
            asset=self.asset,
        )
        logger.info(f"Treasury risk: {score}/100 ({band}); {assessment.trigger_text}")
        return assessment
