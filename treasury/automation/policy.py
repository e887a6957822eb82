from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal, Mapping, Optional

from treasury.config import HOME_ASSET, SAFETY_CHAIN, PolicyConfig, RiskProfile
from treasury.risk.scorer import RiskAssessment
from treasury.types import PortfolioState, YieldOpportunity

Direction = Literal["to_safety", "to_yield"]

SAFETY_VENUE = "Arc"


class PolicyAction(str, Enum):
    CRASH_SAFETY = "crash_safety"
    YIELD_REBALANCE = "yield_rebalance"
    DRIFT_REBALANCE = "drift_rebalance"
    NO_ACTION = "no_action"


def fmt_pct(value: float) -> str:
    """12.0 -> '12%', 12.34 -> '12.34%'."""
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text}%"


@dataclass(frozen=True)
class PolicyDecision:
    action: PolicyAction
    reasoning: str
    amount: float = 0.0
    target_venue: Optional[str] = None
    target_chain: Optional[str] = None
    direction: Optional[Direction] = None
    signals: Mapping[str, Any] = field(default_factory=dict)

    @property
    def warranted(self) -> bool:
        return self.action is not PolicyAction.NO_ACTION

    @property
    def moves_into_yield(self) -> bool:
        """True when executing this decision deploys funds into a venue."""
        if self.action is PolicyAction.YIELD_REBALANCE:
            return self.amount > 0
        return self.action is PolicyAction.DRIFT_REBALANCE and self.direction == "to_yield"


@dataclass(frozen=True)
class RebalancePolicy:
    """Pure rebalance decision logic. First matching rule wins:

    1. crash safety (absolute price floor, bypasses hysteresis)
    2. yield rebalance (best net APY above the floor, outside the hysteresis window)
    3. allocation drift (actual vs target safety split)
    4. no action
    """

    config: PolicyConfig = field(default_factory=PolicyConfig)
    asset: str = HOME_ASSET

    def decide(
        self,
        *,
        portfolio: PortfolioState,
        assessment: RiskAssessment,
        best_yield: Optional[YieldOpportunity],
        spot_price: float,
        profile: RiskProfile,
        last_yield_rebalance_at: Optional[datetime],
        now: datetime,
        interval_seconds: float,
    ) -> PolicyDecision:
        crash = self._crash_safety(portfolio, assessment, spot_price)
        if crash is not None:
            return crash

        rebalance = self._yield_rebalance(
            portfolio, assessment, best_yield, profile, last_yield_rebalance_at, now, interval_seconds
        )
        if rebalance is not None:
            return rebalance

        drift = self._drift_rebalance(portfolio, assessment, best_yield)
        if drift is not None:
            return drift

        best_text = (
            f"Best yield: {best_yield.venue} at {fmt_pct(best_yield.net_apy)}"
            if best_yield
            else "Yield data pending."
        )
        return PolicyDecision(
            action=PolicyAction.NO_ACTION,
            reasoning=(
                f"Portfolio balanced: safety at {portfolio.safety_pct:.1f}% "
                f"(target: {assessment.target_safety_pct:.0f}%), risk {assessment.score}/100. {best_text}"
            ),
            signals={
                "safety_pct": portfolio.safety_pct,
                "target_safety_pct": assessment.target_safety_pct,
                "risk_score": assessment.score,
                "best_net_apy": best_yield.net_apy if best_yield else None,
            },
        )

    def _crash_safety(
        self,
        portfolio: PortfolioState,
        assessment: RiskAssessment,
        spot_price: float,
    ) -> Optional[PolicyDecision]:
        # A zero price means the feed is unavailable, not a crash
        if not (0 < spot_price < self.config.crash_price_floor):
            return None

        amount = portfolio.yield_usd * self.config.crash_move_ratio
        return PolicyDecision(
            action=PolicyAction.CRASH_SAFETY,
            amount=amount,
            target_venue=SAFETY_VENUE,
            target_chain=SAFETY_CHAIN,
            direction="to_safety",
            reasoning=(
                f"{self.asset} price at ${spot_price:.4f} is below the ${self.config.crash_price_floor:.2f} floor; "
                f"moving {self.config.crash_move_ratio * 100:.0f}% of yield (${amount:.2f}) to the safety vault"
            ),
            signals={
                "spot_price": spot_price,
                "price_floor": self.config.crash_price_floor,
                "risk_score": assessment.score,
            },
        )

    def _yield_rebalance(
        self,
        portfolio: PortfolioState,
        assessment: RiskAssessment,
        best_yield: Optional[YieldOpportunity],
        profile: RiskProfile,
        last_yield_rebalance_at: Optional[datetime],
        now: datetime,
        interval_seconds: float,
    ) -> Optional[PolicyDecision]:
        if best_yield is None or best_yield.net_apy <= self.config.yield_rebalance_floor_apy:
            return None

        if portfolio.current_venue == best_yield.venue:
            return None

        improvement = best_yield.net_apy - portfolio.current_apy
        if improvement <= profile.rebalance_threshold_apy:
            return None

        window = timedelta(seconds=interval_seconds * self.config.hysteresis_intervals)
        if last_yield_rebalance_at is not None and now - last_yield_rebalance_at <= window:
            return None

        cap = portfolio.total_usd * profile.max_allocation_pct / 100
        amount = min(portfolio.yield_usd, cap)

        route = (
            "Native, no bridge needed."
            if best_yield.is_native
            else f"Cross-chain ({fmt_pct(best_yield.bridge_cost_pct)} bridge fee)."
        )
        source = (
            f"from {portfolio.current_venue} ({fmt_pct(portfolio.current_apy)})"
            if portfolio.current_venue
            else "from idle balance"
        )
        return PolicyDecision(
            action=PolicyAction.YIELD_REBALANCE,
            amount=amount,
            target_venue=best_yield.venue,
            target_chain=best_yield.chain,
            direction="to_yield",
            reasoning=(
                f"Best yield: {best_yield.venue} on {best_yield.chain} at {fmt_pct(best_yield.net_apy)} net APY "
                f"on {best_yield.asset}, +{fmt_pct(improvement)} {source}. {route} "
                f"Moving ${amount:.2f}."
            ),
            signals={
                "best_net_apy": best_yield.net_apy,
                "current_apy": portfolio.current_apy,
                "improvement": improvement,
                "venue": best_yield.venue,
                "risk_score": assessment.score,
            },
        )

    def _drift_rebalance(
        self,
        portfolio: PortfolioState,
        assessment: RiskAssessment,
        best_yield: Optional[YieldOpportunity],
    ) -> Optional[PolicyDecision]:
        if portfolio.total_usd <= 0:
            return None

        actual = portfolio.safety_pct
        target = assessment.target_safety_pct
        drift = abs(actual - target)
        if drift <= self.config.drift_threshold_pct:
            return None

        amount = portfolio.total_usd * drift / 100
        if amount <= self.config.min_rebalance_usd:
            return None

        signals = {
            "safety_pct": actual,
            "target_safety_pct": target,
            "drift_pct": drift,
            "risk_score": assessment.score,
        }
        if actual < target:
            return PolicyDecision(
                action=PolicyAction.DRIFT_REBALANCE,
                amount=amount,
                target_venue=SAFETY_VENUE,
                target_chain=SAFETY_CHAIN,
                direction="to_safety",
                reasoning=(
                    f"Allocation drifted {drift:.1f}%: safety underweight at {actual:.1f}% "
                    f"(target {target:.0f}% at risk {assessment.score}/100). Moving ${amount:.2f} to the safety vault"
                ),
                signals=signals,
            )

        venue = best_yield.venue if best_yield else portfolio.current_venue
        chain = best_yield.chain if best_yield else None
        if venue is None:
            return None
        return PolicyDecision(
            action=PolicyAction.DRIFT_REBALANCE,
            amount=amount,
            target_venue=venue,
            target_chain=chain,
            direction="to_yield",
            reasoning=(
                f"Allocation drifted {drift:.1f}%: safety overweight at {actual:.1f}% "
                f"(target {target:.0f}% at risk {assessment.score}/100). Redeploying ${amount:.2f} to {venue}"
            ),
            signals=signals,
        )
