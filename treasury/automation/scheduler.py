"""Auto optimizer scheduler: the periodic treasury control loop.

Each cycle, in order:
1. Snapshot inputs (spot price, funding, best yield) and assess risk, which
   also refreshes the price history.
2. Safety: the price fell more than the threshold from the start of the
   window -> move part of the yield balance to the safety vault, end cycle.
3. Recovery: the price recovered from the recent low and yields are
   attractive -> redeploy part of the safety balance, end cycle.
4. Otherwise run the rebalance policy and execute what it returns.

At most one decision is written per cycle. A tick that fires while a cycle
is still running is dropped, not queued. Stopping cancels future ticks only;
a running cycle finishes.

Usage:
    python -m treasury.automation.scheduler --interval 60 --risk-level moderate
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from treasury.automation.policy import PolicyAction, PolicyDecision
from treasury.config import HOME_ASSET, get_risk_profile
from treasury.risk.scorer import RiskAssessment, RiskInputs, gather_inputs
from treasury.types import TreasuryDecision, utc_now

if TYPE_CHECKING:
    from treasury.context import TreasuryContext

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class CycleReport:
    """What one cycle saw and did."""

    started_at: datetime
    outcome: str = "pending"
    finished_at: Optional[datetime] = None
    assessment: Optional[RiskAssessment] = None
    policy: Optional[PolicyDecision] = None
    decision: Optional[TreasuryDecision] = None
    error: Optional[str] = None
    signals: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome,
            "risk_score": self.assessment.score if self.assessment else None,
            "risk_band": self.assessment.band if self.assessment else None,
            "policy_action": self.policy.action.value if self.policy else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "error": self.error,
            "signals": dict(self.signals),
        }


class AutoOptimizerScheduler:
    def __init__(self, ctx: TreasuryContext) -> None:
        self.ctx = ctx
        self.state = SchedulerState.STOPPED
        self.cycles_run = 0
        self.ticks_skipped = 0
        self.last_report: Optional[CycleReport] = None
        self._ticker: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    @property
    def interval_seconds(self) -> float:
        return self.ctx.config.scheduler.loop_interval_seconds

    def start(self) -> bool:
        """STOPPED -> RUNNING. The first tick fires immediately."""
        if self.is_running:
            return False
        self.state = SchedulerState.RUNNING
        self._ticker = asyncio.create_task(self._tick_loop(), name="treasury-scheduler")
        self.ctx.activity.action(
            "Auto yield optimizer started",
            risk_level=self.ctx.risk_level,
            interval_seconds=self.interval_seconds,
            network=self.ctx.config.network,
        )
        return True

    def stop(self) -> bool:
        """RUNNING -> STOPPED. A cycle already executing runs to completion."""
        if not self.is_running:
            return False
        self.state = SchedulerState.STOPPED
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self.ctx.activity.action("Auto yield optimizer stopped")
        return True

    async def wait_idle(self) -> None:
        """Wait for an in-flight cycle, if any."""
        if self._cycle is not None:
            await asyncio.gather(self._cycle, return_exceptions=True)

    async def _tick_loop(self) -> None:
        try:
            while self.is_running:
                self._tick()
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.debug("Scheduler ticker cancelled")

    def _tick(self) -> None:
        if self.cycle_in_progress:
            self.ticks_skipped += 1
            logger.warning(f"Previous cycle still running; tick dropped ({self.ticks_skipped} skipped so far)")
            return
        self._cycle = asyncio.create_task(self.run_cycle(), name="treasury-cycle")

    async def run_cycle(self) -> CycleReport:
        """Run one cycle under the shared execution lock. Never raises."""
        report = CycleReport(started_at=utc_now())
        async with self.ctx.execution_lock:
            try:
                await self._run_cycle(report)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                report.outcome = "error"
                report.error = f"{e.__class__.__name__}: {e}"
                logger.exception(f"Optimization cycle failed: {e}")
                self.ctx.activity.error(f"Optimization cycle failed: {e}")
            finally:
                report.finished_at = utc_now()
                self.cycles_run += 1
                self.last_report = report
        return report

    async def _run_cycle(self, report: CycleReport) -> None:
        ctx = self.ctx
        cfg = ctx.config.scheduler
        risk_level = ctx.risk_level

        ctx.activity.info("Running yield scan + treasury safety check...")

        # 1. one consistent snapshot for the whole cycle
        inputs = await gather_inputs(
            ctx.signals, ctx.aggregator, risk_level, ctx.book.positions.all(), ctx.scorer.asset
        )
        assessment = ctx.scorer.assess(inputs)
        ctx.ledger.update_risk_score(assessment.score)
        report.assessment = assessment

        history = ctx.scorer.history
        drop = history.change_from_start() if len(history) > 2 else 0.0
        recovery = history.recovery_from_low(cfg.recovery_window) if len(history) > 2 else 0.0
        report.signals = {
            "spot_price": inputs.spot_price,
            "drop_from_window_start_pct": drop,
            "recovery_from_low_pct": recovery,
            "best_net_apy": inputs.best_net_apy,
        }

        # 2. safety trigger
        if drop < -cfg.safety_threshold_pct:
            move = ctx.book.yield_total * cfg.safety_move_ratio
            if move > cfg.min_move_usd:
                reason = (
                    f"{HOME_ASSET} dropped {abs(drop):.1f}% across the price window; "
                    f"moving ${move:.2f} of yield to the safety vault"
                )
                ctx.activity.action(f"SAFETY TRIGGER: {reason}")
                report.decision = await ctx.operations.deposit_to_safety(
                    move,
                    reason=reason,
                    trigger=f"{HOME_ASSET} price drop {drop:.1f}%",
                    kind="auto_safety",
                    source="positions",
                    risk_score=assessment.score,
                )
                report.outcome = "auto_safety"
                return

        # 3. recovery trigger
        best = inputs.best_yield
        if (
            recovery > cfg.recovery_threshold_pct
            and inputs.spot_price > 0
            and ctx.book.safety_balance > cfg.min_move_usd
            and best is not None
            and best.net_apy > cfg.min_yield_for_deployment
        ):
            amount = ctx.book.safety_balance * cfg.redeploy_ratio
            reason = (
                f"{HOME_ASSET} recovered {recovery:.1f}% from its recent low, best yield {best.net_apy:.1f}% "
                f"at {best.venue}; redeploying ${amount:.2f}"
            )
            ctx.activity.action(f"RECOVERY TRIGGER: {reason}")
            report.decision = await ctx.operations.redeploy_from_safety(
                best.venue,
                amount,
                spot_price=inputs.spot_price,
                reason=reason,
                trigger=f"Recovery +{recovery:.1f}% from low, yield {best.net_apy:.1f}%",
                apy=best.net_apy,
                asset=best.asset,
                kind="auto_redeploy",
                risk_score=assessment.score,
            )
            report.outcome = "auto_redeploy"
            return

        # 4. standard policy
        decision = ctx.policy.decide(
            portfolio=ctx.book.portfolio(),
            assessment=assessment,
            best_yield=best,
            spot_price=inputs.spot_price,
            profile=get_risk_profile(risk_level),
            last_yield_rebalance_at=ctx.ledger.last_at("rebalance"),
            now=utc_now(),
            interval_seconds=self.interval_seconds,
        )
        report.policy = decision
        report.outcome = decision.action.value
        report.decision = await self._execute_policy(decision, inputs, assessment)

    async def _execute_policy(
        self,
        decision: PolicyDecision,
        inputs: RiskInputs,
        assessment: RiskAssessment,
    ) -> Optional[TreasuryDecision]:
        ctx = self.ctx
        ops = ctx.operations

        if decision.action is PolicyAction.NO_ACTION:
            ctx.activity.info(decision.reasoning)
            return None

        if decision.moves_into_yield and inputs.spot_price <= 0:
            ctx.activity.warning(f"{decision.action.value} skipped: {HOME_ASSET} spot price unavailable")
            return None

        ctx.activity.action(f"{decision.action.value}: {decision.reasoning}")

        if decision.action is PolicyAction.CRASH_SAFETY:
            if decision.amount <= 0:
                ctx.activity.warning("Crash safety triggered but there is no yield balance to move")
                return None
            return await ops.deposit_to_safety(
                decision.amount,
                reason=decision.reasoning,
                trigger=f"{HOME_ASSET} below ${ctx.policy.config.crash_price_floor:.2f}",
                kind="auto_safety",
                source="positions",
                risk_score=assessment.score,
            )

        if decision.action is PolicyAction.YIELD_REBALANCE:
            best = inputs.best_yield
            if decision.amount <= 0:
                # Nothing deployed yet: record the recommendation so hysteresis applies
                return ctx.ledger.record(
                    kind="rebalance",
                    trigger=f"Best yield {best.net_apy:.1f}% at {best.venue}" if best else "Yield rebalance",
                    action=f"Recommend deploying to {decision.target_venue}",
                    reasoning=decision.reasoning,
                    risk_score=assessment.score,
                    chain="home",
                    status="informational",
                )
            return await ops.deploy_to_venue(
                decision.target_venue,
                decision.amount,
                spot_price=inputs.spot_price,
                reason=decision.reasoning,
                trigger=f"+{decision.signals.get('improvement', 0.0):.1f}% APY improvement",
                apy=best.net_apy if best else None,
                asset=best.asset if best else HOME_ASSET,
                kind="rebalance",
                source="positions",
                risk_score=assessment.score,
            )

        # DRIFT_REBALANCE
        trigger = f"Allocation drift {decision.signals.get('drift_pct', 0.0):.1f}%"
        if decision.direction == "to_safety":
            return await ops.deposit_to_safety(
                decision.amount,
                reason=decision.reasoning,
                trigger=trigger,
                kind="rebalance",
                source="positions",
                risk_score=assessment.score,
            )
        best = inputs.best_yield
        return await ops.redeploy_from_safety(
            decision.target_venue,
            decision.amount,
            spot_price=inputs.spot_price,
            reason=decision.reasoning,
            trigger=trigger,
            apy=best.net_apy if best and best.venue == decision.target_venue else None,
            asset=best.asset if best and best.venue == decision.target_venue else HOME_ASSET,
            kind="rebalance",
            risk_score=assessment.score,
        )

    async def run(self, max_iterations: Optional[int] = None) -> None:
        """Foreground loop for the CLI: cycles back to back, `interval` apart."""
        max_iterations = max_iterations if max_iterations is not None else self.ctx.config.scheduler.max_iterations
        self.state = SchedulerState.RUNNING
        logger.info(
            f"Starting treasury autopilot: risk={self.ctx.risk_level}, interval={self.interval_seconds}s, "
            f"mode={'PAPER' if self.ctx.config.dry_run else 'LIVE'}"
        )
        iterations = 0
        try:
            while self.is_running:
                report = await self.run_cycle()
                iterations += 1
                logger.info(f"Cycle {iterations}: {report.outcome}")

                if max_iterations and iterations >= max_iterations:
                    logger.info(f"Reached max iterations ({max_iterations})")
                    break

                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Autopilot cancelled")
        finally:
            self.state = SchedulerState.STOPPED
            logger.info("Autopilot stopped")


# ========== CLI Entry Point ==========


async def main(argv: Optional[list[str]] = None) -> None:
    """Run the autopilot from the command line."""
    import argparse
    from dataclasses import replace

    from treasury.config import TreasuryConfig, parse_risk_level
    from treasury.context import build_context

    parser = argparse.ArgumentParser(description="Run the treasury autopilot")
    parser.add_argument("--interval", type=float, help="Cycle interval in seconds (default: env or 60)")
    parser.add_argument("--risk-level", help="conservative | moderate | aggressive")
    parser.add_argument("--iterations", type=int, help="Max cycles (default: infinite)")
    parser.add_argument("--live", action="store_true", help="Disable dry-run (default: paper)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = TreasuryConfig.from_env()
    scheduler_config = config.scheduler
    if args.interval:
        scheduler_config = replace(scheduler_config, loop_interval_seconds=args.interval)
    if args.iterations:
        scheduler_config = replace(scheduler_config, max_iterations=args.iterations)
    config = replace(
        config,
        risk_level=parse_risk_level(args.risk_level) if args.risk_level else config.risk_level,
        dry_run=config.dry_run and not args.live,
        scheduler=scheduler_config,
    )

    ctx = build_context(config)
    try:
        await ctx.scheduler.run()
    finally:
        await ctx.aclose()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
