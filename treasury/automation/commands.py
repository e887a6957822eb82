"""Typed command dispatch for voice, API and offline replay.

Every command is a `CommandName` member with one parsed-args dataclass and
one handler. The handler table is checked for completeness when the executor
is built, so adding a command without a handler fails at startup.

`dispatch()` raises typed errors and is what the offline queue uses to tell
success from failure. `execute_function()` wraps it for conversational
callers and always returns text.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional

from treasury.config import HOME_ASSET, get_risk_profile, parse_risk_level
from treasury.errors import ExecutionFailedError, InvalidInputError, SignalUnavailableError, TreasuryError
from treasury.execution.router import resolve_venue
from treasury.market_data.bluefin import format_funding_rates_for_voice
from treasury.opportunities.aggregator import format_yields_for_voice
from treasury.portfolio.positions import format_positions_for_voice
from treasury.risk.scorer import gather_inputs
from treasury.types import TreasuryDecision

if TYPE_CHECKING:
    from treasury.context import TreasuryContext

logger = logging.getLogger(__name__)


class CommandName(str, Enum):
    FIND_BEST_YIELD = "findBestYield"
    MOVE_TO_YIELD = "moveToYield"
    GET_YIELD_POSITIONS = "getYieldPositions"
    GET_VAULT_SHARE = "getVaultShare"
    GET_FUNDING_RATES = "getFundingRates"
    ASSESS_TREASURY_RISK = "assessTreasuryRisk"
    MOVE_TO_SAFETY_VAULT = "moveToSafetyVault"
    WITHDRAW_FROM_SAFETY_VAULT = "withdrawFromSafetyVault"
    GET_TREASURY_STATUS = "getTreasuryStatus"
    START_AUTO_YIELD = "startAutoYield"
    STOP_AUTO_YIELD = "stopAutoYield"
    SET_RISK_LEVEL = "setRiskLevel"
    GET_AGENT_LOG = "getAgentLog"
    GET_OFFLINE_QUEUE = "getOfflineQueue"


# Older voice clients still send the vault-specific names
COMMAND_ALIASES: dict[str, CommandName] = {
    "moveToArcVault": CommandName.MOVE_TO_SAFETY_VAULT,
    "withdrawFromArcVault": CommandName.WITHDRAW_FROM_SAFETY_VAULT,
}

# Commands that move balances or write decisions; serialized with scheduler cycles
MUTATING_COMMANDS: frozenset[CommandName] = frozenset(
    {
        CommandName.MOVE_TO_YIELD,
        CommandName.MOVE_TO_SAFETY_VAULT,
        CommandName.WITHDRAW_FROM_SAFETY_VAULT,
        CommandName.ASSESS_TREASURY_RISK,
    }
)

DEFAULT_SAFETY_REASON = "Manual safety move: parking in the safety vault"
DEFAULT_WITHDRAW_REASON = "Redeploying to yield: market conditions improved"
DEFAULT_MOVE_AMOUNT = 100.0


def resolve_command(name: str) -> CommandName:
    if name in COMMAND_ALIASES:
        return COMMAND_ALIASES[name]
    try:
        return CommandName(name)
    except ValueError:
        raise InvalidInputError(f"Unknown function: {name}") from None


def _float_arg(args: Mapping[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    value = args.get(key)
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Argument {key!r} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidInputError(f"Argument {key!r} must be a finite number, got {value!r}")
    return number


def _str_arg(args: Mapping[str, Any], key: str, default: str = "") -> str:
    value = args.get(key)
    return str(value).strip() if value is not None else default


# ========== Parsed command arguments ==========


@dataclass(frozen=True)
class NoArgs:
    pass


@dataclass(frozen=True)
class MoveToYieldArgs:
    protocol: str
    amount: float  # in HOME_ASSET units


@dataclass(frozen=True)
class VaultTransferArgs:
    amount: float  # USD
    reason: str


@dataclass(frozen=True)
class SetRiskLevelArgs:
    level: str


@dataclass(frozen=True)
class GetAgentLogArgs:
    count: int = 5


def parse_command(name: str, args: Optional[Mapping[str, Any]] = None) -> tuple[CommandName, Any]:
    """Validate a raw `(name, args)` pair into a command and its typed args."""
    command = resolve_command(name)
    args = args or {}

    if command is CommandName.MOVE_TO_YIELD:
        protocol = _str_arg(args, "protocol")
        if not protocol:
            raise InvalidInputError("Please specify a protocol to move funds to.")
        amount = _float_arg(args, "amount", DEFAULT_MOVE_AMOUNT)
        if amount <= 0:
            raise InvalidInputError(f"Amount must be positive, got {amount}")
        return command, MoveToYieldArgs(protocol=protocol, amount=amount)

    if command in (CommandName.MOVE_TO_SAFETY_VAULT, CommandName.WITHDRAW_FROM_SAFETY_VAULT):
        amount = _float_arg(args, "amount", 0.0)
        if amount <= 0:
            verb = "deposit" if command is CommandName.MOVE_TO_SAFETY_VAULT else "withdraw"
            raise InvalidInputError(f"Please specify a positive amount in USD to {verb}.")
        default_reason = (
            DEFAULT_SAFETY_REASON if command is CommandName.MOVE_TO_SAFETY_VAULT else DEFAULT_WITHDRAW_REASON
        )
        return command, VaultTransferArgs(amount=amount, reason=_str_arg(args, "reason") or default_reason)

    if command is CommandName.SET_RISK_LEVEL:
        return command, SetRiskLevelArgs(level=parse_risk_level(args.get("level") or "moderate"))

    if command is CommandName.GET_AGENT_LOG:
        count = int(_float_arg(args, "count", 5))
        return command, GetAgentLogArgs(count=max(1, count))

    return command, NoArgs()


Handler = Callable[[Any], Awaitable[str]]


class CommandExecutor:
    """Single execution entry point shared by voice, HTTP and the offline queue."""

    def __init__(self, ctx: TreasuryContext) -> None:
        self.ctx = ctx
        self._handlers = self._build_handlers()
        missing = set(CommandName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Commands without a handler: {sorted(c.value for c in missing)}")

        # Set per dispatch; handlers pass it through to the operations layer
        self._idempotency_key: Optional[str] = None

    def _build_handlers(self) -> dict[CommandName, Handler]:
        return {
            CommandName.FIND_BEST_YIELD: self._find_best_yield,
            CommandName.MOVE_TO_YIELD: self._move_to_yield,
            CommandName.GET_YIELD_POSITIONS: self._get_yield_positions,
            CommandName.GET_VAULT_SHARE: self._get_vault_share,
            CommandName.GET_FUNDING_RATES: self._get_funding_rates,
            CommandName.ASSESS_TREASURY_RISK: self._assess_treasury_risk,
            CommandName.MOVE_TO_SAFETY_VAULT: self._move_to_safety_vault,
            CommandName.WITHDRAW_FROM_SAFETY_VAULT: self._withdraw_from_safety_vault,
            CommandName.GET_TREASURY_STATUS: self._get_treasury_status,
            CommandName.START_AUTO_YIELD: self._start_auto_yield,
            CommandName.STOP_AUTO_YIELD: self._stop_auto_yield,
            CommandName.SET_RISK_LEVEL: self._set_risk_level,
            CommandName.GET_AGENT_LOG: self._get_agent_log,
            CommandName.GET_OFFLINE_QUEUE: self._get_offline_queue,
        }

    async def dispatch(
        self,
        name: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Run a command. Raises `TreasuryError` subclasses on failure."""
        command, parsed = parse_command(name, args)
        handler = self._handlers[command]

        if command not in MUTATING_COMMANDS:
            return await handler(parsed)

        if idempotency_key and self.ctx.ledger.has_completed(idempotency_key):
            return self._skipped(command, idempotency_key)

        async with self.ctx.execution_lock:
            # Re-check: the same key may have completed while we waited
            if idempotency_key and self.ctx.ledger.has_completed(idempotency_key):
                return self._skipped(command, idempotency_key)
            self._idempotency_key = idempotency_key
            try:
                return await handler(parsed)
            finally:
                self._idempotency_key = None

    async def execute_function(
        self,
        name: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Run a command and return user-visible text. Never raises."""
        try:
            return await self.dispatch(name, args, idempotency_key=idempotency_key)
        except asyncio.CancelledError:
            raise
        except TreasuryError as e:
            self.ctx.activity.warning(f"{name}: {e}")
            return str(e)
        except Exception as e:
            logger.exception(f"Command {name} failed unexpectedly: {e}")
            self.ctx.activity.error(f"{name} failed: {e}")
            return f"{name} failed: {e}"

    def _skipped(self, command: CommandName, key: str) -> str:
        logger.info(f"Skipping {command.value}: idempotency key {key} already completed")
        return f"{command.value} already completed (key {key}); not executed again."

    @staticmethod
    def _raise_if_failed(decision: TreasuryDecision) -> None:
        if decision.status == "failed":
            raise ExecutionFailedError(decision.reasoning, decision_id=decision.id)

    # ========== Yield ==========

    async def _find_best_yield(self, _: NoArgs) -> str:
        ctx = self.ctx
        result = await ctx.aggregator.find_best(ctx.risk_level, ctx.book.positions.all())
        ctx.activity.info(
            "Yield scan complete",
            count=len(result.opportunities),
            best=result.best.venue if result.best else None,
            best_apy=result.best.net_apy if result.best else None,
            venues=ctx.router.format_status(),
        )
        return f"{format_yields_for_voice(result.opportunities)}\n\nRecommendation: {result.recommendation}"

    async def _move_to_yield(self, args: MoveToYieldArgs) -> str:
        ctx = self.ctx
        venue = resolve_venue(args.protocol)

        spot = await ctx.signals.spot_price(HOME_ASSET)
        if spot <= 0:
            raise SignalUnavailableError(f"{HOME_ASSET} price unavailable; cannot size a {args.amount} {HOME_ASSET} move")

        opportunities = await ctx.aggregator.scan()
        target = next((o for o in opportunities if o.venue == venue.display_name), None)
        if target is None:
            available = ", ".join(sorted({o.venue for o in opportunities})) or "none"
            raise InvalidInputError(f'Protocol "{args.protocol}" has no current yield. Available: {available}')

        amount_usd = args.amount * spot
        decision = await ctx.operations.deploy_to_venue(
            venue,
            amount_usd,
            spot_price=spot,
            reason=f"Manual move of {args.amount:g} {HOME_ASSET} to {venue.display_name} at {target.net_apy:.1f}% net APY",
            trigger="Manual command",
            apy=target.net_apy,
            asset=target.asset,
            source="wallet",
            risk_score=ctx.ledger.risk_score,
            idempotency_key=self._idempotency_key,
        )
        self._raise_if_failed(decision)
        ctx.activity.action(decision.action, status=decision.status, tx_ref=decision.tx_ref)

        text = f"{decision.action}. Now earning {target.net_apy:.1f}% APY."
        if target.bridge_cost_pct > 0:
            text += f" Net after {target.bridge_cost_pct:.1f}% bridge fee."
        if decision.tx_ref:
            text += f" Transaction: {decision.tx_ref}"
        elif decision.status == "simulated":
            text += " (simulated on this network)"
        return text

    async def _get_yield_positions(self, _: NoArgs) -> str:
        formatted = format_positions_for_voice(self.ctx.book.positions.all())
        return f"{formatted}\nProtocol integrations: {self.ctx.router.format_status()}"

    async def _get_vault_share(self, _: NoArgs) -> str:
        positions = self.ctx.book.positions.all()
        if not positions:
            return "No vault deposits yet. Say 'deposit' followed by an amount to get started."

        deposited = sum(p.principal_usd for p in positions)
        earned = sum(p.earned_usd for p in positions)
        avg_apy = sum(p.apy for p in positions) / len(positions)
        return (
            f"Vault share: ${deposited:.2f} deposited across {len(positions)} protocol(s). "
            f"Accumulated yield: ${earned:.2f}. Average APY: {avg_apy:.1f}%."
        )

    async def _get_funding_rates(self, _: NoArgs) -> str:
        rates = await self.ctx.signals.funding_rates()
        if not rates:
            return "Unable to fetch Bluefin funding rates."

        text = format_funding_rates_for_voice(list(rates))
        high = [r for r in rates if abs(r.annualized_pct) > 10]
        if high:
            notes = "; ".join(
                f"{r.market} funding at {r.annualized_pct:.1f}% annualized, {r.collect_direction} to collect"
                for r in high
            )
            text += f"\n\nYield opportunity: {notes}"
        self.ctx.activity.info("Bluefin funding rates fetched", markets=[r.market for r in rates])
        return text

    # ========== Treasury ==========

    async def _assess_treasury_risk(self, _: NoArgs) -> str:
        ctx = self.ctx
        inputs = await gather_inputs(
            ctx.signals, ctx.aggregator, ctx.risk_level, ctx.book.positions.all(), ctx.scorer.asset
        )
        assessment = ctx.scorer.assess(inputs)
        ctx.ledger.update_risk_score(assessment.score)
        ctx.operations.record_assessment(
            trigger=assessment.trigger_text,
            action=f"Risk assessment: {assessment.band} ({assessment.score}/100)",
            reasoning=assessment.reasoning,
            risk_score=assessment.score,
        )
        ctx.activity.info(
            f"Treasury risk: {assessment.score}/100 ({assessment.band})",
            price_change_24h=assessment.price_change_24h,
            avg_funding=assessment.avg_funding_annualized,
            best_apy=assessment.best_net_apy,
        )
        return assessment.format_for_voice()

    async def _move_to_safety_vault(self, args: VaultTransferArgs) -> str:
        ctx = self.ctx
        decision = await ctx.operations.deposit_to_safety(
            args.amount,
            reason=args.reason,
            risk_score=ctx.ledger.risk_score,
            idempotency_key=self._idempotency_key,
        )
        self._raise_if_failed(decision)
        ctx.activity.action(f"Safety vault deposit: ${args.amount:.2f}", tx_ref=decision.tx_ref)
        return (
            f"Deposited ${args.amount:.2f} into the safety vault.\n"
            f"Reason: {args.reason}\n"
            f"Transaction: {decision.tx_ref or 'simulated'}\n"
            f"Vault balance: ~${ctx.book.safety_balance:.2f}"
        )

    async def _withdraw_from_safety_vault(self, args: VaultTransferArgs) -> str:
        ctx = self.ctx
        decision = await ctx.operations.withdraw_from_safety(
            args.amount,
            reason=args.reason,
            risk_score=ctx.ledger.risk_score,
            idempotency_key=self._idempotency_key,
        )
        self._raise_if_failed(decision)
        ctx.activity.action(f"Safety vault withdrawal: ${args.amount:.2f}", tx_ref=decision.tx_ref)
        return (
            f"Withdrew ${args.amount:.2f} from the safety vault for yield redeployment.\n"
            f"Reason: {args.reason}\n"
            f"Transaction: {decision.tx_ref or 'simulated'}\n"
            f"Remaining vault balance: ~${ctx.book.safety_balance:.2f}"
        )

    async def _get_treasury_status(self, _: NoArgs) -> str:
        ctx = self.ctx
        state = ctx.treasury_state()
        positions = ctx.book.positions.all()

        lines = [
            "Treasury Status (Cross-Chain):",
            "",
            "Safety Vault:",
            f"  • Balance: ${state.safety_balance:.2f}",
            f"  • Allocation: {state.allocation_safety_pct:.1f}%",
            "",
            "Yield (Growth):",
        ]
        if positions:
            lines.extend(f"  • {p.venue} ({p.chain}): ${p.principal_usd:.2f} at {p.apy:.1f}% APY" for p in positions)
        else:
            lines.append("  • No active positions")
        lines.append(f"  • Allocation: {state.allocation_yield_pct:.1f}%")
        lines.extend(
            [
                "",
                "Overall:",
                f"  • Total Value: ~${state.total_value:.2f}",
                f"  • Risk Score: {state.risk_score}/100",
                f"  • Risk Level: {ctx.risk_level}",
            ]
        )

        recent = ctx.ledger.decisions()[-3:]
        if recent:
            lines.extend(["", "Recent Decisions:"])
            lines.extend(
                f"  [{d.timestamp.strftime('%H:%M:%S')}] {d.action}: {d.reasoning[:60]}" for d in recent
            )
        return "\n".join(lines)

    # ========== Agent control ==========

    async def _start_auto_yield(self, _: NoArgs) -> str:
        ctx = self.ctx
        if not ctx.scheduler.start():
            return "Auto yield optimizer is already running."
        profile = get_risk_profile(ctx.risk_level)
        return (
            f"Auto yield optimizer started. Monitoring yields every {ctx.scheduler.interval_seconds:g} seconds "
            f"with {ctx.risk_level} risk profile. Rebalance threshold: {profile.rebalance_threshold_apy}% APY. "
            f"Integrations: {ctx.router.format_status()}."
        )

    async def _stop_auto_yield(self, _: NoArgs) -> str:
        if not self.ctx.scheduler.stop():
            return "Auto yield optimizer is not running."
        return "Auto yield optimizer stopped."

    async def _set_risk_level(self, args: SetRiskLevelArgs) -> str:
        self.ctx.risk_level = args.level
        profile = get_risk_profile(args.level)
        self.ctx.activity.info(f"Risk level set to {args.level}")
        cross_chain = "enabled (Aave, Compound)" if profile.allow_cross_chain else "disabled (Sui-only: Scallop, NAVI)"
        return (
            f"Risk level set to {args.level}. Rebalance threshold: {profile.rebalance_threshold_apy}% APY difference. "
            f"Max protocol allocation: {profile.max_allocation_pct}%. Cross-chain: {cross_chain}."
        )

    async def _get_agent_log(self, args: GetAgentLogArgs) -> str:
        return self.ctx.activity.format_for_voice(args.count)

    async def _get_offline_queue(self, _: NoArgs) -> str:
        return self.ctx.offline_queue.format_for_voice()
