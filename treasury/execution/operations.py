"""Treasury operations: the only code that moves balances.

Shared by the scheduler and the command executor. Each public operation
writes exactly one decision to the ledger. Input and venue errors are raised
before any side effect; execution failures are recorded as `failed` decisions
with the reason, and returned rather than raised.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Literal, Optional, Tuple, Union

from treasury.automation.ledger import DecisionLedger
from treasury.errors import ExecutionFailedError, InvalidInputError
from treasury.execution.interfaces import SafetyVault, TxResult
from treasury.execution.router import ActionDescriptor, ProtocolRouter, RouteContext, Venue, resolve_venue
from treasury.portfolio.positions import TreasuryBook
from treasury.types import DecisionChain, DecisionKind, TreasuryDecision, YieldPosition, utc_now

logger = logging.getLogger(__name__)

FundsSource = Literal["wallet", "positions"]


class TreasuryOperations:
    def __init__(
        self,
        *,
        book: TreasuryBook,
        ledger: DecisionLedger,
        router: ProtocolRouter,
        vault: SafetyVault,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.book = book
        self.ledger = ledger
        self.router = router
        self.vault = vault
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, call: Awaitable[TxResult], what: str) -> TxResult:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ExecutionFailedError(f"{what} timed out after {self.timeout_seconds}s") from e

    def _failed(
        self,
        *,
        kind: DecisionKind,
        trigger: str,
        action: str,
        reasoning: str,
        error: Exception,
        amount: float,
        chain: DecisionChain,
        risk_score: Optional[int],
        idempotency_key: Optional[str],
    ) -> TreasuryDecision:
        logger.error(f"{action} failed: {error}")
        return self.ledger.record(
            kind=kind,
            trigger=trigger,
            action=f"FAILED: {action}",
            reasoning=f"{reasoning}. Failure: {error}",
            risk_score=risk_score,
            amount=amount,
            chain=chain,
            status="failed",
            idempotency_key=idempotency_key,
        )

    @staticmethod
    def _require_positive(amount: float) -> None:
        if amount is None or not math.isfinite(amount) or amount <= 0:
            raise InvalidInputError(f"Amount must be positive, got {amount}")

    async def deposit_to_safety(
        self,
        amount: float,
        *,
        reason: str,
        trigger: Optional[str] = None,
        kind: DecisionKind = "safety_deposit",
        source: FundsSource = "wallet",
        risk_score: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TreasuryDecision:
        """Move `amount` USD of settlement asset into the safety vault.

        With `source="positions"` the amount is capped at what the yield
        positions hold, so the safety balance is only credited with funds
        that were actually taken out of them.
        """
        self._require_positive(amount)
        requested = amount
        if source == "positions":
            amount = min(amount, self.book.positions.yield_total())
            if amount <= 0:
                raise InvalidInputError("No yield positions to move into the safety vault")
        if amount < requested:
            reason = f"{reason} (only ${amount:.2f} was in yield positions)"
        action = f"Deposited ${amount:.2f} to safety vault"

        try:
            result = await self._bounded(self.vault.deposit(amount, reason), "Safety vault deposit")
            if not result.accepted:
                raise ExecutionFailedError(f"Safety vault rejected deposit: {result.reason}")
        except Exception as e:
            return self._failed(
                kind=kind,
                trigger=trigger or reason,
                action=action,
                reasoning=reason,
                error=e,
                amount=amount,
                chain="safety",
                risk_score=risk_score,
                idempotency_key=idempotency_key,
            )

        if source == "positions":
            self.book.positions.scale_down(amount)
        self.book.safety_balance += amount

        return self.ledger.record(
            kind=kind,
            trigger=trigger or reason,
            action=action,
            reasoning=reason,
            risk_score=risk_score,
            amount=amount,
            tx_ref=result.tx_ref,
            chain="safety",
            status="simulated" if result.dry_run else "executed",
            idempotency_key=idempotency_key,
        )

    async def withdraw_from_safety(
        self,
        amount: float,
        *,
        reason: str,
        trigger: Optional[str] = None,
        kind: DecisionKind = "yield_withdraw",
        risk_score: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TreasuryDecision:
        """Withdraw `amount` USD from the safety vault back to the wallet."""
        self._require_positive(amount)
        action = f"Withdrew ${amount:.2f} from safety vault"

        try:
            result = await self._withdraw_vault(amount, reason)
        except Exception as e:
            return self._failed(
                kind=kind,
                trigger=trigger or reason,
                action=action,
                reasoning=reason,
                error=e,
                amount=amount,
                chain="safety",
                risk_score=risk_score,
                idempotency_key=idempotency_key,
            )

        return self.ledger.record(
            kind=kind,
            trigger=trigger or reason,
            action=action,
            reasoning=reason,
            risk_score=risk_score,
            amount=amount,
            tx_ref=result.tx_ref,
            chain="safety",
            status="simulated" if result.dry_run else "executed",
            idempotency_key=idempotency_key,
        )

    async def _withdraw_vault(self, amount: float, reason: str) -> TxResult:
        if amount > self.book.safety_balance + 1e-9:
            raise ExecutionFailedError(
                f"Insufficient safety balance: ${self.book.safety_balance:.2f} < ${amount:.2f}"
            )
        result = await self._bounded(self.vault.withdraw(amount, reason), "Safety vault withdrawal")
        if not result.accepted:
            raise ExecutionFailedError(f"Safety vault rejected withdrawal: {result.reason}")
        self.book.safety_balance = max(0.0, self.book.safety_balance - amount)
        return result

    def _plan_deposit(self, venue: Venue, amount_usd: float, spot_price: float) -> ActionDescriptor:
        if spot_price is None or not math.isfinite(spot_price) or spot_price <= 0:
            raise ExecutionFailedError("Spot price unavailable; cannot size the deposit")
        return self.router.build_deposit(venue, amount_usd / spot_price, RouteContext(spot_price=spot_price))

    async def _submit_deposit(self, venue: Venue, descriptor: ActionDescriptor) -> Optional[TxResult]:
        if descriptor.is_simulated:
            logger.info(f"Simulated route: {descriptor.description}")
            return None

        result = await self._bounded(self.router.home.submit(descriptor.steps), f"{venue.display_name} deposit")
        if not result.accepted:
            raise ExecutionFailedError(f"{venue.display_name} deposit rejected: {result.reason}")
        return result

    async def _route_deposit(
        self, venue: Venue, amount_usd: float, spot_price: float
    ) -> Tuple[ActionDescriptor, Optional[TxResult]]:
        descriptor = self._plan_deposit(venue, amount_usd, spot_price)
        return descriptor, await self._submit_deposit(venue, descriptor)

    def _credit_position(self, venue: Venue, amount_usd: float, spot_price: float, apy: Optional[float], asset: str) -> None:
        existing = self.book.positions.get(venue.display_name, venue.chain)
        self.book.positions.upsert(
            YieldPosition(
                venue=venue.display_name,
                chain=venue.chain,
                asset=asset,
                principal=(existing.principal if existing else 0.0) + amount_usd / spot_price,
                principal_usd=(existing.principal_usd if existing else 0.0) + amount_usd,
                apy=apy if apy is not None else (existing.apy if existing else 0.0),
                earned_usd=existing.earned_usd if existing else 0.0,
                opened_at=existing.opened_at if existing else utc_now(),
            )
        )

    async def deploy_to_venue(
        self,
        venue: Union[str, Venue],
        amount_usd: float,
        *,
        spot_price: float,
        reason: str,
        trigger: Optional[str] = None,
        apy: Optional[float] = None,
        asset: str = "SUI",
        kind: DecisionKind = "rebalance",
        source: FundsSource = "wallet",
        risk_score: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TreasuryDecision:
        """Deploy `amount_usd` into a yield venue.

        With `source="positions"` the amount is first taken pro rata out of
        the current yield positions (a rebalance); otherwise it is new money
        from the wallet.
        """
        resolved = resolve_venue(venue)
        self._require_positive(amount_usd)
        chain: DecisionChain = "cross-chain" if resolved.is_cross_chain else "home"
        action = f"Deployed ${amount_usd:.2f} to {resolved.display_name} on {resolved.chain}"

        try:
            descriptor, result = await self._route_deposit(resolved, amount_usd, spot_price)
        except Exception as e:
            return self._failed(
                kind=kind,
                trigger=trigger or reason,
                action=action,
                reasoning=reason,
                error=e,
                amount=amount_usd,
                chain=chain,
                risk_score=risk_score,
                idempotency_key=idempotency_key,
            )

        if source == "positions":
            self.book.positions.scale_down(amount_usd)
        self._credit_position(resolved, amount_usd, spot_price, apy, asset)

        return self.ledger.record(
            kind=kind,
            trigger=trigger or reason,
            action=action,
            reasoning=f"{reason}. Route: {descriptor.description}",
            risk_score=risk_score,
            amount=amount_usd,
            tx_ref=result.tx_ref if result else None,
            chain=chain,
            status="simulated" if result is None or result.dry_run else "executed",
            idempotency_key=idempotency_key,
        )

    async def redeploy_from_safety(
        self,
        venue: Union[str, Venue],
        amount_usd: float,
        *,
        spot_price: float,
        reason: str,
        trigger: Optional[str] = None,
        apy: Optional[float] = None,
        asset: str = "SUI",
        kind: DecisionKind = "auto_redeploy",
        risk_score: Optional[int] = None,
    ) -> TreasuryDecision:
        """Withdraw from the safety vault and deploy into a venue as one decision.

        The route is planned before the vault is touched. If the venue then
        rejects the deposit, the withdrawn amount is credited back to the
        safety balance so the book never loses track of it.
        """
        resolved = resolve_venue(venue)
        self._require_positive(amount_usd)
        action = f"Withdrew ${amount_usd:.2f} from safety vault to {resolved.display_name}"

        def failed(error: Exception, reasoning: str = reason) -> TreasuryDecision:
            return self._failed(
                kind=kind,
                trigger=trigger or reason,
                action=action,
                reasoning=reasoning,
                error=error,
                amount=amount_usd,
                chain="cross-chain",
                risk_score=risk_score,
                idempotency_key=None,
            )

        try:
            descriptor = self._plan_deposit(resolved, amount_usd, spot_price)
            vault_result = await self._withdraw_vault(amount_usd, reason)
        except Exception as e:
            return failed(e)

        try:
            result = await self._submit_deposit(resolved, descriptor)
        except Exception as e:
            self.book.safety_balance += amount_usd
            return failed(
                e,
                f"{reason}. Vault withdrawal {vault_result.tx_ref} succeeded; "
                f"${amount_usd:.2f} held in the wallet and kept on the safety balance",
            )

        self._credit_position(resolved, amount_usd, spot_price, apy, asset)
        return self.ledger.record(
            kind=kind,
            trigger=trigger or reason,
            action=action,
            reasoning=f"{reason}. Route: {descriptor.description}",
            risk_score=risk_score,
            amount=amount_usd,
            tx_ref=vault_result.tx_ref,
            chain="cross-chain",
            status="simulated" if (vault_result.dry_run or result is None or result.dry_run) else "executed",
        )

    def record_assessment(self, *, trigger: str, action: str, reasoning: str, risk_score: int) -> TreasuryDecision:
        return self.ledger.record(
            kind="risk_assessment",
            trigger=trigger,
            action=action,
            reasoning=reasoning,
            risk_score=risk_score,
            chain="home",
            status="informational",
        )
