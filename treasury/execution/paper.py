"""Paper (dry-run) implementations of the execution adapters.

Nothing here touches a chain. Submissions are accepted and given a synthetic
transaction reference so the rest of the engine behaves as in live mode.
"""

from __future__ import annotations

import itertools
import logging
from typing import Iterable, Optional, Sequence

from treasury.execution.interfaces import TxResult, TxStep

logger = logging.getLogger(__name__)

_tx_counter = itertools.count(1)


def _paper_ref(prefix: str) -> str:
    return f"paper-{prefix}-{next(_tx_counter):06d}"


class PaperChainAdapter:
    """Builds step descriptors and accepts every submission."""

    def __init__(self, chain: str, *, available_venues: Optional[Iterable[str]] = None) -> None:
        self.chain = chain
        # None means every venue is available
        self._available = set(available_venues) if available_venues is not None else None
        self.submitted: list[tuple[TxStep, ...]] = []

    def is_available(self, venue: str) -> bool:
        return self._available is None or venue in self._available

    def build_deposit(self, venue: str, asset: str, amount: float) -> TxStep:
        return TxStep(kind="deposit", chain=self.chain, venue=venue, asset=asset, amount=amount)

    def build_withdraw(self, venue: str, asset: str, amount: float) -> TxStep:
        return TxStep(kind="withdraw", chain=self.chain, venue=venue, asset=asset, amount=amount)

    def build_swap(self, from_asset: str, to_asset: str, amount: float) -> TxStep:
        return TxStep(kind="swap", chain=self.chain, asset=from_asset, to_asset=to_asset, amount=amount)

    async def submit(self, steps: Sequence[TxStep]) -> TxResult:
        self.submitted.append(tuple(steps))
        ref = _paper_ref(self.chain.lower())
        logger.info(f"PAPER: {'; '.join(s.describe() for s in steps)} ({ref})")
        return TxResult(dry_run=True, accepted=True, reason="paper-execution", tx_ref=ref)


class PaperBridgeAdapter:
    def build_route(self, from_chain: str, to_chain: str, asset: str, amount: float) -> TxStep:
        return TxStep(kind="bridge", chain=from_chain, to_chain=to_chain, asset=asset, amount=amount)


class PaperSafetyVault:
    """In-memory vault. Withdrawals beyond the balance are rejected."""

    def __init__(self, balance: float = 0.0) -> None:
        self._balance = balance

    async def deposit(self, amount: float, reason: str) -> TxResult:
        if amount <= 0:
            return TxResult(dry_run=True, accepted=False, reason="amount must be positive")
        self._balance += amount
        return TxResult(dry_run=True, accepted=True, reason=reason, tx_ref=_paper_ref("vault"))

    async def withdraw(self, amount: float, reason: str) -> TxResult:
        if amount <= 0:
            return TxResult(dry_run=True, accepted=False, reason="amount must be positive")
        if amount > self._balance + 1e-9:
            return TxResult(
                dry_run=True,
                accepted=False,
                reason=f"insufficient vault balance: {self._balance:.2f} < {amount:.2f}",
            )
        self._balance -= amount
        return TxResult(dry_run=True, accepted=True, reason=reason, tx_ref=_paper_ref("vault"))

    async def balance(self) -> float:
        return self._balance
