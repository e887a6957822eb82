"""Decision ledger for the treasury engine.

Append-only and bounded: once capacity is exceeded the oldest decision is
evicted. Decisions are never edited; a correction is a new decision that names
the old id in its reasoning.

The ledger is the single writer of the latest risk score and of the
last-decision-at-by-kind index used for hysteresis. Timestamps are
timezone-aware UTC.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from treasury.types import (
    DecisionChain,
    DecisionKind,
    DecisionStatus,
    TreasuryDecision,
    TreasuryState,
    YieldPosition,
    utc_now,
)

logger = logging.getLogger(__name__)


class DecisionLedger:
    """In-memory, bounded ledger of treasury decisions."""

    def __init__(self, capacity: int = 50, *, clock: Callable[[], datetime] = utc_now) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._clock = clock
        self._decisions: deque[TreasuryDecision] = deque(maxlen=capacity)
        self._last_at_by_kind: dict[DecisionKind, datetime] = {}
        self._completed_keys: set[str] = set()
        self._risk_score = 0
        self._counter = itertools.count(1)

    def record(
        self,
        *,
        kind: DecisionKind,
        trigger: str,
        action: str,
        reasoning: str,
        risk_score: Optional[int] = None,
        amount: Optional[float] = None,
        tx_ref: Optional[str] = None,
        chain: DecisionChain = "safety",
        status: DecisionStatus = "executed",
        idempotency_key: Optional[str] = None,
    ) -> TreasuryDecision:
        """Append a decision, evicting the oldest beyond capacity."""
        now = self._clock()
        if risk_score is not None:
            self._risk_score = risk_score

        decision = TreasuryDecision(
            id=f"td-{next(self._counter)}-{int(now.timestamp() * 1000)}",
            timestamp=now,
            kind=kind,
            trigger=trigger,
            action=action,
            reasoning=reasoning,
            risk_score=self._risk_score,
            chain=chain,
            status=status,
            amount=amount,
            tx_ref=tx_ref,
            idempotency_key=idempotency_key,
        )
        self._decisions.append(decision)

        # Failed attempts must not hold off a retry
        if status != "failed":
            self._last_at_by_kind[kind] = now
            if idempotency_key:
                self._completed_keys.add(idempotency_key)

        level = logging.WARNING if status == "failed" else logging.INFO
        logger.log(level, f"Decision {decision.id} [{kind}/{status}]: {action}")
        return decision

    def update_risk_score(self, score: int) -> None:
        self._risk_score = score

    @property
    def risk_score(self) -> int:
        return self._risk_score

    def last_at(self, kind: DecisionKind) -> Optional[datetime]:
        """Timestamp of the most recent non-failed decision of `kind`."""
        return self._last_at_by_kind.get(kind)

    def has_completed(self, idempotency_key: str) -> bool:
        return idempotency_key in self._completed_keys

    def latest(self) -> Optional[TreasuryDecision]:
        return self._decisions[-1] if self._decisions else None

    def decisions(self, kind: Optional[DecisionKind] = None) -> list[TreasuryDecision]:
        """Copy of the ledger, oldest first, optionally filtered by kind."""
        return [d for d in self._decisions if kind is None or d.kind == kind]

    def __len__(self) -> int:
        return len(self._decisions)

    def current(self, safety_balance: float, positions: Sequence[YieldPosition]) -> TreasuryState:
        """Derive the treasury state from live balances. Never cached."""
        yield_total = sum(p.principal_usd for p in positions)
        total = safety_balance + yield_total
        safety_pct = (safety_balance / total) * 100 if total > 0 else 0.0
        last = self.latest()
        return TreasuryState(
            safety_balance=safety_balance,
            yield_total=yield_total,
            last_decision=last,
            last_decision_at=last.timestamp if last else None,
            risk_score=self._risk_score,
            allocation_safety_pct=safety_pct,
            allocation_yield_pct=100 - safety_pct if total > 0 else 0.0,
        )

    def clear(self) -> None:
        """Clear all decisions (for testing)."""
        self._decisions.clear()
        self._last_at_by_kind.clear()
        self._completed_keys.clear()
        self._risk_score = 0

    def to_json_list(self) -> list[dict[str, Any]]:
        """Export all decisions as JSON-serializable list."""
        return [d.to_dict() for d in self._decisions]
