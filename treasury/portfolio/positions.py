"""Optimistic local book of treasury balances.

Balances are updated when an operation is executed or simulated; they are not
reconciled against chain state.
"""

from __future__ import annotations

from typing import Optional, Sequence

from treasury.types import PortfolioState, YieldPosition


class PositionBook:
    """Yield positions keyed by (venue, chain). Re-deploying replaces the entry."""

    def __init__(self) -> None:
        self._positions: dict[tuple[str, str], YieldPosition] = {}

    def upsert(self, position: YieldPosition) -> YieldPosition:
        self._positions[(position.venue, position.chain)] = position
        return position

    def get(self, venue: str, chain: str) -> Optional[YieldPosition]:
        return self._positions.get((venue, chain))

    def remove(self, venue: str, chain: str) -> Optional[YieldPosition]:
        return self._positions.pop((venue, chain), None)

    def all(self) -> list[YieldPosition]:
        return list(self._positions.values())

    def best(self) -> Optional[YieldPosition]:
        """Highest-APY open position, if any."""
        open_positions = [p for p in self._positions.values() if p.principal_usd > 0]
        if not open_positions:
            return None
        return max(open_positions, key=lambda p: p.apy)

    def yield_total(self) -> float:
        return sum(p.principal_usd for p in self._positions.values())

    def scale_down(self, amount_usd: float) -> float:
        """Withdraw `amount_usd` pro rata across positions.

        Returns the amount actually removed (capped at the yield total).
        Positions that reach zero are dropped.
        """
        total = self.yield_total()
        if total <= 0 or amount_usd <= 0:
            return 0.0

        removed = min(amount_usd, total)
        keep_ratio = 1 - removed / total
        for key, position in list(self._positions.items()):
            position.principal_usd *= keep_ratio
            position.principal *= keep_ratio
            if position.principal_usd <= 1e-9:
                del self._positions[key]
        return removed

    def clear(self) -> None:
        self._positions.clear()


class TreasuryBook:
    """Safety balance plus yield positions, both in USD."""

    def __init__(self, *, safety_balance: float = 0.0, positions: Optional[PositionBook] = None) -> None:
        self.safety_balance = safety_balance
        self.positions = positions or PositionBook()

    @property
    def yield_total(self) -> float:
        return self.positions.yield_total()

    @property
    def total_value(self) -> float:
        return self.safety_balance + self.yield_total

    def portfolio(self) -> PortfolioState:
        best = self.positions.best()
        return PortfolioState(
            safety_usd=self.safety_balance,
            yield_usd=self.yield_total,
            current_venue=best.venue if best else None,
            current_apy=best.apy if best else 0.0,
        )


def format_positions_for_voice(positions: Sequence[YieldPosition]) -> str:
    if not positions:
        return "No active yield positions."

    lines = [
        f"{p.venue} on {p.chain}: ${p.principal_usd:.2f} at {p.apy:.1f}% APY (earned ${p.earned_usd:.2f})"
        for p in positions
    ]
    return "Your yield positions:\n" + "\n".join(lines)
