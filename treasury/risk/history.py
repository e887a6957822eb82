from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
from typing import Optional

from treasury.types import PriceHistoryEntry, utc_now

DAY = timedelta(hours=24)


def pct_change(base: float, current: float) -> float:
    """Percent change from `base` to `current`; 0 when the base is not positive."""
    if base <= 0:
        return 0.0
    return (current - base) / base * 100


class PriceHistory:
    """Bounded ring buffer of spot prices, oldest evicted first."""

    def __init__(self, maxlen: int = 20) -> None:
        if maxlen < 1:
            raise ValueError(f"maxlen must be >= 1, got {maxlen}")
        self._entries: deque[PriceHistoryEntry] = deque(maxlen=maxlen)

    @property
    def maxlen(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, price: float, timestamp: Optional[datetime] = None) -> PriceHistoryEntry:
        entry = PriceHistoryEntry(price=price, timestamp=timestamp or utc_now())
        self._entries.append(entry)
        return entry

    def entries(self) -> list[PriceHistoryEntry]:
        return list(self._entries)

    def latest(self) -> Optional[PriceHistoryEntry]:
        return self._entries[-1] if self._entries else None

    def change_24h(self, now: Optional[datetime] = None) -> float:
        """Change of the latest price against the oldest entry inside the last 24h."""
        if len(self._entries) < 2:
            return 0.0
        now = now or self._entries[-1].timestamp
        window = [e for e in self._entries if now - e.timestamp <= DAY]
        if len(window) < 2:
            return 0.0
        return pct_change(window[0].price, window[-1].price)

    def change_from_start(self) -> float:
        """Change of the latest price against the oldest buffered price."""
        if len(self._entries) < 2:
            return 0.0
        return pct_change(self._entries[0].price, self._entries[-1].price)

    def recovery_from_low(self, window: int = 10) -> float:
        """Change of the latest price against the minimum of the last `window` entries."""
        if len(self._entries) < 2:
            return 0.0
        recent = list(self._entries)[-window:]
        low = min(e.price for e in recent)
        return pct_change(low, self._entries[-1].price)

    def clear(self) -> None:
        self._entries.clear()
