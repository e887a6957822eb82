"""TTL-bounded cache in front of external market data sources.

Each key is registered once with a signal class (which selects its TTL) and an
async fetcher. `get()` never raises because of an upstream failure: it serves
the last good value, or the `UNAVAILABLE` sentinel if nothing was ever
fetched. Fetches are bounded by a timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from treasury.config import CacheConfig

logger = logging.getLogger(__name__)


class SignalClass(str, Enum):
    SPOT_PRICE = "spot_price"
    POOL_YIELDS = "pool_yields"
    NATIVE_YIELDS = "native_yields"
    FUNDING_RATE = "funding_rate"
    MARKET_SNAPSHOT = "market_snapshot"


class _Unavailable:
    """Sentinel returned when a signal has never been fetched successfully."""

    _instance: Optional[_Unavailable] = None

    def __new__(cls) -> _Unavailable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNAVAILABLE"


UNAVAILABLE = _Unavailable()

Fetcher = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    key: str
    signal_class: SignalClass
    ttl_seconds: float
    value: Any = UNAVAILABLE
    fetched_at: Optional[float] = None  # monotonic seconds
    last_error: Optional[str] = None
    failures: int = 0

    def age(self, now: float) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        age = self.age(now)
        return age is not None and age < self.ttl_seconds


def ttl_for(config: CacheConfig, signal_class: SignalClass) -> float:
    return {
        SignalClass.SPOT_PRICE: config.spot_price_ttl,
        SignalClass.POOL_YIELDS: config.pool_yields_ttl,
        SignalClass.NATIVE_YIELDS: config.native_yields_ttl,
        SignalClass.FUNDING_RATE: config.funding_rate_ttl,
        SignalClass.MARKET_SNAPSHOT: config.market_snapshot_ttl,
    }[signal_class]


class MarketSignalCache:
    """Per-key TTL cache with stale-on-error fallback.

    Concurrent `get()` calls for the same expired key share one fetch.
    Entries are mutated in place on refresh; a value returned by `get()` is
    only guaranteed fresh at the moment it is returned.
    """

    def __init__(
        self,
        *,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._fetchers: dict[str, Fetcher] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def register(self, key: str, signal_class: SignalClass, fetcher: Fetcher) -> None:
        """Register (or replace) the fetcher behind a key."""
        self._fetchers[key] = fetcher
        existing = self._entries.get(key)
        if existing is None or existing.signal_class != signal_class:
            self._entries[key] = CacheEntry(
                key=key,
                signal_class=signal_class,
                ttl_seconds=ttl_for(self.config, signal_class),
            )

    def is_registered(self, key: str) -> bool:
        return key in self._fetchers

    async def get(self, key: str) -> Any:
        """Return the value for `key`, fetching if missing or expired."""
        if key not in self._entries:
            raise KeyError(f"Signal {key!r} is not registered")

        entry = self._entries[key]
        if entry.is_fresh(self._clock()):
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(entry))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))

        return await asyncio.shield(task)

    async def _refresh(self, entry: CacheEntry) -> Any:
        fetcher = self._fetchers[entry.key]
        try:
            value = await asyncio.wait_for(fetcher(), timeout=self.config.fetch_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return self._fallback(entry, f"timed out after {self.config.fetch_timeout_seconds}s")
        except Exception as exc:
            return self._fallback(entry, f"{exc.__class__.__name__}: {exc}")

        entry.value = value
        entry.fetched_at = self._clock()
        entry.last_error = None
        return value

    def _fallback(self, entry: CacheEntry, reason: str) -> Any:
        entry.failures += 1
        entry.last_error = reason
        if entry.value is UNAVAILABLE:
            logger.warning(f"Signal {entry.key} unavailable and never cached: {reason}")
        else:
            logger.warning(f"Signal {entry.key} fetch failed, serving stale value: {reason}")
        return entry.value

    def peek(self, key: str) -> Any:
        """Return the cached value without fetching."""
        entry = self._entries.get(key)
        return UNAVAILABLE if entry is None else entry.value

    def invalidate(self, key: Optional[str] = None) -> None:
        """Expire one key (or all keys) so the next `get()` refetches."""
        targets = [self._entries[key]] if key is not None else list(self._entries.values())
        for entry in targets:
            entry.fetched_at = None

    def status(self) -> list[dict[str, Any]]:
        """Freshness report for health checks."""
        now = self._clock()
        report = []
        for entry in sorted(self._entries.values(), key=lambda e: e.key):
            age = entry.age(now)
            report.append(
                {
                    "key": entry.key,
                    "signal_class": entry.signal_class.value,
                    "ttl_seconds": entry.ttl_seconds,
                    "age_seconds": None if age is None else round(age, 3),
                    "fresh": entry.is_fresh(now),
                    "available": entry.value is not UNAVAILABLE,
                    "failures": entry.failures,
                    "last_error": entry.last_error,
                }
            )
        return report
