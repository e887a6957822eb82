"""Market data feeds and the signal cache in front of them."""

from treasury.market_data.cache import UNAVAILABLE, MarketSignalCache, SignalClass
from treasury.market_data.signals import MarketSignals

__all__ = [
    "UNAVAILABLE",
    "MarketSignalCache",
    "MarketSignals",
    "SignalClass",
]
