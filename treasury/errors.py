"""Error taxonomy for the treasury engine.

Signal failures are absorbed by the market data layer and only surface here
when a caller explicitly asks for a strict fetch. Everything above the signal
layer raises one of these before any side effect, or records a failed
decision and returns.
"""

from __future__ import annotations


class TreasuryError(Exception):
    """Base class for all treasury engine errors."""


class SignalUnavailableError(TreasuryError):
    """An external market data source failed and no cached value exists."""


class VenueUnresolvedError(TreasuryError):
    """A free-text venue name did not match any known venue."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown venue: {name!r}")
        self.name = name


class ExecutionFailedError(TreasuryError):
    """A transfer or transaction failed after being attempted."""

    def __init__(self, message: str, *, decision_id: str | None = None) -> None:
        super().__init__(message)
        self.decision_id = decision_id


class InvalidInputError(TreasuryError, ValueError):
    """Rejected input (non-positive amount, malformed risk level, bad args)."""
