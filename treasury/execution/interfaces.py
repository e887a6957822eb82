from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional, Protocol, Sequence

StepKind = Literal["deposit", "withdraw", "swap", "bridge"]


@dataclass(frozen=True)
class TxStep:
    """One opaque transaction step. `payload` is adapter-specific."""

    kind: StepKind
    chain: str
    asset: str
    amount: float
    venue: Optional[str] = None
    to_chain: Optional[str] = None
    to_asset: Optional[str] = None
    payload: Mapping[str, object] = field(default_factory=dict)

    def describe(self) -> str:
        if self.kind == "swap":
            return f"swap {self.amount:.4f} {self.asset} -> {self.to_asset} on {self.chain}"
        if self.kind == "bridge":
            return f"bridge {self.amount:.4f} {self.asset} {self.chain} -> {self.to_chain}"
        return f"{self.kind} {self.amount:.4f} {self.asset} {'into' if self.kind == 'deposit' else 'from'} {self.venue}"


@dataclass(frozen=True)
class TxResult:
    dry_run: bool
    accepted: bool
    reason: str
    tx_ref: Optional[str] = None
    raw: Optional[Mapping[str, object]] = None


class ChainAdapter(Protocol):
    """Builds and submits transactions on one chain.

    Implementations may use blocking I/O in `submit`; wrap it in a worker
    thread when needed.
    """

    chain: str

    def is_available(self, venue: str) -> bool:
        """Whether `venue` can be executed against on the active network."""

    def build_deposit(self, venue: str, asset: str, amount: float) -> TxStep:
        ...

    def build_withdraw(self, venue: str, asset: str, amount: float) -> TxStep:
        ...

    def build_swap(self, from_asset: str, to_asset: str, amount: float) -> TxStep:
        ...

    async def submit(self, steps: Sequence[TxStep]) -> TxResult:
        ...


class BridgeAdapter(Protocol):
    def build_route(self, from_chain: str, to_chain: str, asset: str, amount: float) -> TxStep:
        ...


class SafetyVault(Protocol):
    """Settlement-asset vault on the safety chain."""

    async def deposit(self, amount: float, reason: str) -> TxResult:
        ...

    async def withdraw(self, amount: float, reason: str) -> TxResult:
        ...

    async def balance(self) -> float:
        ...
