from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional

RiskLevel = Literal["conservative", "moderate", "aggressive"]
RiskBand = Literal["LOW", "MEDIUM", "HIGH"]
FundingDirection = Literal["long", "short"]

DecisionKind = Literal[
    "safety_deposit",
    "yield_withdraw",
    "rebalance",
    "risk_assessment",
    "auto_safety",
    "auto_redeploy",
]
DecisionStatus = Literal["executed", "simulated", "failed", "informational"]
DecisionChain = Literal["home", "safety", "cross-chain"]

IntentStatus = Literal["queued", "processing", "completed", "failed"]

RISK_LEVELS: tuple[RiskLevel, ...] = ("conservative", "moderate", "aggressive")
DECISION_KINDS: tuple[DecisionKind, ...] = (
    "safety_deposit",
    "yield_withdraw",
    "rebalance",
    "risk_assessment",
    "auto_safety",
    "auto_redeploy",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PriceHistoryEntry:
    price: float
    timestamp: datetime


@dataclass(frozen=True)
class PoolYield:
    """One row of the generic cross-protocol pool list."""

    pool: str
    project: str
    chain: str
    symbol: str
    apy: float
    tvl_usd: float


@dataclass(frozen=True)
class NativeYield:
    """Supply rate from a venue's own (fresher) feed."""

    venue: str
    asset: str
    supply_apy: float
    tvl_usd: float


@dataclass(frozen=True)
class FundingRate:
    market: str
    rate: float  # per funding interval, as a fraction
    annualized_pct: float  # signed

    @property
    def collect_direction(self) -> FundingDirection:
        # Positive funding: longs pay shorts.
        return "short" if self.rate > 0 else "long"


@dataclass(frozen=True)
class PerpMarket:
    symbol: str
    mark_price: float
    index_price: float
    funding_rate: float
    open_interest: float
    volume_24h: float


@dataclass(frozen=True)
class YieldOpportunity:
    """Immutable yield snapshot. Newer scans supersede it."""

    id: str
    venue: str
    chain: str
    asset: str
    gross_apy: float
    net_apy: float
    bridge_cost_pct: float
    tvl: float
    is_native: bool
    observed_at: datetime
    pool: Optional[str] = None
    direction: Optional[FundingDirection] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "venue": self.venue,
            "chain": self.chain,
            "asset": self.asset,
            "gross_apy": self.gross_apy,
            "net_apy": self.net_apy,
            "bridge_cost_pct": self.bridge_cost_pct,
            "tvl": self.tvl,
            "is_native": self.is_native,
            "observed_at": self.observed_at.isoformat(),
            "pool": self.pool,
            "direction": self.direction,
        }


@dataclass
class YieldPosition:
    venue: str
    chain: str
    asset: str
    principal: float
    principal_usd: float
    apy: float
    earned_usd: float = 0.0
    opened_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": self.venue,
            "chain": self.chain,
            "asset": self.asset,
            "principal": self.principal,
            "principal_usd": self.principal_usd,
            "apy": self.apy,
            "earned_usd": self.earned_usd,
            "opened_at": self.opened_at.isoformat(),
        }


@dataclass(frozen=True)
class TreasuryDecision:
    """Append-only ledger entry. Corrections are new decisions, never edits."""

    id: str
    timestamp: datetime
    kind: DecisionKind
    trigger: str
    action: str
    reasoning: str
    risk_score: int
    chain: DecisionChain = "safety"
    status: DecisionStatus = "executed"
    amount: Optional[float] = None
    tx_ref: Optional[str] = None
    idempotency_key: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "trigger": self.trigger,
            "action": self.action,
            "reasoning": self.reasoning,
            "risk_score": self.risk_score,
            "chain": self.chain,
            "status": self.status,
            "amount": self.amount,
            "tx_ref": self.tx_ref,
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class TreasuryState:
    """Derived view over the ledger and current balances. Never stored."""

    safety_balance: float
    yield_total: float
    last_decision: Optional[TreasuryDecision]
    last_decision_at: Optional[datetime]
    risk_score: int
    allocation_safety_pct: float
    allocation_yield_pct: float

    @property
    def total_value(self) -> float:
        return self.safety_balance + self.yield_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "safety_balance": self.safety_balance,
            "yield_total": self.yield_total,
            "total_value": self.total_value,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "last_decision_at": self.last_decision_at.isoformat() if self.last_decision_at else None,
            "risk_score": self.risk_score,
            "allocation_safety_pct": self.allocation_safety_pct,
            "allocation_yield_pct": self.allocation_yield_pct,
        }


@dataclass(frozen=True)
class PortfolioState:
    """Balances as seen by the rebalance policy (USD)."""

    safety_usd: float
    yield_usd: float
    current_venue: Optional[str] = None
    current_apy: float = 0.0

    @property
    def total_usd(self) -> float:
        return self.safety_usd + self.yield_usd

    @property
    def safety_pct(self) -> float:
        total = self.total_usd
        return (self.safety_usd / total) * 100 if total > 0 else 0.0

    @property
    def yield_pct(self) -> float:
        total = self.total_usd
        return 100 - self.safety_pct if total > 0 else 0.0


@dataclass
class OfflineIntent:
    id: str
    timestamp: datetime
    function_name: str
    args: Mapping[str, Any]
    status: IntentStatus = "queued"
    idempotency_key: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "function_name": self.function_name,
            "args": dict(self.args),
            "status": self.status,
            "idempotency_key": self.idempotency_key,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OfflineIntent:
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            ts = timestamp[:-1] + "+00:00" if timestamp.endswith("Z") else timestamp
            parsed = datetime.fromisoformat(ts)
        else:
            parsed = utc_now()
        return cls(
            id=str(data["id"]),
            timestamp=parsed,
            function_name=str(data["function_name"]),
            args=dict(data.get("args") or {}),
            status=data.get("status", "queued"),
            idempotency_key=data.get("idempotency_key"),
            result=data.get("result"),
            error=data.get("error"),
        )
