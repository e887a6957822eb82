"""Configuration for the treasury engine.

Static tables (venues, bridge fees, risk profiles) live here as module
constants. Tunables are grouped in dataclasses; `TreasuryConfig.from_env()`
builds the process configuration from environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from treasury.errors import InvalidInputError
from treasury.types import RISK_LEVELS, RiskLevel

HOME_CHAIN = "Sui"
HOME_ASSET = "SUI"
SAFETY_CHAIN = "Arc"
SETTLEMENT_ASSET = "USDC"

# Allow-list for the generic pool feed: project slug -> (chain, display name)
YIELD_VENUES: Mapping[str, tuple[str, str]] = {
    "scallop-lend": ("Sui", "Scallop"),
    "navi-lending": ("Sui", "NAVI"),
    "aave-v3": ("Arbitrum", "Aave V3"),
    "compound-v3": ("Optimism", "Compound V3"),
}
YIELD_ASSETS: tuple[str, ...] = ("SUI", "USDC", "USDT", "WETH")
NATIVE_FEED_ASSETS: tuple[str, ...] = ("SUI", "USDC", "USDT")

# Bridge fee estimates in percent, keyed FROM_TO
BRIDGE_FEES: Mapping[str, float] = {
    "SUI_TO_ARBITRUM": 0.3,
    "SUI_TO_OPTIMISM": 0.3,
    "SUI_TO_ARC": 0.1,
    "ARBITRUM_TO_SUI": 0.3,
    "OPTIMISM_TO_SUI": 0.3,
    "ARC_TO_SUI": 0.1,
}
DEFAULT_BRIDGE_FEE_PCT = 0.5

PERP_MARKETS: tuple[str, ...] = ("SUI-PERP", "ETH-PERP", "BTC-PERP")
FUNDING_PAYMENTS_PER_DAY = 3


@dataclass(frozen=True)
class RiskProfile:
    rebalance_threshold_apy: float
    max_allocation_pct: float
    allow_cross_chain: bool


RISK_PROFILES: Mapping[RiskLevel, RiskProfile] = {
    "conservative": RiskProfile(rebalance_threshold_apy=3.0, max_allocation_pct=30, allow_cross_chain=False),
    "moderate": RiskProfile(rebalance_threshold_apy=2.0, max_allocation_pct=50, allow_cross_chain=True),
    "aggressive": RiskProfile(rebalance_threshold_apy=1.0, max_allocation_pct=70, allow_cross_chain=True),
}


def parse_risk_level(value: object) -> RiskLevel:
    """Validate a user-supplied risk level."""
    normalized = str(value or "").strip().lower()
    if normalized not in RISK_LEVELS:
        raise InvalidInputError(
            f"Invalid risk level {value!r}; expected one of: {', '.join(RISK_LEVELS)}"
        )
    return normalized  # type: ignore[return-value]


def get_risk_profile(level: RiskLevel) -> RiskProfile:
    return RISK_PROFILES[parse_risk_level(level)]


@dataclass(frozen=True)
class CacheConfig:
    """Per-signal-class TTLs in seconds."""

    spot_price_ttl: float = 30
    pool_yields_ttl: float = 60
    native_yields_ttl: float = 120
    funding_rate_ttl: float = 60
    market_snapshot_ttl: float = 15

    # Upper bound for any single upstream call
    fetch_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AggregatorConfig:
    min_pool_tvl_usd: float = 100_000
    min_best_tvl_usd: float = 1_000_000
    funding_floor_annualized_pct: float = 5.0


@dataclass(frozen=True)
class RiskConfig:
    max_price_history: int = 20
    high_risk_threshold: int = 65
    medium_risk_threshold: int = 35


@dataclass(frozen=True)
class PolicyConfig:
    # Absolute spot floor that triggers the crash-safety move
    crash_price_floor: float = 0.5
    crash_move_ratio: float = 0.5

    # Best net APY must exceed this to consider a yield rebalance
    yield_rebalance_floor_apy: float = 2.0
    hysteresis_intervals: int = 5

    drift_threshold_pct: float = 5.0
    min_rebalance_usd: float = 1.0


@dataclass(frozen=True)
class SchedulerConfig:
    loop_interval_seconds: float = 60.0

    # Drop from the start of the price window that triggers a safety move (%)
    safety_threshold_pct: float = 8.0
    safety_move_ratio: float = 0.5

    # Recovery from the recent low that allows redeployment (%)
    recovery_threshold_pct: float = 5.0
    recovery_window: int = 10
    redeploy_ratio: float = 0.5
    min_yield_for_deployment: float = 2.0

    min_move_usd: float = 1.0

    # Stop after N cycles (None = run forever)
    max_iterations: Optional[int] = None


@dataclass(frozen=True)
class TreasuryConfig:
    network: str = "testnet"
    risk_level: RiskLevel = "moderate"
    dry_run: bool = True
    wallet_address: Optional[str] = None

    # Offline queue store; None keeps the queue in memory
    database_url: Optional[str] = None
    offline_queue_key: str = "treasury_offline_queue"

    ledger_capacity: int = 50
    activity_log_capacity: int = 100

    # Upper bound for a single vault call or transaction submission
    execution_timeout_seconds: float = 30.0

    # Opening safety vault balance for the optimistic local book (USD)
    initial_safety_usd: float = 0.0

    cache: CacheConfig = field(default_factory=CacheConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @property
    def is_mainnet(self) -> bool:
        return self.network == "mainnet"

    @classmethod
    def from_env(cls) -> TreasuryConfig:
        """Build configuration from environment variables.

        `DATABASE_URL` may contain credentials. Do not log it.
        """
        interval = float(os.getenv("TREASURY_LOOP_INTERVAL", "60"))
        if interval <= 0:
            raise InvalidInputError(f"TREASURY_LOOP_INTERVAL must be positive, got {interval}")

        return cls(
            network=os.getenv("TREASURY_NETWORK", "testnet").strip().lower(),
            risk_level=parse_risk_level(os.getenv("TREASURY_RISK_LEVEL", "moderate")),
            dry_run=os.getenv("TREASURY_DRY_RUN", "true").strip().lower() not in ("0", "false", "no"),
            wallet_address=os.getenv("TREASURY_WALLET_ADDRESS") or None,
            database_url=os.getenv("DATABASE_URL") or "sqlite:///treasury_offline.db",
            scheduler=SchedulerConfig(loop_interval_seconds=interval),
        )
