"""Process context for the treasury engine.

Everything that used to be process-global (ledger, positions, price history,
risk level, activity feed) lives on one `TreasuryContext`, built once by
`build_context()` and passed to every component.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from treasury.automation.activity import ActivityLog
from treasury.automation.commands import CommandExecutor
from treasury.automation.ledger import DecisionLedger
from treasury.automation.policy import RebalancePolicy
from treasury.automation.scheduler import AutoOptimizerScheduler
from treasury.config import HOME_CHAIN, TreasuryConfig
from treasury.execution.interfaces import BridgeAdapter, ChainAdapter, SafetyVault
from treasury.execution.operations import TreasuryOperations
from treasury.execution.paper import PaperBridgeAdapter, PaperChainAdapter, PaperSafetyVault
from treasury.execution.router import ProtocolRouter
from treasury.market_data.bluefin import BluefinClient
from treasury.market_data.cache import MarketSignalCache
from treasury.market_data.coingecko import CoinGeckoPriceClient
from treasury.market_data.defillama import DefiLlamaClient
from treasury.market_data.interfaces import (
    FundingRateSource,
    MarketSnapshotSource,
    NativeYieldSource,
    PoolYieldSource,
    SpotPriceSource,
)
from treasury.market_data.navi import NaviClient
from treasury.market_data.signals import MarketSignals
from treasury.offline.queue import OfflineIntentQueue
from treasury.opportunities.aggregator import YieldAggregator
from treasury.portfolio.positions import TreasuryBook
from treasury.risk.scorer import RiskScorer
from treasury.storage.kv import KeyValueStore, MemoryKeyValueStore, SqlAlchemyKeyValueStore
from treasury.types import RiskLevel

logger = logging.getLogger(__name__)


@dataclass
class TreasuryContext:
    config: TreasuryConfig
    cache: MarketSignalCache
    signals: MarketSignals
    aggregator: YieldAggregator
    scorer: RiskScorer
    policy: RebalancePolicy
    ledger: DecisionLedger
    activity: ActivityLog
    book: TreasuryBook
    router: ProtocolRouter
    vault: SafetyVault
    operations: TreasuryOperations
    offline_queue: OfflineIntentQueue
    risk_level: RiskLevel = "moderate"

    # Serializes scheduler cycles and mutating manual commands
    execution_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    scheduler: Optional[AutoOptimizerScheduler] = None
    executor: Optional[CommandExecutor] = None

    # Clients owned by this context, closed in `aclose()`
    _resources: list[Any] = field(default_factory=list)

    def treasury_state(self):
        return self.ledger.current(self.book.safety_balance, self.book.positions.all())

    def treasury_decisions(self):
        return self.ledger.decisions()

    async def aclose(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
            await self.scheduler.wait_idle()
        for resource in self._resources:
            if hasattr(resource, "aclose"):
                await resource.aclose()
            elif hasattr(resource, "close"):
                resource.close()
        self._resources.clear()


def build_context(
    config: Optional[TreasuryConfig] = None,
    *,
    price_source: Optional[SpotPriceSource] = None,
    pool_source: Optional[PoolYieldSource] = None,
    native_source: Optional[NativeYieldSource] = None,
    funding_source: Optional[FundingRateSource] = None,
    market_source: Optional[MarketSnapshotSource] = None,
    home_adapter: Optional[ChainAdapter] = None,
    bridge: Optional[BridgeAdapter] = None,
    vault: Optional[SafetyVault] = None,
    store: Optional[KeyValueStore] = None,
    cache: Optional[MarketSignalCache] = None,
) -> TreasuryContext:
    """Wire up a context. Any collaborator not passed in gets its default:
    public market data clients, paper execution adapters, and a SQLAlchemy
    store when `config.database_url` is set (in-memory otherwise).
    """
    config = config or TreasuryConfig()
    resources: list[Any] = []

    if price_source is None:
        price_source = CoinGeckoPriceClient(timeout=int(config.cache.fetch_timeout_seconds))
        resources.append(price_source)
    if pool_source is None:
        pool_source = DefiLlamaClient()
        resources.append(pool_source)
    if native_source is None:
        native_source = NaviClient()
        resources.append(native_source)
    if funding_source is None and market_source is None:
        bluefin = BluefinClient(network="mainnet" if config.is_mainnet else "testnet")
        resources.append(bluefin)
        funding_source = market_source = bluefin

    cache = cache or MarketSignalCache(config=config.cache)
    signals = MarketSignals(
        cache=cache,
        price_source=price_source,
        pool_source=pool_source,
        native_source=native_source,
        funding_source=funding_source,
        market_source=market_source,
    )

    if not config.dry_run and home_adapter is None:
        logger.warning("Live mode requested without a chain adapter; falling back to paper execution")
    home_adapter = home_adapter or PaperChainAdapter(HOME_CHAIN)
    bridge = bridge or PaperBridgeAdapter()
    vault = vault or PaperSafetyVault(balance=config.initial_safety_usd)

    if store is None:
        store = (
            SqlAlchemyKeyValueStore(database_url=config.database_url)
            if config.database_url
            else MemoryKeyValueStore()
        )

    book = TreasuryBook(safety_balance=config.initial_safety_usd)
    ledger = DecisionLedger(capacity=config.ledger_capacity)
    router = ProtocolRouter(home=home_adapter, bridge=bridge, network=config.network)

    ctx = TreasuryContext(
        config=config,
        cache=cache,
        signals=signals,
        aggregator=YieldAggregator(signals=signals, config=config.aggregator),
        scorer=RiskScorer(config=config.risk),
        policy=RebalancePolicy(config=config.policy),
        ledger=ledger,
        activity=ActivityLog(capacity=config.activity_log_capacity),
        book=book,
        router=router,
        vault=vault,
        operations=TreasuryOperations(
            book=book,
            ledger=ledger,
            router=router,
            vault=vault,
            timeout_seconds=config.execution_timeout_seconds,
        ),
        offline_queue=OfflineIntentQueue(store=store, key=config.offline_queue_key),
        risk_level=config.risk_level,
        _resources=resources,
    )
    ctx.scheduler = AutoOptimizerScheduler(ctx)
    ctx.executor = CommandExecutor(ctx)
    return ctx
