"""DeFi Llama yields client (public, no key)."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from treasury.market_data.http import FeedError, JsonFeedClient, as_float
from treasury.types import PoolYield

logger = logging.getLogger(__name__)

DEFI_LLAMA_YIELDS_BASE = "https://yields.llama.fi"


class DefiLlamaClient(JsonFeedClient):
    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url=DEFI_LLAMA_YIELDS_BASE, timeout_seconds=timeout_seconds, transport=transport)

    async def get_pool_yields(self) -> list[PoolYield]:
        """Fetch every pool DeFi Llama tracks.

        Filtering to known venues is the aggregator's job; rows missing a pool
        id, project or chain are dropped here.
        """
        payload = await self._get_json("/pools")
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise FeedError(f"Unexpected DeFi Llama response format: {type(payload)}")

        pools = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            if not row.get("pool") or not row.get("project") or not row.get("chain"):
                continue
            pools.append(
                PoolYield(
                    pool=str(row["pool"]),
                    project=str(row["project"]),
                    chain=str(row["chain"]),
                    symbol=str(row.get("symbol", "")).upper(),
                    apy=as_float(row.get("apy")),
                    tvl_usd=as_float(row.get("tvlUsd")),
                )
            )

        logger.info(f"Fetched {len(pools)} pools from DeFi Llama")
        return pools
