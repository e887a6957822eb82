"""NAVI lending pool feed. Fresher than the generic pool list for NAVI rates."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from treasury.market_data.http import FeedError, JsonFeedClient, as_float
from treasury.types import NativeYield

logger = logging.getLogger(__name__)

NAVI_API_BASE = "https://open-api.naviprotocol.io"


class NaviClient(JsonFeedClient):
    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url=NAVI_API_BASE, timeout_seconds=timeout_seconds, transport=transport)

    async def get_native_yields(self) -> list[NativeYield]:
        """Return supply APYs (percent) for every pool in the NAVI config.

        The config is an object keyed by pool; only entries carrying a
        `supply_rate` are lending pools.
        """
        payload = await self._get_json("/api/navi/config", params={"env": "prod"})
        if not isinstance(payload, dict):
            raise FeedError(f"Unexpected NAVI response format: {type(payload)}")

        pools = []
        for key, pool in payload.items():
            if not isinstance(pool, dict) or "supply_rate" not in pool:
                continue
            pools.append(
                NativeYield(
                    venue="NAVI",
                    asset=str(pool.get("symbol") or key).upper(),
                    supply_apy=as_float(pool.get("supply_rate")) * 100,
                    tvl_usd=as_float(pool.get("supply")),
                )
            )

        logger.info(f"NAVI pools: {', '.join(f'{p.asset} {p.supply_apy:.1f}%' for p in pools)}")
        return pools
