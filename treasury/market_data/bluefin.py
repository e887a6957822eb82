"""Bluefin perpetual DEX market data (public endpoints).

Funding is paid every 8 hours, so annualized funding is
`rate * 3 * 365 * 100`. Positive funding means longs pay shorts.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from treasury.config import FUNDING_PAYMENTS_PER_DAY, PERP_MARKETS
from treasury.market_data.http import FeedError, JsonFeedClient, as_float
from treasury.types import FundingRate, PerpMarket

logger = logging.getLogger(__name__)

BLUEFIN_MAINNET_API = "https://dapi.api.sui-prod.bluefin.io"
BLUEFIN_TESTNET_API = "https://dapi.api.sui-staging.bluefin.io"


def annualize_funding(rate: float) -> float:
    """Per-interval funding fraction to signed annualized percent."""
    return rate * FUNDING_PAYMENTS_PER_DAY * 365 * 100


class BluefinClient(JsonFeedClient):
    def __init__(
        self,
        *,
        network: str = "mainnet",
        markets: tuple[str, ...] = PERP_MARKETS,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        base_url = BLUEFIN_MAINNET_API if network == "mainnet" else BLUEFIN_TESTNET_API
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds, transport=transport)
        self.markets = markets

    async def get_market_snapshot(self) -> list[PerpMarket]:
        payload = await self._get_json("/marketData")
        if not isinstance(payload, list):
            raise FeedError(f"Unexpected Bluefin response format: {type(payload)}")

        markets = []
        for m in payload:
            if not isinstance(m, dict) or m.get("symbol") not in self.markets:
                continue
            markets.append(
                PerpMarket(
                    symbol=str(m["symbol"]),
                    mark_price=as_float(m.get("markPrice")),
                    index_price=as_float(m.get("indexPrice")),
                    funding_rate=as_float(m.get("lastFundingRate")),
                    open_interest=as_float(m.get("openInterest")),
                    volume_24h=as_float(m.get("volume") or m.get("baseVolume")),
                )
            )
        return markets

    async def get_funding_rates(self) -> list[FundingRate]:
        markets = await self.get_market_snapshot()
        rates = [
            FundingRate(
                market=m.symbol,
                rate=m.funding_rate,
                annualized_pct=annualize_funding(m.funding_rate),
            )
            for m in markets
        ]
        logger.info(
            "Funding rates: "
            + ", ".join(f"{r.market} {r.rate * 100:+.4f}% ({r.annualized_pct:.1f}% ann.)" for r in rates)
        )
        return rates


def format_funding_rates_for_voice(rates: list[FundingRate]) -> str:
    if not rates:
        return "No funding rate data available."

    lines = [
        f"{r.market}: {'+' if r.rate >= 0 else ''}{r.rate * 100:.4f}% per 8h "
        f"({r.annualized_pct:.1f}% annualized), "
        f"{'longs pay shorts' if r.rate > 0 else 'shorts pay longs'}"
        for r in rates
    ]
    return "Bluefin Funding Rates:\n" + "\n".join(lines)
