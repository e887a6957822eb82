"""CoinGecko spot price client.

Uses the free tier API (no API key required).
Rate limits: 10-30 calls/minute, so callers should go through the signal
cache rather than hitting this directly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

import requests

logger = logging.getLogger(__name__)

COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"

# Ticker -> CoinGecko coin id
COIN_IDS: dict[str, str] = {
    "SUI": "sui",
    "ETH": "ethereum",
    "BTC": "bitcoin",
    "USDC": "usd-coin",
}


class CoinGeckoPriceClient:
    """Simple client for CoinGecko simple/price (free tier, no API key)."""

    def __init__(self, timeout: int = 10):
        """Initialize CoinGecko client.

        Args:
            timeout: Request timeout in seconds (default: 10)
        """
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def close(self):
        """Close the HTTP session."""
        if self.session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def fetch_prices(self, assets: Iterable[str]) -> dict[str, float]:
        """Fetch USD prices for a set of tickers.

        Args:
            assets: Tickers such as "SUI" or "ETH"

        Returns:
            Mapping of uppercase ticker to USD price. Tickers CoinGecko did not
            return are omitted.

        Raises:
            RuntimeError: If the request fails or the response is malformed
        """
        wanted = {a.upper(): COIN_IDS[a.upper()] for a in assets if a.upper() in COIN_IDS}
        if not wanted:
            return {}

        url = f"{COINGECKO_API_BASE}/simple/price"
        params = {"ids": ",".join(sorted(set(wanted.values()))), "vs_currencies": "usd"}

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise RuntimeError(f"CoinGecko API request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise RuntimeError(f"Unexpected CoinGecko response format: {type(data)}")

        prices: dict[str, float] = {}
        for ticker, coin_id in wanted.items():
            usd = (data.get(coin_id) or {}).get("usd")
            if isinstance(usd, (int, float)):
                prices[ticker] = float(usd)

        logger.info(f"Prices: {', '.join(f'{k}=${v}' for k, v in sorted(prices.items()))}")
        return prices

    async def get_spot_price(self, asset: str) -> float:
        """Async price lookup; runs the blocking request in a worker thread."""
        prices = await asyncio.to_thread(self.fetch_prices, [asset])
        ticker = asset.upper()
        if ticker not in prices:
            raise RuntimeError(f"CoinGecko returned no price for {ticker}")
        return prices[ticker]
