"""
payments/prices.py — USD spot prices from CoinMarketCap, cached in Redis for 30s.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal

import httpx
import redis.asyncio as aioredis
from web3 import Web3

from phone_server.cache import get_cached_price, set_cached_price
from phone_server.errors import PriceFeedError

logger = logging.getLogger(__name__)

CMC_IDS = {
    "ETH": 1027,
    "AVAX": 5805,
    "FTM": 3513,
}

_WEI_QUANTUM = Decimal("1e-18")


class PriceFeed:
    def __init__(
        self,
        http: httpx.AsyncClient,
        redis: aioredis.Redis,
        api_key: str,
        base_url: str = "https://pro-api.coinmarketcap.com",
        ttl_seconds: int = 30,
    ) -> None:
        self.http = http
        self.redis = redis
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    async def usd_price(self, symbol: str) -> float:
        cached = await get_cached_price(self.redis, symbol)
        if cached is not None:
            return cached

        cmc_id = CMC_IDS.get(symbol.upper())
        if cmc_id is None:
            raise PriceFeedError(f"No price source for {symbol}")

        try:
            response = await self.http.get(
                f"{self.base_url}/v2/cryptocurrency/quotes/latest",
                params={"id": cmc_id},
                headers={"X-CMC_PRO_API_KEY": self.api_key, "Accept": "application/json"},
            )
            response.raise_for_status()
            price = response.json()["data"][str(cmc_id)]["quote"]["USD"]["price"]
        except httpx.HTTPError as exc:
            logger.error("CoinMarketCap request failed symbol=%s error=%s", symbol, exc)
            raise PriceFeedError("Could not fetch token price") from exc
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Unexpected CoinMarketCap payload symbol=%s", symbol)
            raise PriceFeedError("Could not fetch token price") from exc

        if not isinstance(price, (int, float)) or price <= 0:
            raise PriceFeedError("Could not fetch token price")

        await set_cached_price(self.redis, symbol, float(price), self.ttl_seconds)
        return float(price)

    async def usd_to_wei(self, usd_amount: float, symbol: str) -> int:
        """Token amount for usd_amount, rounded to 18 decimals and expressed in wei."""
        price = await self.usd_price(symbol)
        tokens = (Decimal(str(usd_amount)) / Decimal(str(price))).quantize(
            _WEI_QUANTUM, rounding=ROUND_HALF_UP
        )
        return Web3.to_wei(tokens, "ether")
