# services/price_service.py

"""USD prices for native chain coins, used to value non-stablecoin transfers.

Prices come from CoinGecko's ``simple/price`` endpoint and are cached for
``PRICE_CACHE_SECONDS`` to respect the public rate limit.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Dict, Optional

import requests

import config
from utils.cache_manager import CacheManager

logger = logging.getLogger(__name__)


class PriceService:
    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None,
                 cache_seconds: Optional[int] = None, price_ids: Optional[Dict[str, str]] = None):
        self.api_url = api_url or config.COINGECKO_API_URL
        self.api_key = api_key if api_key is not None else config.COINGECKO_API_KEY
        self.price_ids = price_ids or dict(config.NATIVE_PRICE_IDS)
        self.cache = CacheManager(ttl=cache_seconds if cache_seconds is not None else config.PRICE_CACHE_SECONDS)

    async def get_native_price_usd(self, chain: str) -> Decimal:
        """Return the USD price of *chain*'s native coin.

        Raises ``requests.RequestException`` on transport failure and
        ``ValueError`` when the response carries no usable price.
        """
        coin_id = self.price_ids.get(chain)
        if not coin_id:
            raise ValueError(f"No price id configured for chain {chain}")

        cached = self.cache.get(coin_id)
        if cached is not None:
            return cached

        price = await asyncio.to_thread(self._fetch_price, coin_id)
        self.cache.set(coin_id, price)
        logger.info(f"Fetched {coin_id} price from CoinGecko: ${price}")
        return price

    def _fetch_price(self, coin_id: str) -> Decimal:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key

        response = requests.get(
            self.api_url,
            params={"ids": coin_id, "vs_currencies": "usd"},
            headers=headers,
            timeout=10,
        )
        response.raise_for_status()
        data = response.json()

        # Expected structure: {"ethereum": {"usd": 3123.45}}
        try:
            price = Decimal(str(data[coin_id]["usd"]))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            logger.error(f"Unexpected CoinGecko response structure for {coin_id}: {data}")
            raise ValueError(f"CoinGecko returned no USD price for {coin_id}") from None
        if price <= 0:
            raise ValueError(f"CoinGecko returned a non-positive price for {coin_id}: {price}")
        return price
