"""
Native token -> USD pricing for gas cost display.

The accountant takes any ``native_to_fiat_rate(symbol)`` callable, sync or
async, returning a Decimal or None. Pricing is unavailable by default; when no
price is known the USD figure is omitted rather than shown as zero.

FiatPriceOracle resolves prices in this order:
1. Environment variable override (BNB_PRICE_USD, ETH_PRICE_USD, ...)
2. Cached value within TTL
3. Live API (CoinGecko free tier)
4. Stale cached value
5. None
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, Optional, Union

import httpx

logger = logging.getLogger(__name__)

PriceLookup = Callable[[str], Union[Optional[Decimal], Awaitable[Optional[Decimal]]]]

# CoinGecko IDs for native gas tokens
COINGECKO_IDS: Dict[str, str] = {
    "BNB": "binancecoin",
    "ETH": "ethereum",
    "MATIC": "matic-network",
    "POL": "matic-network",
}

COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

DEFAULT_CACHE_TTL = 300  # 5 minutes


def unavailable_price(symbol: str) -> Optional[Decimal]:
    """Default lookup: no pricing source configured."""
    return None


async def resolve_price(lookup: PriceLookup, symbol: str) -> Optional[Decimal]:
    """Call a sync or async price lookup."""
    result = lookup(symbol)
    if inspect.isawaitable(result):
        result = await result
    if result is None:
        return None
    return Decimal(str(result))


@dataclass
class PriceEntry:
    """Cached price entry."""
    price_usd: Decimal
    fetched_at: float
    source: str  # "live", "env"


class FiatPriceOracle:
    """
    Multi-source native token price oracle.

    Usable directly as a ``native_to_fiat_rate`` lookup (instances are
    awaitable callables). Prices are cached with a configurable TTL.
    """

    def __init__(
        self,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 5.0,
    ):
        self._cache: Dict[str, PriceEntry] = {}
        self._cache_ttl = cache_ttl
        self._lock = asyncio.Lock()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def __call__(self, symbol: str) -> Optional[Decimal]:
        return await self.get_price_usd(symbol)

    async def get_price_usd(self, symbol: str) -> Optional[Decimal]:
        """
        Get current USD price for a native gas token.

        Args:
            symbol: Token symbol (BNB, ETH, POL, ...)

        Returns:
            USD price, or None when no source knows it
        """
        symbol = symbol.upper()

        env_val = os.getenv(f"{symbol}_PRICE_USD")
        if env_val:
            try:
                price = Decimal(env_val)
                self._cache[symbol] = PriceEntry(price_usd=price, fetched_at=time.monotonic(), source="env")
                return price
            except InvalidOperation:
                logger.warning(f"Ignoring non-numeric {symbol}_PRICE_USD={env_val!r}")

        cached = self._cache.get(symbol)
        if cached and (time.monotonic() - cached.fetched_at) < self._cache_ttl:
            return cached.price_usd

        async with self._lock:
            cached = self._cache.get(symbol)
            if cached and (time.monotonic() - cached.fetched_at) < self._cache_ttl:
                return cached.price_usd

            live_price = await self._fetch_live_price(symbol)
            if live_price is not None:
                self._cache[symbol] = PriceEntry(price_usd=live_price, fetched_at=time.monotonic(), source="live")
                return live_price

        if cached:
            logger.warning(f"Using stale cached price for {symbol}: ${cached.price_usd} (source={cached.source})")
            return cached.price_usd

        logger.debug(f"No USD price available for {symbol}")
        return None

    async def _fetch_live_price(self, symbol: str) -> Optional[Decimal]:
        """Fetch live price from CoinGecko free API."""
        coingecko_id = COINGECKO_IDS.get(symbol)
        if not coingecko_id:
            return None

        try:
            response = await self._client.get(
                COINGECKO_PRICE_URL,
                params={"ids": coingecko_id, "vs_currencies": "usd"},
            )
            if response.status_code != 200:
                logger.debug(f"CoinGecko returned {response.status_code} for {symbol}")
                return None
            price = response.json().get(coingecko_id, {}).get("usd")
            if price is not None:
                logger.debug(f"Live price for {symbol}: ${price}")
                return Decimal(str(price))
        except (httpx.HTTPError, ValueError, AttributeError, InvalidOperation) as e:
            logger.debug(f"Failed to fetch live price for {symbol}: {e}")

        return None

    def get_cached_price(self, symbol: str) -> Optional[PriceEntry]:
        """Get cached price info (for diagnostics)."""
        return self._cache.get(symbol.upper())

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "PriceLookup",
    "COINGECKO_IDS",
    "unavailable_price",
    "resolve_price",
    "PriceEntry",
    "FiatPriceOracle",
]
