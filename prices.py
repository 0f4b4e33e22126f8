"""USD price sources."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

import aiohttp

from core.errors import PriceUnavailable

logger = logging.getLogger(__name__)

# Wrapped and share tokens are priced as their underlying
SYMBOL_ALIASES: Dict[str, str] = {
    "FXRP": "XRP",
    "SHXRP": "XRP",
    "WFLR": "FLR",
}

COINGECKO_IDS: Dict[str, str] = {
    "XRP": "ripple",
    "FLR": "flare-networks",
    "USDT": "tether",
    "USDC": "usd-coin",
}


def canonical_symbol(symbol: str) -> str:
    upper = symbol.upper()
    return SYMBOL_ALIASES.get(upper, upper)


class PriceSource(ABC):
    """Price source collaborator."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def get_price(self, symbol: str) -> Decimal:
        """USD price of a symbol.

        Raises:
            PriceUnavailable: If no price can be produced
        """


class StaticPriceSource(PriceSource):
    """Fixed prices, for demo mode and tests."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices = {k.upper(): Decimal(str(v)) for k, v in (prices or {}).items()}

    async def get_price(self, symbol: str) -> Decimal:
        price = self.prices.get(canonical_symbol(symbol))
        if price is None:
            raise PriceUnavailable(f"No price for {symbol}")
        return price


class HttpPriceSource(PriceSource):
    """CoinGecko-style ``simple/price`` endpoint with a TTL cache.

    When a refresh fails, the last cached quote is served (possibly stale).
    """

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        cache_ttl: float = 30.0,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[Decimal, float]] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._session:
            return
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _fetch(self, symbol: str) -> Decimal:
        coin_id = COINGECKO_IDS.get(symbol)
        if not coin_id:
            raise PriceUnavailable(f"Unknown symbol {symbol}")
        if not self._session:
            raise PriceUnavailable("Session not initialized - call start() first")

        url = f"{self.base_url}/simple/price"
        params = {"ids": coin_id, "vs_currencies": "usd"}
        try:
            async with self._session.get(url, params=params) as response:
                if response.status != 200:
                    raise PriceUnavailable(f"Price API returned HTTP {response.status}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise PriceUnavailable(f"Price request failed: {e}")

        try:
            return Decimal(str(data[coin_id]["usd"]))
        except (KeyError, TypeError, ArithmeticError):
            raise PriceUnavailable(f"Malformed price response for {symbol}")

    async def get_price(self, symbol: str) -> Decimal:
        canonical = canonical_symbol(symbol)
        cached = self._cache.get(canonical)
        if cached and self._clock() - cached[1] < self.cache_ttl:
            return cached[0]

        try:
            price = await self._fetch(canonical)
        except PriceUnavailable as e:
            if cached:
                logger.warning(f"Serving stale {canonical} price after refresh failure: {e}")
                return cached[0]
            raise

        self._cache[canonical] = (price, self._clock())
        return price
