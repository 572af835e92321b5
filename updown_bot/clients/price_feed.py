"""
Price source for both legs of a market.
Uses the market WebSocket cache when fresh and falls back to CLOB REST.
"""

import asyncio
import json
import time
from typing import Optional

import aiohttp

from ..models import Market, Prices
from ..utils.logger import get_logger
from .websocket_client import MarketWebSocketClient

logger = get_logger("prices")

# Used for a leg whose price could not be fetched at all
FALLBACK_PRICE = 0.5


class PriceUnavailable(Exception):
    """Neither the best-ask nor the midpoint endpoint returned a price."""


def parse_price(body: str, key: str = "price") -> Optional[float]:
    """
    Parse a CLOB price response.

    Accepts {"price": "0.49"}, {"mid": "0.49"} or a bare number.
    """
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        payload = body

    if isinstance(payload, dict):
        payload = payload.get(key)
    if payload is None or payload == "":
        return None

    try:
        return float(payload)
    except (TypeError, ValueError):
        return None


class PriceFeed:
    """
    Fetches UP/DOWN prices for markets.

    Both legs are fetched concurrently. A leg that cannot be priced is
    reported at 0.5 and the result is marked incomplete. Callers must not
    trade on incomplete prices: 0.40 against a placeholder 0.5 reads as
    an arbitrage.
    """

    BASE_URL = "https://clob.polymarket.com"

    def __init__(
        self,
        stream: Optional[MarketWebSocketClient] = None,
        base_url: Optional[str] = None,
        timeout: float = 6.0,
        max_age: float = 5.0
    ):
        """
        Initialize price feed.

        Args:
            stream: Market stream whose cache is preferred when fresh
            base_url: CLOB REST endpoint
            timeout: Per-request timeout in seconds
            max_age: Oldest stream price accepted, in seconds
        """
        self.stream = stream
        self.base_url = base_url or self.BASE_URL
        self.timeout = timeout
        self.max_age = max_age
        self._session: Optional[aiohttp.ClientSession] = None

        # Stats
        self.stream_hits = 0
        self.rest_fetches = 0
        self.fallbacks = 0

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def get_prices(self, market: Market) -> Prices:
        """Current prices for both legs of a market."""
        if self.stream is not None:
            cached = self.stream.get_prices(
                market.up_token_id, market.down_token_id, self.max_age
            )
            if cached is not None:
                self.stream_hits += 1
                return cached

        self.rest_fetches += 1
        up, down = await asyncio.gather(
            self._price_or_none(market.up_token_id, "UP"),
            self._price_or_none(market.down_token_id, "DOWN")
        )
        return Prices(
            up=FALLBACK_PRICE if up is None else up,
            down=FALLBACK_PRICE if down is None else down,
            timestamp=time.time(),
            complete=up is not None and down is not None
        )

    async def _price_or_none(self, token_id: str, label: str) -> Optional[float]:
        try:
            return await self.fetch_price(token_id)
        except Exception as e:
            self.fallbacks += 1
            logger.warning(
                f"{label} price unavailable, using {FALLBACK_PRICE}: {e}",
                extra={"token_id": token_id}
            )
            return None

    async def fetch_price(self, token_id: str) -> float:
        """
        Best BUY price for a token, falling back to the midpoint.

        Raises:
            PriceUnavailable: if neither endpoint returns a price
        """
        try:
            price = await self._get("/price", {"token_id": token_id, "side": "BUY"}, "price")
            if price is not None:
                return price
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Best ask lookup failed for {token_id}: {e}")

        price = await self._get("/midpoint", {"token_id": token_id}, "mid")
        if price is None:
            raise PriceUnavailable(f"no price for {token_id}")
        return price

    async def _get(self, endpoint: str, params: dict, key: str) -> Optional[float]:
        if not self._session:
            await self.initialize()

        async with self._session.get(f"{self.base_url}{endpoint}", params=params) as response:
            response.raise_for_status()
            return parse_price(await response.text(), key)
