"""
CLOB client wrapper for Polymarket order operations.
Wraps py-clob-client with async support and error handling.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    MarketOrderArgs,
    OrderArgs,
    OrderType,
    TradeParams,
)
from py_clob_client.order_builder.constants import BUY

from ..models import Leg, OrderResult, TradeRecord
from ..utils.logger import get_logger

logger = get_logger("clob")

# Order statuses that mean tokens changed hands
FILLED_STATUSES = ("MATCHED", "MINED", "CONFIRMED")


@dataclass
class OrderStatus:
    """Current status of an order."""
    order_id: str
    status: str  # LIVE, MATCHED, CANCELED
    size_matched: float
    size_remaining: float
    price: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.status.upper() in FILLED_STATUSES or (
            self.size_matched > 0 and self.size_remaining <= 0
        )


class CLOBClient:
    """
    Async wrapper for Polymarket CLOB client.

    Handles market and limit buys, order status and trade history.
    Uses the official py-clob-client under the hood; every blocking call
    runs in the default executor and is bounded by a timeout.
    """

    def __init__(
        self,
        private_key: str,
        funder_address: str = "",
        signature_type: int = 0,
        api_key: str = "",
        api_secret: str = "",
        api_passphrase: str = "",
        host: str = "https://clob.polymarket.com",
        chain_id: int = 137,  # Polygon Mainnet
        timeout: float = 10.0
    ):
        """
        Initialize CLOB client.

        Args:
            private_key: Wallet private key used to sign orders
            funder_address: Proxy or Safe wallet holding funds
            signature_type: 0=EOA, 1=Poly proxy, 2=Gnosis Safe
            api_key: Polymarket API key (derived if empty)
            api_secret: Polymarket API secret
            api_passphrase: Polymarket API passphrase
            host: CLOB endpoint
            chain_id: Blockchain chain ID (137 for Polygon)
            timeout: Bound on each blocking call, in seconds
        """
        self.private_key = private_key
        self.funder_address = funder_address
        self.signature_type = signature_type
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_passphrase = api_passphrase
        self.host = host
        self.chain_id = chain_id
        self.timeout = timeout

        self._client: Optional[ClobClient] = None

    @property
    def creds(self) -> Optional[ApiCreds]:
        if self._client is None:
            return None
        return self._client.creds

    async def initialize(self) -> None:
        """Create the client and derive L2 API credentials."""
        logger.info("Initializing CLOB client")

        # Creating the client and deriving creds does blocking I/O
        loop = asyncio.get_running_loop()
        self._client = await loop.run_in_executor(None, self._create_client)

        logger.info("CLOB client initialized successfully")

    def _create_client(self) -> ClobClient:
        """Create the underlying py-clob-client instance."""
        kwargs = {
            "key": self.private_key,
            "chain_id": self.chain_id,
            "signature_type": self.signature_type,
        }
        if self.funder_address:
            kwargs["funder"] = self.funder_address

        client = ClobClient(self.host, **kwargs)

        if self.api_key and self.api_secret and self.api_passphrase:
            creds = ApiCreds(
                api_key=self.api_key,
                api_secret=self.api_secret,
                api_passphrase=self.api_passphrase
            )
        else:
            creds = client.create_or_derive_api_creds()

        client.set_api_creds(creds)
        return client

    def _require_client(self) -> ClobClient:
        if not self._client:
            raise RuntimeError("CLOB client not initialized")
        return self._client

    async def _call(self, fn, timeout: Optional[float] = None):
        """Run a blocking SDK call in the executor with a timeout."""
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, fn),
            timeout=timeout or self.timeout
        )

    async def buy(
        self,
        token_id: str,
        usdc_amount: float,
        price_hint: float = 0.0,
        leg: Optional[Leg] = None
    ) -> OrderResult:
        """
        Place a fill-or-kill market BUY spending a USDC amount.

        Args:
            token_id: Token ID (asset ID) to buy
            usdc_amount: Collateral to spend
            price_hint: Best known price, used when the fill size is not reported
            leg: Leg being bought, echoed on the result

        Returns:
            OrderResult; tokens_received is 0 when the exchange did not report it
        """
        client = self._require_client()

        logger.debug(f"Placing market buy: ${usdc_amount:.2f} of {token_id}")

        try:
            order_args = MarketOrderArgs(
                token_id=token_id,
                amount=usdc_amount,
                side=BUY
            )

            signed_order = await self._call(lambda: client.create_market_order(order_args))
            result = await self._call(
                lambda: client.post_order(signed_order, orderType=OrderType.FOK)
            )

            if not result or not result.get("success", True) or result.get("errorMsg"):
                error = (result or {}).get("errorMsg") or "order rejected"
                raise RuntimeError(error)

            order_id = result.get("orderID", "")
            usdc_spent = _as_float(result.get("makingAmount")) or usdc_amount
            tokens = _as_float(result.get("takingAmount"))

            logger.info(
                "Market buy filled",
                extra={
                    "order_id": order_id,
                    "token_id": token_id,
                    "usdc": usdc_spent,
                    "tokens": tokens,
                    "price_hint": price_hint
                }
            )

            return OrderResult(
                success=True,
                token_id=token_id,
                leg=leg,
                usdc_spent=usdc_spent,
                tokens_received=tokens,
                order_id=order_id,
                status=str(result.get("status", "MATCHED")).upper(),
                timestamp=time.time()
            )

        except Exception as e:
            logger.error(f"Failed to place market buy for {token_id}: {e}")
            return OrderResult(
                success=False,
                token_id=token_id,
                leg=leg,
                status="FAILED",
                error=str(e) or type(e).__name__,
                timestamp=time.time()
            )

    async def buy_limit(
        self,
        token_id: str,
        usdc_amount: float,
        price: float,
        leg: Optional[Leg] = None,
        fill_timeout: float = 10.0,
        poll_interval: float = 1.0
    ) -> OrderResult:
        """
        Post a GTC limit BUY and wait for it to fill.

        The order is polled until filled or until fill_timeout, then
        cancelled. A successful result carries the matched size. When the
        cancel itself fails the result status is "OPEN", carrying the size
        matched so far, so the caller can watch for late fills.
        """
        client = self._require_client()

        if price <= 0:
            return OrderResult(
                success=False,
                token_id=token_id,
                leg=leg,
                status="FAILED",
                error="limit price must be positive",
                timestamp=time.time()
            )

        size = round(usdc_amount / price, 2)

        try:
            order_args = OrderArgs(token_id=token_id, price=price, size=size, side=BUY)
            signed_order = await self._call(lambda: client.create_order(order_args))
            result = await self._call(
                lambda: client.post_order(signed_order, orderType=OrderType.GTC)
            )
            order_id = (result or {}).get("orderID", "")
            if not order_id:
                raise RuntimeError((result or {}).get("errorMsg") or "no order id returned")
        except Exception as e:
            logger.error(f"Failed to post limit buy for {token_id}: {e}")
            return OrderResult(
                success=False,
                token_id=token_id,
                leg=leg,
                status="FAILED",
                error=str(e) or type(e).__name__,
                timestamp=time.time()
            )

        deadline = time.monotonic() + fill_timeout
        status: Optional[OrderStatus] = None

        while time.monotonic() < deadline:
            status = await self.get_order(order_id)
            if status and status.is_filled:
                break
            await asyncio.sleep(poll_interval)

        if not (status and status.is_filled):
            cancelled = await self.cancel_order(order_id)
            status = await self.get_order(order_id) or status

            if not cancelled:
                logger.warning(f"Limit order {order_id} could not be cancelled, may still fill")
                matched = status.size_matched if status else 0.0
                return OrderResult(
                    success=False,
                    token_id=token_id,
                    leg=leg,
                    tokens_received=matched,
                    usdc_spent=matched * ((status.price if status else 0.0) or price),
                    order_id=order_id,
                    status="OPEN",
                    error="fill timeout, cancel failed",
                    timestamp=time.time()
                )

        matched = status.size_matched if status else 0.0
        if matched <= 0:
            return OrderResult(
                success=False,
                token_id=token_id,
                leg=leg,
                order_id=order_id,
                status="CANCELED",
                error="not filled before timeout",
                timestamp=time.time()
            )

        fill_price = status.price or price
        return OrderResult(
            success=True,
            token_id=token_id,
            leg=leg,
            usdc_spent=matched * fill_price,
            tokens_received=matched,
            order_id=order_id,
            status="MATCHED",
            timestamp=time.time()
        )

    async def cancel_order(self, order_id: str) -> bool:
        """
        Cancel an open order.

        Returns:
            True if cancelled successfully
        """
        client = self._require_client()

        try:
            await self._call(lambda: client.cancel(order_id))
            logger.info(f"Order cancelled: {order_id}")
            return True

        except Exception as e:
            logger.error(f"Failed to cancel order {order_id}: {e}")
            return False

    async def get_order(self, order_id: str) -> Optional[OrderStatus]:
        """Get status of an order, or None if not found."""
        client = self._require_client()

        try:
            result = await self._call(lambda: client.get_order(order_id))
            if not result:
                return None

            original = _as_float(result.get("original_size"))
            matched = _as_float(result.get("size_matched"))
            return OrderStatus(
                order_id=order_id,
                status=str(result.get("status", "UNKNOWN")),
                size_matched=matched,
                size_remaining=max(0.0, original - matched),
                price=_as_float(result.get("price")) or None
            )

        except Exception as e:
            logger.error(f"Failed to get order {order_id}: {e}")
            return None

    async def get_trades(self) -> list[TradeRecord]:
        """
        Fetch the account's full trade history.

        Raises on failure so the caller can leave its state unchanged.
        """
        client = self._require_client()
        params = TradeParams(maker_address=self.funder_address) if self.funder_address else None

        raw = await self._call(lambda: client.get_trades(params), timeout=self.timeout * 3)
        if isinstance(raw, dict):
            raw = raw.get("data", [])

        trades = [parse_trade(item) for item in raw or []]
        logger.debug(f"Fetched {len(trades)} trades from history")
        return trades


def parse_trade(data: dict) -> TradeRecord:
    """Convert a /data/trades entry to a TradeRecord."""
    return TradeRecord(
        market_id=data.get("market", ""),
        side=str(data.get("side", "")),
        size=_as_float(data.get("size")),
        price=_as_float(data.get("price")),
        status=str(data.get("status", "")),
        leg=Leg.from_outcome(data.get("outcome", "")),
        token_id=str(data.get("asset_id", ""))
    )


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
