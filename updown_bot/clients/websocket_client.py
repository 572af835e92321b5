"""
WebSocket clients for Polymarket CLOB real-time data.
The market stream keeps a best-ask price cache; the user stream
delivers fills for the account's own orders.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets
from websockets.protocol import State

from ..models import FillEvent, Leg, Prices
from ..utils.logger import get_logger

logger = get_logger("websocket")


@dataclass
class PriceLevel:
    """Top-of-book snapshot for one token."""
    asset_id: str
    best_ask: Optional[float] = None
    best_bid: Optional[float] = None
    last_trade: Optional[float] = None
    timestamp: float = 0.0

    @property
    def price(self) -> Optional[float]:
        """Price to pay for a buy right now."""
        if self.best_ask is not None:
            return self.best_ask
        return self.last_trade


class StreamClient(ABC):
    """
    Base for Polymarket WebSocket streams.

    Implements the connect/process loop with automatic reconnection and
    exponential backoff. Subclasses send their subscription on connect
    and handle decoded message dicts.
    """

    URL = ""

    def __init__(
        self,
        url: Optional[str] = None,
        max_reconnect_attempts: int = 10,
        initial_reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0
    ):
        self.url = url or self.URL
        self.max_reconnect_attempts = max_reconnect_attempts
        self.initial_reconnect_delay = initial_reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self._ws = None
        self._running = False
        self._reconnect_attempts = 0
        self._last_message_time = 0.0

    @property
    def is_connected(self) -> bool:
        """Check if WebSocket is connected."""
        return self._ws is not None and self._ws.state == State.OPEN

    async def connect(self) -> None:
        """Establish WebSocket connection and (re)send subscriptions."""
        logger.info("Connecting to Polymarket WebSocket", extra={"url": self.url})

        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=5
            )
            self._reconnect_attempts = 0
            logger.info("WebSocket connected successfully", extra={"url": self.url})

            await self._on_connect()

        except Exception as e:
            logger.error(f"Failed to connect to WebSocket: {e}")
            raise

    async def disconnect(self) -> None:
        """Close WebSocket connection."""
        self._running = False
        if self._ws:
            await self._ws.close()
            self._ws = None
        logger.info("WebSocket disconnected", extra={"url": self.url})

    async def run(self) -> None:
        """
        Main loop - connect and process messages.
        Handles reconnection on disconnect.
        """
        self._running = True

        while self._running:
            try:
                if not self.is_connected:
                    await self.connect()

                await self._process_messages()

            except asyncio.CancelledError:
                raise

            except websockets.ConnectionClosed as e:
                if not self._running:
                    break
                logger.warning(f"WebSocket connection closed: {e}")
                await self._handle_reconnect()

            except Exception as e:
                logger.error(f"WebSocket error: {e}")
                await self._handle_reconnect()

    async def _process_messages(self) -> None:
        """Process incoming WebSocket messages."""
        if not self._ws:
            return

        async for message in self._ws:
            self._last_message_time = time.time()

            if message in ("PONG", "PING"):
                continue

            try:
                data = json.loads(message)
                await self._handle_message(data)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON message: {message[:100]}")
            except Exception as e:
                logger.error(f"Error processing message: {e}")

    async def _handle_message(self, data) -> None:
        """Route message, unpacking arrays of messages."""
        if isinstance(data, list):
            for item in data:
                if isinstance(item, dict):
                    await self._handle_single_message(item)
            return

        if isinstance(data, dict):
            await self._handle_single_message(data)

    async def _on_connect(self) -> None:
        pass

    @abstractmethod
    async def _handle_single_message(self, data: dict) -> None:
        """Process one decoded message from the stream."""

    async def _call_handler(self, handler: Callable, *args) -> None:
        """Call handler, supporting both sync and async callbacks."""
        result = handler(*args)
        if asyncio.iscoroutine(result):
            await result

    async def _handle_reconnect(self) -> None:
        """Handle reconnection with exponential backoff."""
        self._ws = None
        self._reconnect_attempts += 1

        if self._reconnect_attempts > self.max_reconnect_attempts:
            logger.error("Max reconnection attempts exceeded", extra={"url": self.url})
            self._running = False
            raise RuntimeError(f"Failed to reconnect to {self.url}")

        delay = min(
            self.initial_reconnect_delay * (2 ** (self._reconnect_attempts - 1)),
            self.max_reconnect_delay
        )

        logger.info(
            f"Reconnecting in {delay:.1f}s (attempt {self._reconnect_attempts})"
        )
        await asyncio.sleep(delay)


class MarketWebSocketClient(StreamClient):
    """
    Market channel stream keeping a per-token price cache.

    Cached prices are only trusted while younger than a caller-supplied
    max age; stale or missing entries make the caller fall back to REST.
    """

    URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"

    def __init__(
        self,
        url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        **kwargs
    ):
        super().__init__(url, **kwargs)
        self._clock = clock
        self._subscribed_assets: set[str] = set()
        self._levels: dict[str, PriceLevel] = {}

    async def subscribe(self, asset_ids: list[str]) -> None:
        """
        Subscribe to price updates for given tokens.

        Tokens are remembered even while disconnected and are sent on the
        next connect.
        """
        new_assets = [a for a in asset_ids if a and a not in self._subscribed_assets]
        if not new_assets:
            return

        was_empty = not self._subscribed_assets
        self._subscribed_assets.update(new_assets)

        if not self.is_connected:
            return

        # First subscription on a connection uses "type", later ones "operation"
        if was_empty:
            message = {"assets_ids": new_assets, "type": "market"}
        else:
            message = {"assets_ids": new_assets, "operation": "subscribe"}

        await self._ws.send(json.dumps(message))
        logger.info(f"Subscribed to {len(new_assets)} new assets (total: {len(self._subscribed_assets)})")

    async def unsubscribe(self, asset_ids: list[str]) -> None:
        """Stop tracking tokens and drop their cached prices."""
        assets_to_remove = [a for a in asset_ids if a in self._subscribed_assets]
        if not assets_to_remove:
            return

        for asset_id in assets_to_remove:
            self._subscribed_assets.discard(asset_id)
            self._levels.pop(asset_id, None)

        if self.is_connected:
            await self._ws.send(json.dumps({
                "assets_ids": assets_to_remove,
                "operation": "unsubscribe"
            }))

    async def _on_connect(self) -> None:
        """Resubscribe to all tokens after (re)connection."""
        if self._subscribed_assets:
            await self._ws.send(json.dumps({
                "assets_ids": list(self._subscribed_assets),
                "type": "market"
            }))
            logger.info(f"Resubscribed to {len(self._subscribed_assets)} assets")

    async def _handle_single_message(self, data: dict) -> None:
        msg_type = data.get("event_type") or data.get("type")

        if msg_type == "book":
            asks = [float(a["price"]) for a in data.get("asks", []) if float(a.get("size", 0)) > 0]
            bids = [float(b["price"]) for b in data.get("bids", []) if float(b.get("size", 0)) > 0]
            level = self._level(data.get("asset_id", ""))
            level.best_ask = min(asks) if asks else None
            level.best_bid = max(bids) if bids else None
            level.timestamp = self._clock()

        elif msg_type == "price_change":
            for change in data.get("price_changes", []):
                level = self._level(change.get("asset_id", ""))
                if change.get("best_ask"):
                    level.best_ask = float(change["best_ask"])
                if change.get("best_bid"):
                    level.best_bid = float(change["best_bid"])
                level.timestamp = self._clock()

        elif msg_type == "best_bid_ask":
            level = self._level(data.get("asset_id", ""))
            if data.get("best_ask"):
                level.best_ask = float(data["best_ask"])
            if data.get("best_bid"):
                level.best_bid = float(data["best_bid"])
            level.timestamp = self._clock()

        elif msg_type == "last_trade_price":
            level = self._level(data.get("asset_id", ""))
            level.last_trade = float(data.get("price", 0))
            level.timestamp = self._clock()

        else:
            logger.debug(f"Unhandled message type: {msg_type}")

    def _level(self, asset_id: str) -> PriceLevel:
        level = self._levels.get(asset_id)
        if level is None:
            level = PriceLevel(asset_id=asset_id)
            self._levels[asset_id] = level
        return level

    def is_fresh(self, token_id: str, max_age: float) -> bool:
        """True when the token has a cached price younger than max_age seconds."""
        level = self._levels.get(token_id)
        if level is None or level.price is None:
            return False
        return self._clock() - level.timestamp <= max_age

    def get_prices(self, up_token_id: str, down_token_id: str, max_age: float) -> Optional[Prices]:
        """Cached prices for both legs, or None unless both are fresh."""
        if not (self.is_fresh(up_token_id, max_age) and self.is_fresh(down_token_id, max_age)):
            return None
        up = self._levels[up_token_id]
        down = self._levels[down_token_id]
        return Prices(up=up.price, down=down.price, timestamp=min(up.timestamp, down.timestamp))


class UserWebSocketClient(StreamClient):
    """
    Authenticated user channel stream.

    Emits a FillEvent for each trade on the account's orders.
    """

    URL = "wss://ws-subscriptions-clob.polymarket.com/ws/user"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        api_passphrase: str,
        on_fill: Optional[Callable[[FillEvent], Any]] = None,
        url: Optional[str] = None,
        **kwargs
    ):
        super().__init__(url, **kwargs)
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_passphrase = api_passphrase
        self.on_fill = on_fill
        self._markets: set[str] = set()

    async def subscribe(self, condition_ids: list[str]) -> None:
        """Track fills for additional markets."""
        new_markets = [m for m in condition_ids if m and m not in self._markets]
        if not new_markets:
            return
        self._markets.update(new_markets)

        if self.is_connected:
            await self._ws.send(json.dumps({"markets": new_markets, "operation": "subscribe"}))

    async def _on_connect(self) -> None:
        await self._ws.send(json.dumps({
            "auth": {
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "passphrase": self.api_passphrase
            },
            "type": "user",
            "markets": list(self._markets)
        }))

    async def _handle_single_message(self, data: dict) -> None:
        msg_type = (data.get("event_type") or data.get("type") or "").lower()
        if msg_type not in ("trade", "fill"):
            logger.debug(f"Ignoring user message: {msg_type}")
            return

        if not self.on_fill:
            return

        for fill in parse_fills(data):
            await self._call_handler(self.on_fill, fill)


def _fill_event(data: dict, order_id: str, size_key: str, trade: dict) -> Optional[FillEvent]:
    try:
        size = float(data.get(size_key) or 0)
        price = float(data.get("price") or 0)
    except (TypeError, ValueError):
        logger.warning(f"Malformed fill message: {trade}")
        return None

    if not order_id or size <= 0:
        return None

    return FillEvent(
        order_id=order_id,
        size=size,
        price=price,
        trade_id=str(trade.get("id", "")),
        status=str(trade.get("status", "")).upper(),
        leg=Leg.from_outcome(data.get("outcome") or trade.get("outcome", "")),
        asset_id=data.get("asset_id") or trade.get("asset_id", ""),
        market_id=trade.get("market", ""),
        tx_hash=trade.get("transaction_hash", "")
    )


def parse_fills(data: dict) -> list[FillEvent]:
    """
    Convert a user-channel trade message to FillEvents.

    A trade carries the taker order and the maker orders it matched.
    Resting orders fill as makers, so each maker_orders entry becomes its
    own event with that entry's matched_amount and price. The taker side
    uses the top-level size. Messages without either fall back to a
    top-level order_id.

    Every event carries the trade id and status; the same trade is sent
    again as it moves through MATCHED, MINED and CONFIRMED.
    """
    fills = []

    for maker in data.get("maker_orders") or []:
        if not isinstance(maker, dict):
            continue
        fill = _fill_event(maker, str(maker.get("order_id", "")), "matched_amount", data)
        if fill:
            fills.append(fill)

    order_id = data.get("taker_order_id") or data.get("order_id") or ""
    fill = _fill_event(data, str(order_id), "size", data)
    if fill:
        fills.append(fill)

    return fills
