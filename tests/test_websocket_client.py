"""
Tests for the WebSocket stream handlers.
"""

import pytest
from unittest.mock import AsyncMock

from updown_bot.clients.websocket_client import (
    MarketWebSocketClient,
    UserWebSocketClient,
    StreamClient,
    parse_fills,
)
from updown_bot.models import Leg


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market_ws(clock):
    return MarketWebSocketClient(clock=clock)


class TestMarketCache:
    """Tests for the market price cache."""

    @pytest.mark.asyncio
    async def test_book_sets_best_ask(self, market_ws):
        await market_ws._handle_message({
            "event_type": "book",
            "asset_id": "up",
            "asks": [{"price": "0.55", "size": "10"}, {"price": "0.52", "size": "5"}, {"price": "0.50", "size": "0"}],
            "bids": [{"price": "0.48", "size": "3"}],
        })

        assert market_ws._levels["up"].best_ask == 0.52
        assert market_ws._levels["up"].best_bid == 0.48

    @pytest.mark.asyncio
    async def test_price_change_batch(self, market_ws):
        await market_ws._handle_message([{
            "event_type": "price_change",
            "price_changes": [
                {"asset_id": "up", "best_ask": "0.61", "best_bid": "0.59"},
                {"asset_id": "down", "best_ask": "0.40", "best_bid": "0.38"},
            ],
        }])

        prices = market_ws.get_prices("up", "down", max_age=5.0)

        assert (prices.up, prices.down) == (0.61, 0.40)

    @pytest.mark.asyncio
    async def test_last_trade_used_without_ask(self, market_ws):
        await market_ws._handle_message({"event_type": "last_trade_price", "asset_id": "up", "price": "0.7"})

        assert market_ws._levels["up"].price == 0.7
        assert market_ws.is_fresh("up", 5.0)

    @pytest.mark.asyncio
    async def test_stale_prices_ignored(self, market_ws, clock):
        await market_ws._handle_message({"event_type": "best_bid_ask", "asset_id": "up", "best_ask": "0.5"})
        await market_ws._handle_message({"event_type": "best_bid_ask", "asset_id": "down", "best_ask": "0.5"})
        clock.now += 6

        assert not market_ws.is_fresh("up", 5.0)
        assert market_ws.get_prices("up", "down", 5.0) is None

    def test_missing_leg_is_not_fresh(self, market_ws):
        assert market_ws.get_prices("up", "down", 5.0) is None

    @pytest.mark.asyncio
    async def test_subscribe_while_disconnected_is_remembered(self, market_ws):
        await market_ws.subscribe(["up", "down"])
        await market_ws.unsubscribe(["down"])

        assert market_ws._subscribed_assets == {"up"}


class TestFills:
    """Tests for user-channel fills."""

    def test_taker_fill(self):
        fills = parse_fills({
            "event_type": "trade",
            "id": "trade-1",
            "status": "MATCHED",
            "taker_order_id": "0xorder",
            "size": "12.5",
            "price": "0.44",
            "outcome": "Down",
            "asset_id": "down-token",
            "market": "0xmarket",
        })

        assert len(fills) == 1
        fill = fills[0]
        assert fill.order_id == "0xorder"
        assert fill.trade_id == "trade-1"
        assert fill.status == "MATCHED"
        assert fill.size == 12.5
        assert fill.price == 0.44
        assert fill.leg == Leg.DOWN
        assert fill.market_id == "0xmarket"

    def test_maker_fill_uses_maker_entry(self):
        """A resting order fills as a maker; its id and size live in maker_orders."""
        fills = parse_fills({
            "event_type": "trade",
            "id": "trade-2",
            "status": "MINED",
            "taker_order_id": "counterparty",
            "size": "50",
            "price": "0.60",
            "outcome": "Down",
            "market": "0xmarket",
            "maker_orders": [{
                "order_id": "0xresting",
                "matched_amount": "4",
                "price": "0.40",
                "outcome": "Up",
                "asset_id": "up-token",
            }],
        })

        maker = fills[0]
        assert maker.order_id == "0xresting"
        assert maker.size == 4.0
        assert maker.price == 0.40
        assert maker.leg == Leg.UP
        assert maker.asset_id == "up-token"
        assert maker.trade_id == "trade-2"
        assert maker.status == "MINED"
        assert [f.order_id for f in fills] == ["0xresting", "counterparty"]

    def test_plain_order_id_fallback(self):
        fills = parse_fills({"id": "trade-3", "order_id": "o1", "size": "2", "price": "0.5"})

        assert [(f.order_id, f.trade_id) for f in fills] == [("o1", "trade-3")]

    def test_trade_id_is_not_an_order_id(self):
        assert parse_fills({"id": "trade-4", "size": "3", "price": "0.5"}) == []

    def test_zero_size_dropped(self):
        assert parse_fills({"order_id": "o1", "size": "0", "price": "0.5"}) == []

    def test_malformed_dropped(self):
        assert parse_fills({"order_id": "o1", "size": "lots", "price": "0.5"}) == []

    def test_malformed_maker_entry_dropped(self):
        fills = parse_fills({
            "taker_order_id": "o1",
            "size": "2",
            "price": "0.5",
            "maker_orders": [{"order_id": "o2", "matched_amount": "?", "price": "0.5"}, "junk"],
        })

        assert [f.order_id for f in fills] == ["o1"]

    @pytest.mark.asyncio
    async def test_trade_message_calls_handler(self):
        on_fill = AsyncMock()
        client = UserWebSocketClient("key", "secret", "pass", on_fill=on_fill)

        await client._handle_message({"event_type": "trade", "order_id": "o1", "size": "2", "price": "0.5"})
        await client._handle_message({"event_type": "order", "order_id": "o2", "size": "2", "price": "0.5"})

        on_fill.assert_awaited_once()
        assert on_fill.await_args.args[0].order_id == "o1"

    @pytest.mark.asyncio
    async def test_each_matched_order_reaches_handler(self):
        on_fill = AsyncMock()
        client = UserWebSocketClient("key", "secret", "pass", on_fill=on_fill)

        await client._handle_message({
            "event_type": "trade",
            "id": "trade-5",
            "taker_order_id": "t",
            "size": "5",
            "price": "0.5",
            "maker_orders": [
                {"order_id": "m1", "matched_amount": "2", "price": "0.5"},
                {"order_id": "m2", "matched_amount": "3", "price": "0.5"},
            ],
        })

        order_ids = [call.args[0].order_id for call in on_fill.await_args_list]
        assert order_ids == ["m1", "m2", "t"]


class TestStreamBase:
    def test_base_stream_is_abstract(self):
        with pytest.raises(TypeError):
            StreamClient("wss://example.invalid")
