"""
Tests for the position ledger.
"""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest
from unittest.mock import AsyncMock

from updown_bot.inventory import Inventory, InventoryEntry
from updown_bot.models import Leg, TradeRecord


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "inventory.json"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def inventory(ledger_path, clock):
    return Inventory(str(ledger_path), clock=clock)


def buy(inventory: Inventory, leg: Leg, tokens: float, usdc: float = 1.0, cid: str = "m1"):
    inventory.record_buy(cid, "up-token", "down-token", leg, tokens, usdc)


def trade(size: float, price: float, token_id: str = "", leg=None, side="BUY", status="MATCHED", market="m1"):
    return TradeRecord(
        market_id=market,
        side=side,
        size=size,
        price=price,
        status=status,
        leg=leg,
        token_id=token_id
    )


class TestRecordBuy:
    """Tests for recording buys."""

    def test_creates_entry_on_first_buy(self, inventory):
        buy(inventory, Leg.UP, 10.0, 5.0)

        entry = inventory.get_entry("m1")
        assert entry.up_balance == 10.0
        assert entry.down_balance == 0.0
        assert entry.total_invested_usdc == 5.0
        assert entry.up_token_id == "up-token"
        assert entry.down_token_id == "down-token"

    def test_accumulates(self, inventory):
        buy(inventory, Leg.UP, 10.0, 5.0)
        buy(inventory, Leg.DOWN, 8.0, 4.0)
        buy(inventory, Leg.UP, 2.0, 1.0)

        entry = inventory.get_entry("m1")
        assert entry.up_balance == 12.0
        assert entry.down_balance == 8.0
        assert inventory.total_invested("m1") == 10.0
        assert inventory.get_redeemable_pairs("m1") == 8.0

    def test_ignores_non_positive_tokens(self, inventory):
        buy(inventory, Leg.UP, 0.0)
        buy(inventory, Leg.UP, -3.0)

        assert inventory.get_entry("m1") is None

    def test_entry_is_a_copy(self, inventory):
        buy(inventory, Leg.UP, 10.0)

        inventory.get_entry("m1").up_balance = 999.0

        assert inventory.get_entry("m1").up_balance == 10.0


class TestRecordRedemption:
    """Tests for recording redemptions."""

    def test_clamps_to_held_pairs(self, inventory):
        """Requesting 1000 pairs against 3/2 removes only 2."""
        buy(inventory, Leg.UP, 3.0)
        buy(inventory, Leg.DOWN, 2.0)

        removed = inventory.record_redemption("m1", 1000.0)

        entry = inventory.get_entry("m1")
        assert removed == 2.0
        assert entry.up_balance == 1.0
        assert entry.down_balance == 0.0
        assert entry.total_redeemed_usdc == 2.0
        assert inventory.get_redeemable_pairs("m1") == 0.0

    def test_partial_redemption(self, inventory):
        buy(inventory, Leg.UP, 5.0)
        buy(inventory, Leg.DOWN, 5.0)

        inventory.record_redemption("m1", 2.0)

        entry = inventory.get_entry("m1")
        assert entry.up_balance == 3.0
        assert entry.down_balance == 3.0

    def test_untracked_market_is_noop(self, inventory):
        assert inventory.record_redemption("unknown", 5.0) == 0.0
        assert inventory.get_entry("unknown") is None

    def test_balances_never_negative(self, inventory):
        """Mixed buys and oversized redemptions keep every balance >= 0."""
        steps = [
            (Leg.UP, 4.0), (Leg.DOWN, 1.5), None, (Leg.DOWN, 7.0),
            None, None, (Leg.UP, 0.25), None,
        ]
        for step in steps:
            if step is None:
                inventory.record_redemption("m1", 50.0)
            else:
                buy(inventory, *step)

            entry = inventory.get_entry("m1")
            assert entry.up_balance >= 0
            assert entry.down_balance >= 0
            assert inventory.get_redeemable_pairs("m1") <= min(entry.up_balance, entry.down_balance)


class TestImbalance:
    """Tests for imbalance reporting."""

    def test_up_excess(self, inventory):
        buy(inventory, Leg.UP, 7.0)
        buy(inventory, Leg.DOWN, 4.0)

        assert inventory.get_imbalance("m1") == (Leg.UP, 3.0)

    def test_down_excess(self, inventory):
        buy(inventory, Leg.DOWN, 2.0)

        assert inventory.get_imbalance("m1") == (Leg.DOWN, 2.0)

    def test_tie_reports_down(self, inventory):
        buy(inventory, Leg.UP, 4.0)
        buy(inventory, Leg.DOWN, 4.0)

        assert inventory.get_imbalance("m1") == (Leg.DOWN, 0.0)

    def test_untracked_reports_down(self, inventory):
        assert inventory.get_imbalance("nope") == (Leg.DOWN, 0.0)


class TestPersistence:
    """Tests for loading and saving the ledger file."""

    def test_survives_restart(self, inventory, ledger_path):
        buy(inventory, Leg.UP, 6.0, 3.0)
        buy(inventory, Leg.DOWN, 6.0, 3.0)
        inventory.record_redemption("m1", 2.0)

        reloaded = Inventory(str(ledger_path))

        entry = reloaded.get_entry("m1")
        assert entry.up_balance == 4.0
        assert entry.down_balance == 4.0
        assert entry.total_invested_usdc == 6.0
        assert entry.total_redeemed_usdc == 2.0
        assert entry.up_token_id == "up-token"

    def test_file_layout(self, inventory, ledger_path):
        buy(inventory, Leg.UP, 1.0, 0.5)

        data = json.loads(ledger_path.read_text())

        assert set(data["m1"]) == {
            "up_token_id", "down_token_id", "up_balance", "down_balance",
            "total_invested_usdc", "total_redeemed_usdc",
        }

    def test_missing_file_starts_empty(self, tmp_path):
        inventory = Inventory(str(tmp_path / "nothing-here.json"))

        assert inventory.get_all_entries() == []

    def test_corrupt_file_starts_empty(self, ledger_path):
        ledger_path.write_text("{not json")

        inventory = Inventory(str(ledger_path))

        assert inventory.get_all_entries() == []

    def test_malformed_entry_skipped(self, ledger_path):
        ledger_path.write_text(json.dumps({
            "good": {"up_balance": 2, "down_balance": 1},
            "bad": "not a dict",
        }))

        inventory = Inventory(str(ledger_path))

        assert [e.condition_id for e in inventory.get_all_entries()] == ["good"]

    def test_negative_balances_clamped_on_load(self, ledger_path):
        ledger_path.write_text(json.dumps({"m1": {"up_balance": -5, "down_balance": 3}}))

        inventory = Inventory(str(ledger_path))

        assert inventory.get_entry("m1").up_balance == 0.0

    def test_failed_write_keeps_memory_state(self, tmp_path):
        """A path that cannot be written is logged; the mutation stands."""
        target = tmp_path / "ledger-dir"
        target.mkdir()
        inventory = Inventory(str(target))

        buy(inventory, Leg.UP, 3.0)

        assert inventory.get_entry("m1").up_balance == 3.0


class TestReconcile:
    """Tests for rebuilding the ledger from trade history."""

    @pytest.mark.asyncio
    async def test_rebuilds_from_confirmed_buys(self, inventory):
        source = AsyncMock()
        source.get_trades.return_value = [
            trade(10.0, 0.5, leg=Leg.UP),
            trade(8.0, 0.4, leg=Leg.DOWN),
            trade(5.0, 0.5, leg=Leg.UP, side="SELL"),
            trade(5.0, 0.5, leg=Leg.DOWN, status="FAILED"),
        ]

        result = await inventory.reconcile_from_trade_history(source)

        entry = inventory.get_entry("m1")
        assert result.success
        assert result.markets_updated == 1
        assert entry.up_balance == 10.0
        assert entry.down_balance == 8.0
        assert entry.total_invested_usdc == pytest.approx(8.2)

    @pytest.mark.asyncio
    async def test_token_id_resolves_leg(self, inventory):
        buy(inventory, Leg.UP, 1.0)
        source = AsyncMock()
        source.get_trades.return_value = [
            trade(4.0, 0.5, token_id="down-token"),
            trade(3.0, 0.5, token_id="up-token"),
        ]

        await inventory.reconcile_from_trade_history(source)

        entry = inventory.get_entry("m1")
        assert entry.up_balance == 3.0
        assert entry.down_balance == 4.0

    @pytest.mark.asyncio
    async def test_subtracts_previous_redemptions(self, inventory):
        buy(inventory, Leg.UP, 5.0)
        buy(inventory, Leg.DOWN, 3.0)
        inventory.record_redemption("m1", 3.0)

        source = AsyncMock()
        source.get_trades.return_value = [
            trade(5.0, 0.5, leg=Leg.UP),
            trade(3.0, 0.5, leg=Leg.DOWN),
        ]
        await inventory.reconcile_from_trade_history(source)

        entry = inventory.get_entry("m1")
        assert entry.up_balance == 2.0
        assert entry.down_balance == 0.0
        assert entry.total_redeemed_usdc == 3.0

    @pytest.mark.asyncio
    async def test_rate_limited_second_call(self, inventory, clock):
        """A second unforced call inside the window does nothing."""
        source = AsyncMock()
        source.get_trades.return_value = [trade(10.0, 0.5, leg=Leg.UP)]

        await inventory.reconcile_from_trade_history(source)
        buy(inventory, Leg.DOWN, 2.0)
        clock.now += 30
        second = await inventory.reconcile_from_trade_history(source)

        assert second.rate_limited
        assert not second.success
        assert source.get_trades.await_count == 1
        assert inventory.get_entry("m1").down_balance == 2.0

    @pytest.mark.asyncio
    async def test_force_ignores_rate_limit(self, inventory):
        source = AsyncMock()
        source.get_trades.return_value = []

        await inventory.reconcile_from_trade_history(source)
        result = await inventory.reconcile_from_trade_history(source, force=True)

        assert not result.rate_limited
        assert source.get_trades.await_count == 2

    @pytest.mark.asyncio
    async def test_runs_again_after_interval(self, inventory, clock):
        source = AsyncMock()
        source.get_trades.return_value = []

        await inventory.reconcile_from_trade_history(source)
        clock.now += 120
        result = await inventory.reconcile_from_trade_history(source)

        assert not result.rate_limited

    @pytest.mark.asyncio
    async def test_fetch_error_leaves_ledger_unchanged(self, inventory):
        buy(inventory, Leg.UP, 4.0)
        source = AsyncMock()
        source.get_trades.side_effect = ConnectionError("api down")

        result = await inventory.reconcile_from_trade_history(source)

        assert result.error == "api down"
        assert not result.rate_limited
        assert inventory.get_entry("m1").up_balance == 4.0

    @pytest.mark.asyncio
    async def test_untouched_markets_keep_entries(self, inventory):
        buy(inventory, Leg.UP, 4.0, cid="other")
        source = AsyncMock()
        source.get_trades.return_value = [trade(1.0, 0.5, leg=Leg.UP)]

        await inventory.reconcile_from_trade_history(source)

        assert inventory.get_entry("other").up_balance == 4.0


class TestInventoryEntry:
    """Tests for the entry helpers."""

    def test_leg_for_token(self):
        entry = InventoryEntry("m1", up_token_id="a", down_token_id="b")

        assert entry.leg_for_token("a") == Leg.UP
        assert entry.leg_for_token("b") == Leg.DOWN
        assert entry.leg_for_token("") is None
        assert entry.leg_for_token("c") is None


class TestConcurrentWrites:
    """Buys and redemptions from many threads lose no updates."""

    def test_no_lost_updates(self, inventory, ledger_path):
        buy(inventory, Leg.UP, 300.0, usdc=150.0)
        buy(inventory, Leg.DOWN, 300.0, usdc=150.0)

        jobs = (
            [lambda: buy(inventory, Leg.UP, 1.0, usdc=0.5)] * 100
            + [lambda: buy(inventory, Leg.DOWN, 1.0, usdc=0.5)] * 100
            + [lambda: inventory.record_redemption("m1", 1.0)] * 100
        )
        with ThreadPoolExecutor(max_workers=16) as pool:
            for future in [pool.submit(job) for job in jobs]:
                future.result()

        entry = inventory.get_entry("m1")
        assert entry.up_balance == pytest.approx(300.0)
        assert entry.down_balance == pytest.approx(300.0)
        assert entry.total_invested_usdc == pytest.approx(400.0)
        assert entry.total_redeemed_usdc == pytest.approx(100.0)

        saved = json.loads(ledger_path.read_text())
        assert saved["m1"]["up_balance"] == pytest.approx(300.0)
