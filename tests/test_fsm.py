"""
Tests for the decision engine.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from updown_bot.config import StrategyConfig
from updown_bot.models import ActionKind, Leg, Prices, Regime
from updown_bot.strategy import fsm
from updown_bot.strategy.fsm import DecisionEngine


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return StrategyConfig()


@pytest.fixture
def engine(config, clock):
    return DecisionEngine(config, clock=clock)


ARB_PRICES = Prices(up=0.50, down=0.45)
MOMENTUM_PRICES = Prices(up=0.88, down=0.10)


class TestResolution:
    """Tests for the resolution branch."""

    def test_resolved_with_pairs_merges(self, engine):
        action = engine.decide("m1", Prices(up=0.995, down=0.01), 5.0, 30.0)

        assert action.kind == ActionKind.MERGE
        assert action.regime == Regime.RESOLVED

    def test_resolved_without_pairs_skips(self, engine):
        action = engine.decide("m1", Prices(up=0.995, down=0.01), 0.0, 30.0)

        assert action.kind == ActionKind.SKIP
        assert "nothing to merge" in action.reason

    def test_pairs_at_threshold_skip(self, engine):
        """Merging needs strictly more than the minimum pairs."""
        action = engine.decide("m1", Prices(up=0.995, down=0.01), 0.01, 30.0)

        assert action.kind == ActionKind.SKIP

    def test_closing_market_merges_in_any_regime(self, engine):
        """Less than a minute to close overrides an arbitrage signal."""
        action = engine.decide("m1", ARB_PRICES, 3.0, 0.5)

        assert action.kind == ActionKind.MERGE
        assert action.regime == Regime.ARBITRAGE

    def test_closing_market_does_not_buy(self, engine):
        action = engine.decide("m1", MOMENTUM_PRICES, 0.0, 0.5)

        assert action.kind == ActionKind.SKIP
        assert engine.get_spend("m1") == (0.0, 0.0)


class TestMomentum:
    """Tests for the momentum branch."""

    def test_buys_winner_with_hedge(self, engine, config):
        action = engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)

        assert action.kind == ActionKind.BUY_MOMENTUM
        assert action.main_leg == Leg.UP
        assert action.hedge_leg == Leg.DOWN
        assert action.main_usdc == config.momentum_main_usdc
        assert action.hedge_usdc == config.momentum_hedge_usdc
        assert engine.get_spend("m1") == (0.0, config.momentum_main_usdc + config.momentum_hedge_usdc)

    def test_buys_down_winner(self, engine):
        action = engine.decide("m1", Prices(up=0.10, down=0.88), 0.0, 30.0)

        assert action.main_leg == Leg.DOWN
        assert action.hedge_leg == Leg.UP

    def test_above_max_entry_skips(self, engine):
        action = engine.decide("m1", Prices(up=0.95, down=0.04), 0.0, 30.0)

        assert action.kind == ActionKind.SKIP
        assert engine.get_spend("m1") == (0.0, 0.0)

    def test_cooldown_waits(self, engine, clock):
        """A second momentum decision inside the cooldown waits."""
        first = engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)
        clock.advance(60)
        second = engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)

        assert first.kind == ActionKind.BUY_MOMENTUM
        assert second.kind == ActionKind.WAIT
        assert "cooldown" in second.reason

    def test_buys_again_after_cooldown(self, engine, clock, config):
        engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)
        clock.advance(config.momentum_cooldown_seconds)

        action = engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)

        assert action.kind == ActionKind.BUY_MOMENTUM

    def test_main_size_limited_to_remaining_cap(self, engine, clock, config):
        """Third buy only gets what is left under the cap."""
        for _ in range(2):
            engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)
            clock.advance(config.momentum_cooldown_seconds)

        # 2 x (10 + 1) = 22 spent, 8 left
        action = engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)

        assert action.kind == ActionKind.BUY_MOMENTUM
        assert action.main_usdc == pytest.approx(8.0)

    def test_cap_reached_skips(self, engine, clock, config):
        for _ in range(3):
            engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)
            clock.advance(config.momentum_cooldown_seconds)

        action = engine.decide("m1", MOMENTUM_PRICES, 0.0, 30.0)

        assert action.kind == ActionKind.SKIP
        assert "cap reached" in action.reason


class TestArbitrage:
    """Tests for the arbitrage branch."""

    def test_buys_both_legs(self, engine, config):
        action = engine.decide("m1", ARB_PRICES, 0.0, 60.0)

        assert action.kind == ActionKind.BUY_BOTH
        assert action.up_usdc == config.arb_order_usdc
        assert action.down_usdc == config.arb_order_usdc
        assert engine.get_spend("m1") == (2 * config.arb_order_usdc, 0.0)

    def test_cooldown_skips(self, engine, clock):
        engine.decide("m1", ARB_PRICES, 0.0, 60.0)
        clock.advance(1)

        action = engine.decide("m1", ARB_PRICES, 0.0, 60.0)

        assert action.kind == ActionKind.SKIP

    def test_cap_reached_skips(self, engine, clock, config):
        buys = 0
        for _ in range(5):
            if engine.decide("m1", ARB_PRICES, 0.0, 60.0).kind == ActionKind.BUY_BOTH:
                buys += 1
            clock.advance(config.arb_cooldown_seconds)

        # 20 cap / 10 per decision
        assert buys == 2
        assert engine.decide("m1", ARB_PRICES, 0.0, 60.0).kind == ActionKind.SKIP

    def test_markets_are_independent(self, engine):
        engine.decide("m1", ARB_PRICES, 0.0, 60.0)

        action = engine.decide("m2", ARB_PRICES, 0.0, 60.0)

        assert action.kind == ActionKind.BUY_BOTH
        assert engine.tracked_markets() == 2

    def test_strategies_are_independent(self, engine):
        """An arbitrage buy does not start the momentum cooldown."""
        engine.decide("m1", ARB_PRICES, 0.0, 60.0)

        action = engine.decide("m1", MOMENTUM_PRICES, 0.0, 60.0)

        assert action.kind == ActionKind.BUY_MOMENTUM


class TestFallbacks:
    """Tests for grey and unknown regimes."""

    def test_grey_waits(self, engine):
        action = engine.decide("m1", Prices(up=0.48, down=0.50), 0.0, 60.0)

        assert action.kind == ActionKind.WAIT
        assert action.regime == Regime.GREY

    def test_unknown_regime_skips(self, engine, monkeypatch):
        monkeypatch.setattr(fsm, "classify_prices", lambda *args: "UNKNOWN")

        action = engine.decide("m1", ARB_PRICES, 0.0, 60.0)

        assert action.kind == ActionKind.SKIP
        assert "unhandled" in action.reason


class TestConcurrentDecisions:
    """Many threads asking about one market at the same instant."""

    @staticmethod
    def decide_all(engine, prices, workers: int = 16):
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(engine.decide, "m1", prices, 0.0, 30.0)
                for _ in range(workers * 4)
            ]
            return [f.result().kind for f in futures]

    def test_one_arb_buy_per_cooldown(self, engine, config, clock):
        kinds = self.decide_all(engine, ARB_PRICES)

        assert kinds.count(ActionKind.BUY_BOTH) == 1
        assert set(kinds) == {ActionKind.BUY_BOTH, ActionKind.SKIP}
        assert engine.get_spend("m1") == (2 * config.arb_order_usdc, 0.0)

        clock.advance(config.arb_cooldown_seconds)
        kinds = self.decide_all(engine, ARB_PRICES)

        assert kinds.count(ActionKind.BUY_BOTH) == 1
        assert engine.get_spend("m1")[0] == 4 * config.arb_order_usdc

    def test_one_momentum_buy_per_cooldown(self, engine, config, clock):
        kinds = self.decide_all(engine, MOMENTUM_PRICES)

        assert kinds.count(ActionKind.BUY_MOMENTUM) == 1
        assert set(kinds) == {ActionKind.BUY_MOMENTUM, ActionKind.WAIT}

        clock.advance(config.momentum_cooldown_seconds)
        kinds = self.decide_all(engine, MOMENTUM_PRICES)

        assert kinds.count(ActionKind.BUY_MOMENTUM) == 1
        per_action = config.momentum_main_usdc + config.momentum_hedge_usdc
        assert engine.get_spend("m1") == (0.0, 2 * per_action)
