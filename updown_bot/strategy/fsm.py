"""
Decision engine for ARB / momentum trading.
Turns the current regime, ledger view and time-to-close into one action per tick.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import StrategyConfig
from ..models import Action, Leg, Prices, Regime
from ..utils.logger import get_logger
from .classifier import classify_prices

logger = get_logger("fsm")


@dataclass
class StrategyState:
    """Cooldown and spend tracking for one strategy on one market."""
    last_action_at: Optional[float] = None
    spent_usdc: float = 0.0

    def seconds_since_action(self, now: float) -> Optional[float]:
        if self.last_action_at is None:
            return None
        return now - self.last_action_at

    def record(self, now: float, usdc: float) -> None:
        self.last_action_at = now
        self.spent_usdc += usdc


@dataclass
class MarketState:
    """Per-market state for both strategies."""
    arb: StrategyState = field(default_factory=StrategyState)
    momentum: StrategyState = field(default_factory=StrategyState)


class DecisionEngine:
    """
    Per-market decision table.

    The regime is recomputed from prices on every tick; the only state
    carried between ticks is each strategy's last-action time and the
    USDC it has committed per market. Spend counters are an in-memory
    governor on strategy appetite and are separate from ledger balances.
    They reset on restart.

    One engine per process. All state lives in this instance and is
    guarded by a single lock, so decisions for different markets may be
    requested from concurrent tasks or threads.
    """

    def __init__(
        self,
        config: StrategyConfig,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the decision engine.

        Args:
            config: Strategy thresholds, sizes, caps and cooldowns
            clock: Monotonic time source in seconds
        """
        self.config = config
        self._clock = clock
        self._states: dict[str, MarketState] = {}
        self._lock = threading.Lock()

    def classify(self, prices: Prices) -> Regime:
        """Classify prices with this engine's thresholds."""
        return classify_prices(
            prices.up,
            prices.down,
            self.config.arb_threshold,
            self.config.momentum_trigger
        )

    def decide(
        self,
        condition_id: str,
        prices: Prices,
        redeemable_pairs: float,
        minutes_to_close: float
    ) -> Action:
        """
        Decide the action for a market this tick.

        Args:
            condition_id: Market identifier
            prices: Current UP/DOWN prices
            redeemable_pairs: Mergeable pairs according to the ledger
            minutes_to_close: Minutes until the market closes

        Returns:
            Exactly one action
        """
        regime = self.classify(prices)

        with self._lock:
            state = self._states.setdefault(condition_id, MarketState())
            now = self._clock()

            if regime == Regime.RESOLVED or minutes_to_close < self.config.resolution_minutes:
                return self._decide_resolution(regime, redeemable_pairs, minutes_to_close)

            if regime in (Regime.MOMENTUM_UP, Regime.MOMENTUM_DOWN):
                return self._decide_momentum(regime, prices, state.momentum, now)

            if regime == Regime.GREY:
                return Action.wait(
                    f"grey zone: spread={prices.spread:.3f}",
                    regime
                )

            if regime == Regime.ARBITRAGE:
                return self._decide_arb(regime, prices, state.arb, now)

        logger.warning(
            "Unhandled regime, skipping",
            extra={"condition_id": condition_id, "regime": str(regime)}
        )
        return Action.skip(f"unhandled regime {regime}", regime)

    def _decide_resolution(
        self,
        regime: Regime,
        redeemable_pairs: float,
        minutes_to_close: float
    ) -> Action:
        if regime == Regime.RESOLVED:
            reason = "market resolved"
        else:
            reason = f"closing in {minutes_to_close:.1f}m"

        if redeemable_pairs > self.config.min_merge_pairs:
            return Action.merge(f"{reason}: {redeemable_pairs:.4f} pairs", regime)
        return Action.skip(f"{reason}: nothing to merge", regime)

    def _decide_momentum(
        self,
        regime: Regime,
        prices: Prices,
        state: StrategyState,
        now: float
    ) -> Action:
        cfg = self.config
        main_leg = Leg.UP if regime == Regime.MOMENTUM_UP else Leg.DOWN
        winner_price = prices.price(main_leg)

        if winner_price > cfg.momentum_max_entry:
            return Action.skip(
                f"{main_leg.value} at {winner_price:.3f} above max entry {cfg.momentum_max_entry:.2f}",
                regime
            )

        if state.spent_usdc >= cfg.momentum_max_usdc:
            return Action.skip(
                f"momentum cap reached: ${state.spent_usdc:.2f}/${cfg.momentum_max_usdc:.2f}",
                regime
            )

        elapsed = state.seconds_since_action(now)
        if elapsed is not None and elapsed < cfg.momentum_cooldown_seconds:
            remaining = cfg.momentum_cooldown_seconds - elapsed
            return Action.wait(f"momentum cooldown: {remaining:.0f}s left", regime)

        main_usdc = min(cfg.momentum_main_usdc, cfg.momentum_max_usdc - state.spent_usdc)
        hedge_usdc = cfg.momentum_hedge_usdc
        state.record(now, main_usdc + hedge_usdc)

        return Action.buy_momentum(
            main_leg=main_leg,
            main_usdc=main_usdc,
            hedge_usdc=hedge_usdc,
            reason=(
                f"{main_leg.value} at {winner_price:.3f} > {cfg.momentum_trigger:.2f}, "
                f"hedge {main_leg.other.value}"
            ),
            regime=regime
        )

    def _decide_arb(
        self,
        regime: Regime,
        prices: Prices,
        state: StrategyState,
        now: float
    ) -> Action:
        cfg = self.config

        if state.spent_usdc >= cfg.arb_max_usdc:
            return Action.skip(
                f"arb cap reached: ${state.spent_usdc:.2f}/${cfg.arb_max_usdc:.2f}",
                regime
            )

        elapsed = state.seconds_since_action(now)
        if elapsed is not None and elapsed < cfg.arb_cooldown_seconds:
            return Action.skip(
                f"arb cooldown: {cfg.arb_cooldown_seconds - elapsed:.1f}s left",
                regime
            )

        size = cfg.arb_order_usdc
        state.record(now, 2 * size)

        return Action.buy_both(
            up_usdc=size,
            down_usdc=size,
            reason=f"spread {prices.spread:.3f} < {cfg.arb_threshold:.2f}",
            regime=regime
        )

    def get_spend(self, condition_id: str) -> tuple[float, float]:
        """Get (arb, momentum) USDC committed for a market."""
        with self._lock:
            state = self._states.get(condition_id)
            if state is None:
                return 0.0, 0.0
            return state.arb.spent_usdc, state.momentum.spent_usdc

    def tracked_markets(self) -> int:
        with self._lock:
            return len(self._states)
