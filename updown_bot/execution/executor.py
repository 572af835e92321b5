"""
Execution coordinator.
Turns decision-engine actions into order placements and merges,
and keeps the position ledger in step with what actually filled.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from ..clients.polygon_client import MIN_ONCHAIN_PAIRS
from ..inventory import Inventory
from ..models import Action, ActionKind, FillEvent, Leg, Market, OrderResult, Prices
from ..utils.logger import get_logger, TradeLogger

logger = get_logger("executor")
trade_logger = TradeLogger()

# Price assumed when estimating a fill without any price information
NEUTRAL_PRICE = 0.5

# Orders whose stream trades are remembered before they are registered
MAX_UNTRACKED_ORDERS = 256


@dataclass
class PendingOrder:
    """Resting order whose fills arrive on the user stream."""
    order_id: str
    condition_id: str
    up_token_id: str
    down_token_id: str
    leg: Leg
    expected_tokens: float
    filled_tokens: float = 0.0
    applied_trades: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)

    @property
    def remaining_tokens(self) -> float:
        return max(0.0, self.expected_tokens - self.filled_tokens)

    @property
    def is_complete(self) -> bool:
        return self.expected_tokens > 0 and self.filled_tokens >= self.expected_tokens * 0.99


@dataclass
class ExecutionOutcome:
    """What an action actually did."""
    action: Action
    orders: list[OrderResult] = field(default_factory=list)
    recovered_usdc: float = 0.0

    @property
    def usdc_spent(self) -> float:
        return sum(o.usdc_spent for o in self.orders if o.success)


class ExecutionCoordinator:
    """
    Executes actions against the order and settlement collaborators.

    Responsibilities:
    - Single-leg buys, recorded in the ledger only when they fill
    - Both-leg buys issued concurrently; one leg failing never rolls back
      the other
    - Merges: reconcile, cap to on-chain balance, settle, record
    - Late fills for resting orders from the user stream

    No retries happen here; the polling loop retries on its next tick.
    """

    def __init__(
        self,
        order_client,
        settlement,
        inventory: Inventory,
        trade_source=None,
        simulated: bool = False,
        limit_orders: bool = False,
        limit_fill_timeout: float = 10.0,
        min_merge_pairs: float = 0.01,
        reconcile_timeout: Optional[float] = 30.0
    ):
        """
        Initialize execution coordinator.

        Args:
            order_client: Object with async buy() (and buy_limit() for limit mode)
            settlement: Object with is_ready(), get_onchain_pairs() and merge()
            inventory: Position ledger
            trade_source: Object with async get_trades(); None disables
                reconciliation before merges
            simulated: Mark log events as simulated
            limit_orders: Use GTC limit orders at the hint price instead of FOK
            limit_fill_timeout: Seconds a limit order may rest before cancel
            min_merge_pairs: Ledger pairs below this are not merged
            reconcile_timeout: Bound on the trade-history fetch
        """
        self.order_client = order_client
        self.settlement = settlement
        self.inventory = inventory
        self.trade_source = trade_source
        self.simulated = simulated
        self.limit_orders = limit_orders
        self.limit_fill_timeout = limit_fill_timeout
        self.min_merge_pairs = min_merge_pairs
        self.reconcile_timeout = reconcile_timeout

        self._open_orders: dict[str, PendingOrder] = {}
        # order_id -> trade ids seen on the stream before the order was registered
        self._untracked_trades: OrderedDict[str, set[str]] = OrderedDict()

        # Stats
        self.orders_filled = 0
        self.orders_failed = 0
        self.merges_completed = 0
        self.usdc_spent = 0.0
        self.usdc_recovered = 0.0

    async def execute_action(
        self,
        market: Market,
        action: Action,
        prices: Prices
    ) -> ExecutionOutcome:
        """
        Carry out one decision for a market.

        WAIT and SKIP do nothing.
        """
        outcome = ExecutionOutcome(action=action)

        if action.kind == ActionKind.BUY_BOTH:
            outcome.orders = list(await self.execute_both_sides(
                market.condition_id,
                market.up_token_id,
                market.down_token_id,
                action.up_usdc,
                action.down_usdc,
                prices.up,
                prices.down
            ))

        elif action.kind == ActionKind.BUY_MOMENTUM:
            outcome.orders = await self._execute_momentum(market, action, prices)

        elif action.kind == ActionKind.MERGE:
            outcome.recovered_usdc = await self.execute_merge(market.condition_id)

        return outcome

    async def _execute_momentum(
        self,
        market: Market,
        action: Action,
        prices: Prices
    ) -> list[OrderResult]:
        """Main leg and hedge leg, placed concurrently."""
        if action.hedge_usdc <= 0:
            result = await self.execute_buy(
                market.condition_id,
                market.up_token_id,
                market.down_token_id,
                action.main_leg,
                action.main_usdc,
                prices.price(action.main_leg)
            )
            return [result]

        if action.main_leg is Leg.UP:
            up_usdc, down_usdc = action.main_usdc, action.hedge_usdc
        else:
            up_usdc, down_usdc = action.hedge_usdc, action.main_usdc

        up_result, down_result = await self.execute_both_sides(
            market.condition_id,
            market.up_token_id,
            market.down_token_id,
            up_usdc,
            down_usdc,
            prices.up,
            prices.down
        )
        if action.main_leg is Leg.UP:
            return [up_result, down_result]
        return [down_result, up_result]

    async def execute_buy(
        self,
        condition_id: str,
        up_token_id: str,
        down_token_id: str,
        leg: Leg,
        usdc_amount: float,
        price_hint: float
    ) -> OrderResult:
        """
        Buy one leg and record the fill.

        The ledger receives the filled token amount when the exchange
        reports it, otherwise usdc_amount / price_hint. A failed order
        leaves the ledger untouched.

        Returns:
            OrderResult with tokens_received set to the recorded amount
        """
        token_id = up_token_id if leg is Leg.UP else down_token_id

        try:
            if self.limit_orders:
                result = await self.order_client.buy_limit(
                    token_id,
                    usdc_amount,
                    price_hint,
                    leg=leg,
                    fill_timeout=self.limit_fill_timeout
                )
            else:
                result = await self.order_client.buy(token_id, usdc_amount, price_hint, leg=leg)
        except Exception as e:
            logger.error(f"Order placement raised for {condition_id}: {e}")
            result = OrderResult(
                success=False,
                token_id=token_id,
                leg=leg,
                status="FAILED",
                error=str(e) or type(e).__name__,
                timestamp=time.time()
            )

        if not result.success:
            self.orders_failed += 1
            if result.status == "OPEN" and result.order_id:
                self._register_open_order(
                    result.order_id, condition_id, up_token_id, down_token_id,
                    leg, usdc_amount / price_hint if price_hint > 0 else 0.0,
                    result.tokens_received, result.usdc_spent
                )
            trade_logger.order_failed(condition_id, leg.value, usdc_amount, result.error)
            return result

        tokens = result.tokens_received
        if tokens <= 0:
            price = price_hint if price_hint > 0 else NEUTRAL_PRICE
            tokens = usdc_amount / price
            logger.debug(
                f"Fill size not reported, estimated {tokens:.4f} tokens at {price:.3f}",
                extra={"condition_id": condition_id, "order_id": result.order_id}
            )

        usdc_spent = result.usdc_spent or usdc_amount
        result.tokens_received = tokens
        result.usdc_spent = usdc_spent
        result.leg = leg

        self.inventory.record_buy(
            condition_id, up_token_id, down_token_id, leg, tokens, usdc_spent
        )

        self.orders_filled += 1
        self.usdc_spent += usdc_spent
        trade_logger.order_placed(
            condition_id, leg.value, usdc_spent, tokens, result.order_id, self.simulated
        )
        return result

    async def execute_both_sides(
        self,
        condition_id: str,
        up_token_id: str,
        down_token_id: str,
        up_usdc: float,
        down_usdc: float,
        up_price: float,
        down_price: float
    ) -> tuple[OrderResult, OrderResult]:
        """
        Buy both legs concurrently and wait for both.

        Returns:
            (up_result, down_result)
        """
        results = await asyncio.gather(
            self.execute_buy(condition_id, up_token_id, down_token_id, Leg.UP, up_usdc, up_price),
            self.execute_buy(condition_id, up_token_id, down_token_id, Leg.DOWN, down_usdc, down_price),
            return_exceptions=True
        )

        # Convert exceptions to failed OrderResults
        processed = []
        for leg, result in zip((Leg.UP, Leg.DOWN), results):
            if isinstance(result, Exception):
                logger.error(f"{leg.value} leg raised for {condition_id}: {result}")
                processed.append(OrderResult(
                    success=False,
                    leg=leg,
                    status="FAILED",
                    error=str(result),
                    timestamp=time.time()
                ))
            else:
                processed.append(result)

        up_result, down_result = processed
        if up_result.success != down_result.success:
            filled = Leg.UP if up_result.success else Leg.DOWN
            logger.warning(
                f"Partial pair fill: only {filled.value} leg filled",
                extra={"condition_id": condition_id}
            )

        return up_result, down_result

    async def execute_merge(self, condition_id: str) -> float:
        """
        Merge all redeemable pairs of a market back to USDC.

        Returns:
            USDC recovered (0 when nothing was merged)
        """
        if self.trade_source is not None:
            reconciled = await self.inventory.reconcile_from_trade_history(
                self.trade_source,
                force=True,
                timeout=self.reconcile_timeout
            )
            if reconciled.error:
                logger.warning(
                    f"Reconciliation before merge failed, using local ledger: {reconciled.error}",
                    extra={"condition_id": condition_id}
                )

        pairs = self.inventory.get_redeemable_pairs(condition_id)
        if pairs < self.min_merge_pairs:
            logger.debug(f"Nothing to merge for {condition_id} ({pairs:.4f} pairs)")
            return 0.0

        if not self.settlement.is_ready():
            trade_logger.merge_failed(
                condition_id,
                f"settlement unavailable, redeem {pairs:.4f} pairs manually"
            )
            return 0.0

        entry = self.inventory.get_entry(condition_id)
        onchain = await self.settlement.get_onchain_pairs(
            condition_id,
            entry.up_token_id if entry else "",
            entry.down_token_id if entry else ""
        )
        if onchain < pairs:
            logger.info(
                f"On-chain pairs ({onchain:.4f}) below ledger ({pairs:.4f}), using on-chain",
                extra={"condition_id": condition_id}
            )
            pairs = onchain

        if pairs < MIN_ONCHAIN_PAIRS:
            trade_logger.merge_failed(condition_id, "on-chain balance too low to merge")
            return 0.0

        tx = await self.settlement.merge(condition_id, pairs)
        if not tx.success:
            trade_logger.merge_failed(condition_id, "settlement failed", tx.error)
            return 0.0

        recovered = self.inventory.record_redemption(condition_id, tx.amount or pairs)

        self.merges_completed += 1
        self.usdc_recovered += recovered
        trade_logger.merge_completed(condition_id, recovered, tx.tx_hash)
        return recovered

    def _register_open_order(
        self,
        order_id: str,
        condition_id: str,
        up_token_id: str,
        down_token_id: str,
        leg: Leg,
        expected_tokens: float,
        matched_tokens: float = 0.0,
        matched_usdc: float = 0.0
    ) -> None:
        """
        Watch a resting order for late fills.

        Whatever matched before the cancel attempt is recorded now. Trades
        the stream already delivered for this order are counted in that
        amount, so their ids are marked as applied.
        """
        pending = PendingOrder(
            order_id=order_id,
            condition_id=condition_id,
            up_token_id=up_token_id,
            down_token_id=down_token_id,
            leg=leg,
            expected_tokens=expected_tokens,
            applied_trades=self._untracked_trades.pop(order_id, set())
        )

        if matched_tokens > 0:
            self._apply_fill(pending, order_id, matched_tokens, matched_usdc)

        if pending.is_complete:
            return

        self._open_orders[order_id] = pending
        logger.info(
            f"Watching open order {order_id} for late fills",
            extra={"condition_id": condition_id, "leg": leg.value}
        )

    def _apply_fill(self, pending: PendingOrder, order_id: str, tokens: float, usdc: float) -> None:
        self.inventory.record_buy(
            pending.condition_id,
            pending.up_token_id,
            pending.down_token_id,
            pending.leg,
            tokens,
            usdc
        )
        pending.filled_tokens += tokens
        self.usdc_spent += usdc

        trade_logger.fill_received(
            pending.condition_id, order_id, pending.leg.value, tokens, usdc / tokens
        )

    def _remember_untracked(self, fill: FillEvent) -> None:
        if not fill.trade_id:
            return
        seen = self._untracked_trades.setdefault(fill.order_id, set())
        seen.add(fill.trade_id)
        self._untracked_trades.move_to_end(fill.order_id)
        while len(self._untracked_trades) > MAX_UNTRACKED_ORDERS:
            self._untracked_trades.popitem(last=False)

    def handle_fill(self, fill: FillEvent) -> None:
        """
        Apply a fill from the user stream.

        Only fills for registered open orders touch the ledger; fills of
        orders that already returned a fill size were recorded when
        placed. A trade is reported again for each status it moves
        through, so each trade id is applied once per order.
        """
        pending = self._open_orders.get(fill.order_id)
        if pending is None:
            logger.debug(f"Fill for order {fill.order_id} already accounted for")
            self._remember_untracked(fill)
            return

        if fill.status == "FAILED":
            logger.warning(f"Trade {fill.trade_id} for order {fill.order_id} failed")
            return

        if fill.trade_id:
            if fill.trade_id in pending.applied_trades:
                return
            pending.applied_trades.add(fill.trade_id)

        size = fill.size
        if pending.expected_tokens > 0:
            size = min(size, pending.remaining_tokens)
        if size <= 0:
            return

        self._apply_fill(pending, fill.order_id, size, size * fill.price)

        if pending.is_complete:
            self._open_orders.pop(fill.order_id, None)

    def open_orders(self) -> list[PendingOrder]:
        return list(self._open_orders.values())

    def get_stats(self) -> dict:
        """Get execution statistics."""
        return {
            "orders_filled": self.orders_filled,
            "orders_failed": self.orders_failed,
            "merges_completed": self.merges_completed,
            "usdc_spent": round(self.usdc_spent, 4),
            "usdc_recovered": round(self.usdc_recovered, 4),
            "open_orders": len(self._open_orders),
        }
