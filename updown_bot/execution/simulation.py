"""
Simulation stand-ins for order placement and settlement.
Orders fill instantly at the hint price; merges settle whatever the
ledger holds. Nothing leaves the process.
"""

import time
import uuid
from typing import Optional

from ..clients.polygon_client import TransactionResult
from ..inventory import Inventory
from ..models import Leg, OrderResult
from ..utils.logger import get_logger

logger = get_logger("simulation")


class SimulatedOrderClient:
    """Order placement that fills every order in full at the given price."""

    def __init__(self, default_price: float = 0.5):
        self.default_price = default_price
        self.orders: list[OrderResult] = []

    async def buy(
        self,
        token_id: str,
        usdc_amount: float,
        price_hint: float = 0.0,
        leg: Optional[Leg] = None
    ) -> OrderResult:
        price = price_hint if price_hint > 0 else self.default_price
        result = OrderResult(
            success=True,
            token_id=token_id,
            leg=leg,
            usdc_spent=usdc_amount,
            tokens_received=usdc_amount / price,
            order_id=f"sim-{uuid.uuid4().hex[:12]}",
            status="MATCHED",
            timestamp=time.time()
        )
        self.orders.append(result)
        logger.debug(f"[SIM] Buy ${usdc_amount:.2f} of {token_id} @ {price:.3f}")
        return result

    async def buy_limit(
        self,
        token_id: str,
        usdc_amount: float,
        price: float,
        leg: Optional[Leg] = None,
        fill_timeout: float = 0.0
    ) -> OrderResult:
        return await self.buy(token_id, usdc_amount, price, leg)


class SimulatedSettlement:
    """Settlement that is always ready and treats the ledger as on-chain truth."""

    def __init__(self, inventory: Inventory):
        self.inventory = inventory
        self.merged: list[tuple[str, float]] = []

    def is_ready(self) -> bool:
        return True

    async def get_onchain_pairs(
        self,
        condition_id: str,
        up_token_id: str = "",
        down_token_id: str = ""
    ) -> float:
        return self.inventory.get_redeemable_pairs(condition_id)

    async def merge(self, condition_id: str, pairs: float) -> TransactionResult:
        self.merged.append((condition_id, pairs))
        logger.info(f"[SIM] Merge {pairs:.4f} pairs for {condition_id}")
        return TransactionResult(
            success=True,
            tx_hash=f"sim-{uuid.uuid4().hex[:16]}",
            amount=pairs
        )
