"""
Position ledger: UP/DOWN token balances per market.
Persists to a JSON file so inventory survives restarts.
"""

import asyncio
import json
import os
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional

from .models import Leg, TradeRecord
from .utils.logger import get_logger

logger = get_logger("inventory")

# Full rebuilds from trade history are limited to one per interval
RECONCILE_INTERVAL_SECONDS = 120.0


@dataclass
class InventoryEntry:
    """Token holdings and cumulative USDC flows for one market."""
    condition_id: str
    up_token_id: str = ""
    down_token_id: str = ""
    up_balance: float = 0.0
    down_balance: float = 0.0
    total_invested_usdc: float = 0.0
    total_redeemed_usdc: float = 0.0

    @property
    def redeemable_pairs(self) -> float:
        return min(self.up_balance, self.down_balance)

    def balance(self, leg: Leg) -> float:
        return self.up_balance if leg is Leg.UP else self.down_balance

    def leg_for_token(self, token_id: str) -> Optional[Leg]:
        if token_id and token_id == self.up_token_id:
            return Leg.UP
        if token_id and token_id == self.down_token_id:
            return Leg.DOWN
        return None

    def add(self, leg: Leg, tokens: float, usdc: float) -> None:
        if leg is Leg.UP:
            self.up_balance += tokens
        else:
            self.down_balance += tokens
        self.total_invested_usdc += usdc

    @classmethod
    def from_dict(cls, condition_id: str, data: dict) -> "InventoryEntry":
        return cls(
            condition_id=condition_id,
            up_token_id=str(data.get("up_token_id", "")),
            down_token_id=str(data.get("down_token_id", "")),
            up_balance=max(0.0, float(data.get("up_balance", 0))),
            down_balance=max(0.0, float(data.get("down_balance", 0))),
            total_invested_usdc=float(data.get("total_invested_usdc", 0)),
            total_redeemed_usdc=float(data.get("total_redeemed_usdc", 0)),
        )


@dataclass
class ReconcileResult:
    """Outcome of a trade-history reconciliation."""
    markets_updated: int = 0
    rate_limited: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.rate_limited and self.error is None


class Inventory:
    """
    Ledger of token balances across all markets.

    Balances only grow through record_buy and only shrink through
    record_redemption, which removes the same amount from both legs and never
    drives a balance negative. Every mutation holds one ledger-wide lock
    and is written through to disk. A failed write is logged and the
    in-memory state stays authoritative.
    """

    def __init__(
        self,
        filepath: str,
        reconcile_interval_seconds: float = RECONCILE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize inventory and load any persisted state.

        Args:
            filepath: JSON file holding the ledger
            reconcile_interval_seconds: Minimum time between unforced rebuilds
            clock: Monotonic time source in seconds
        """
        self.filepath = Path(filepath)
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self._clock = clock

        self._entries: dict[str, InventoryEntry] = {}
        self._last_reconcile_at: Optional[float] = None
        self._lock = threading.RLock()

        self._load()

    def _load(self) -> None:
        """Load ledger from disk, starting empty if missing or corrupt."""
        if not self.filepath.exists():
            logger.info(f"No inventory file at {self.filepath}, starting empty")
            return

        try:
            data = json.loads(self.filepath.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read inventory file {self.filepath}, starting empty: {e}")
            return

        if not isinstance(data, dict):
            logger.warning(f"Unexpected inventory format in {self.filepath}, starting empty")
            return

        for condition_id, raw in data.items():
            try:
                self._entries[condition_id] = InventoryEntry.from_dict(condition_id, raw)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed inventory entry {condition_id}: {e}")

        logger.info(
            "Inventory loaded",
            extra={"markets": len(self._entries), "path": str(self.filepath)}
        )

    def _save(self) -> None:
        """Write the full ledger to disk. Caller holds the lock."""
        payload = {
            condition_id: {k: v for k, v in asdict(entry).items() if k != "condition_id"}
            for condition_id, entry in self._entries.items()
        }
        tmp_path = self.filepath.with_name(self.filepath.name + ".tmp")

        try:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2))
            os.replace(tmp_path, self.filepath)
        except OSError as e:
            logger.error(f"Failed to persist inventory to {self.filepath}: {e}")

    def record_buy(
        self,
        condition_id: str,
        up_token_id: str,
        down_token_id: str,
        leg: Leg,
        tokens: float,
        usdc_spent: float
    ) -> None:
        """
        Record a confirmed buy.

        Args:
            condition_id: Market identifier
            up_token_id: UP token ID, stored when the entry is created
            down_token_id: DOWN token ID, stored when the entry is created
            leg: Which leg was bought
            tokens: Tokens received
            usdc_spent: Collateral spent
        """
        if tokens <= 0:
            logger.warning(
                "Ignoring non-positive buy",
                extra={"condition_id": condition_id, "leg": leg.value, "tokens": tokens}
            )
            return

        with self._lock:
            entry = self._entries.get(condition_id)
            if entry is None:
                entry = InventoryEntry(
                    condition_id=condition_id,
                    up_token_id=up_token_id,
                    down_token_id=down_token_id
                )
                self._entries[condition_id] = entry
            else:
                entry.up_token_id = entry.up_token_id or up_token_id
                entry.down_token_id = entry.down_token_id or down_token_id

            entry.add(leg, tokens, max(0.0, usdc_spent))

            logger.debug(
                f"Buy recorded: {leg.value} +{tokens:.4f} for ${usdc_spent:.2f}",
                extra={
                    "condition_id": condition_id,
                    "up_balance": entry.up_balance,
                    "down_balance": entry.down_balance
                }
            )
            self._save()

    def record_redemption(self, condition_id: str, pairs: float) -> float:
        """
        Remove redeemed pairs from both legs.

        The amount is clamped to the pairs actually held. Untracked
        markets are a no-op.

        Returns:
            Pairs actually removed
        """
        with self._lock:
            entry = self._entries.get(condition_id)
            if entry is None:
                logger.debug(f"Redemption for untracked market {condition_id} ignored")
                return 0.0

            amount = min(max(0.0, pairs), entry.redeemable_pairs)
            if amount <= 0:
                return 0.0

            entry.up_balance = max(0.0, entry.up_balance - amount)
            entry.down_balance = max(0.0, entry.down_balance - amount)
            entry.total_redeemed_usdc += amount

            self._save()
            return amount

    def get_entry(self, condition_id: str) -> Optional[InventoryEntry]:
        """Get a copy of the entry for a market, or None if untracked."""
        with self._lock:
            entry = self._entries.get(condition_id)
            if entry is None:
                return None
            return InventoryEntry(**asdict(entry))

    def get_all_entries(self) -> list[InventoryEntry]:
        """Get copies of every entry."""
        with self._lock:
            return [InventoryEntry(**asdict(entry)) for entry in self._entries.values()]

    def get_redeemable_pairs(self, condition_id: str) -> float:
        """Pairs that can be merged right now (0 if untracked)."""
        with self._lock:
            entry = self._entries.get(condition_id)
            return entry.redeemable_pairs if entry else 0.0

    def get_imbalance(self, condition_id: str) -> tuple[Leg, float]:
        """
        Get the leg holding surplus tokens and the surplus amount.

        Ties (including untracked markets) report DOWN with 0.
        """
        with self._lock:
            entry = self._entries.get(condition_id)
            if entry is None:
                return Leg.DOWN, 0.0
            if entry.up_balance > entry.down_balance:
                return Leg.UP, entry.up_balance - entry.down_balance
            return Leg.DOWN, entry.down_balance - entry.up_balance

    def total_invested(self, condition_id: str) -> float:
        """Total USDC deployed in a market."""
        with self._lock:
            entry = self._entries.get(condition_id)
            return entry.total_invested_usdc if entry else 0.0

    async def reconcile_from_trade_history(
        self,
        source,
        force: bool = False,
        timeout: Optional[float] = None
    ) -> ReconcileResult:
        """
        Rebuild balances from the account's trade history.

        Confirmed buys are summed per market from scratch, then each
        market's previously redeemed amount is subtracted from both legs so
        past redemptions survive the rebuild. Markets absent from the history
        keep their current entry.

        Args:
            source: Object with an async get_trades() -> list[TradeRecord]
            force: Ignore the rate limit
            timeout: Optional bound on the history fetch

        Returns:
            ReconcileResult; rate_limited=True when skipped
        """
        with self._lock:
            now = self._clock()
            if (
                not force
                and self._last_reconcile_at is not None
                and now - self._last_reconcile_at < self.reconcile_interval_seconds
            ):
                return ReconcileResult(rate_limited=True)
            self._last_reconcile_at = now

        try:
            trades = await asyncio.wait_for(source.get_trades(), timeout=timeout)
        except Exception as e:
            logger.error(f"Trade history fetch failed, inventory unchanged: {e}")
            return ReconcileResult(error=str(e))

        with self._lock:
            updated = self._rebuild(trades)
            if updated:
                self._save()

        logger.info(
            "Inventory reconciled from trade history",
            extra={"trades": len(trades), "markets_updated": updated, "forced": force}
        )
        return ReconcileResult(markets_updated=updated)

    def _rebuild(self, trades: list[TradeRecord]) -> int:
        """Apply a trade-history rebuild. Caller holds the lock."""
        rebuilt: dict[str, InventoryEntry] = {}

        for trade in trades:
            if not trade.market_id or not trade.is_confirmed_buy:
                continue

            entry = rebuilt.get(trade.market_id)
            if entry is None:
                existing = self._entries.get(trade.market_id)
                entry = InventoryEntry(
                    condition_id=trade.market_id,
                    up_token_id=existing.up_token_id if existing else "",
                    down_token_id=existing.down_token_id if existing else ""
                )
                rebuilt[trade.market_id] = entry

            leg = entry.leg_for_token(trade.token_id) or trade.leg
            if leg is None:
                logger.debug(f"Trade on {trade.market_id} has no resolvable leg, skipped")
                continue

            if trade.token_id:
                if leg is Leg.UP and not entry.up_token_id:
                    entry.up_token_id = trade.token_id
                elif leg is Leg.DOWN and not entry.down_token_id:
                    entry.down_token_id = trade.token_id

            entry.add(leg, trade.size, trade.size * trade.price)

        for condition_id, entry in rebuilt.items():
            existing = self._entries.get(condition_id)
            redeemed = existing.total_redeemed_usdc if existing else 0.0
            entry.total_redeemed_usdc = redeemed
            entry.up_balance = max(0.0, entry.up_balance - redeemed)
            entry.down_balance = max(0.0, entry.down_balance - redeemed)
            self._entries[condition_id] = entry

        return len(rebuilt)
