"""
Shared domain models for the Up/Down trading bot.
Markets, prices, regimes, actions and order/fill records.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Leg(Enum):
    """One of the two complementary outcome tokens of a market."""
    UP = "UP"
    DOWN = "DOWN"

    @property
    def other(self) -> "Leg":
        return Leg.DOWN if self is Leg.UP else Leg.UP

    @classmethod
    def from_outcome(cls, outcome: str) -> Optional["Leg"]:
        """Map an API outcome label ("Up", "down", "UP") to a leg."""
        label = (outcome or "").strip().upper()
        if label == "UP":
            return cls.UP
        if label == "DOWN":
            return cls.DOWN
        return None


class Regime(Enum):
    """Market regime as classified from the two leg prices."""
    RESOLVED = "RESOLVED"
    MOMENTUM_UP = "MOMENTUM_UP"
    MOMENTUM_DOWN = "MOMENTUM_DOWN"
    ARBITRAGE = "ARBITRAGE"
    GREY = "GREY"


class ActionKind(Enum):
    """What the bot should do for a market this tick."""
    WAIT = "wait"
    SKIP = "skip"
    BUY_MOMENTUM = "buy_momentum"
    BUY_BOTH = "buy_both"
    MERGE = "merge"


@dataclass
class Market:
    """A single hourly Up/Down market."""
    condition_id: str
    up_token_id: str
    down_token_id: str
    end_date: datetime
    asset: str = ""
    slug: str = ""
    title: str = ""

    def token_id(self, leg: Leg) -> str:
        return self.up_token_id if leg is Leg.UP else self.down_token_id

    def minutes_to_close(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.end_date - now).total_seconds() / 60

    def is_closing_within(self, hours: float, now: Optional[datetime] = None) -> bool:
        mins = self.minutes_to_close(now)
        return 0 < mins < hours * 60

    def __str__(self) -> str:
        return f"Market({self.asset} | {self.title or self.slug} | closes in {self.minutes_to_close():.0f}m)"


@dataclass
class Prices:
    """Current UP/DOWN prices for a market."""
    up: float
    down: float
    timestamp: float = 0.0
    complete: bool = True  # False when a leg is a placeholder price

    @property
    def spread(self) -> float:
        return self.up + self.down

    @property
    def winner(self) -> Leg:
        return Leg.UP if self.up >= self.down else Leg.DOWN

    @property
    def winner_price(self) -> float:
        return max(self.up, self.down)

    @property
    def loser_price(self) -> float:
        return min(self.up, self.down)

    def price(self, leg: Leg) -> float:
        return self.up if leg is Leg.UP else self.down


@dataclass
class Action:
    """Decision returned by the decision engine for one market tick."""
    kind: ActionKind
    reason: str = ""
    regime: Optional[Regime] = None
    main_leg: Optional[Leg] = None
    hedge_leg: Optional[Leg] = None
    main_usdc: float = 0.0
    hedge_usdc: float = 0.0
    up_usdc: float = 0.0
    down_usdc: float = 0.0

    @classmethod
    def wait(cls, reason: str, regime: Optional[Regime] = None) -> "Action":
        return cls(kind=ActionKind.WAIT, reason=reason, regime=regime)

    @classmethod
    def skip(cls, reason: str, regime: Optional[Regime] = None) -> "Action":
        return cls(kind=ActionKind.SKIP, reason=reason, regime=regime)

    @classmethod
    def merge(cls, reason: str, regime: Optional[Regime] = None) -> "Action":
        return cls(kind=ActionKind.MERGE, reason=reason, regime=regime)

    @classmethod
    def buy_momentum(
        cls,
        main_leg: Leg,
        main_usdc: float,
        hedge_usdc: float,
        reason: str,
        regime: Optional[Regime] = None
    ) -> "Action":
        return cls(
            kind=ActionKind.BUY_MOMENTUM,
            reason=reason,
            regime=regime,
            main_leg=main_leg,
            hedge_leg=main_leg.other,
            main_usdc=main_usdc,
            hedge_usdc=hedge_usdc
        )

    @classmethod
    def buy_both(
        cls,
        up_usdc: float,
        down_usdc: float,
        reason: str,
        regime: Optional[Regime] = None
    ) -> "Action":
        return cls(
            kind=ActionKind.BUY_BOTH,
            reason=reason,
            regime=regime,
            up_usdc=up_usdc,
            down_usdc=down_usdc
        )


@dataclass
class OrderResult:
    """Outcome of a single order placement."""
    success: bool
    token_id: str = ""
    leg: Optional[Leg] = None
    usdc_spent: float = 0.0
    tokens_received: float = 0.0
    order_id: str = ""
    status: str = ""
    error: Optional[str] = None
    timestamp: float = 0.0


@dataclass
class FillEvent:
    """Fill notification from the authenticated user stream."""
    order_id: str
    size: float
    price: float
    trade_id: str = ""
    status: str = ""
    leg: Optional[Leg] = None
    asset_id: str = ""
    market_id: str = ""
    tx_hash: str = ""


@dataclass
class TradeRecord:
    """One entry of the account's trade history."""
    market_id: str
    side: str
    size: float
    price: float
    status: str
    leg: Optional[Leg] = None
    token_id: str = ""

    @property
    def is_confirmed_buy(self) -> bool:
        return (
            self.side.upper() == "BUY"
            and self.status.upper() in ("MATCHED", "MINED", "CONFIRMED")
        )
