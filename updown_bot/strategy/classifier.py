"""
Price classifier.
Maps raw UP/DOWN prices to a market regime.
"""

from ..models import Regime

# A leg priced at or above this has effectively settled.
RESOLVED_PRICE = 0.99


def classify_prices(
    up_price: float,
    down_price: float,
    arb_threshold: float,
    momentum_trigger: float
) -> Regime:
    """
    Classify the current market condition.

    Rules are evaluated in priority order, first match wins:
    resolved, momentum (strictly above the trigger), arbitrage
    (combined price strictly below the threshold), grey.

    Args:
        up_price: UP leg price in [0, 1]
        down_price: DOWN leg price in [0, 1]
        arb_threshold: Combined price below which both legs are bought
        momentum_trigger: Winner price above which momentum is traded

    Returns:
        The market regime
    """
    winner_price = max(up_price, down_price)

    if winner_price >= RESOLVED_PRICE:
        return Regime.RESOLVED

    if winner_price > momentum_trigger:
        if up_price >= down_price:
            return Regime.MOMENTUM_UP
        return Regime.MOMENTUM_DOWN

    if up_price + down_price < arb_threshold:
        return Regime.ARBITRAGE

    return Regime.GREY
