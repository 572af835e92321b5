# Regime classification and per-market decisions
from .classifier import classify_prices
from .fsm import DecisionEngine

__all__ = ["classify_prices", "DecisionEngine"]
