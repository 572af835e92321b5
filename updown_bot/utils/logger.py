"""
Structured logging for the Up/Down trading bot.
Supports JSON logging for log aggregation.
"""

import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger

ROOT_LOGGER = "updown_bot"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with additional fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['timestamp'] = self.formatTime(record, self.datefmt)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    logger_name: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Whether to emit one JSON object per line
        logger_name: Optional specific logger name

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name or ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger with the given name."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class TradeLogger:
    """Specialized logger for trade-related events."""

    def __init__(self):
        self.logger = get_logger("trades")

    def tick(
        self,
        market_id: str,
        regime: str,
        up_price: float,
        down_price: float,
        action: str,
        reason: str,
        minutes_to_close: float,
        excess_leg: str = "",
        excess_tokens: float = 0.0
    ):
        """Log the per-market tick summary."""
        self.logger.info(
            "Tick",
            extra={
                "event": "tick",
                "market_id": market_id,
                "regime": regime,
                "up": up_price,
                "down": down_price,
                "spread": round(up_price + down_price, 4),
                "action": action,
                "reason": reason,
                "minutes_to_close": round(minutes_to_close, 1),
                "excess_leg": excess_leg,
                "excess_tokens": round(excess_tokens, 4)
            }
        )

    def order_placed(
        self,
        market_id: str,
        leg: str,
        usdc: float,
        tokens: float,
        order_id: str,
        simulated: bool = False
    ):
        """Log when an order is placed and filled."""
        self.logger.info(
            "Order filled",
            extra={
                "event": "order_filled",
                "market_id": market_id,
                "leg": leg,
                "usdc": usdc,
                "tokens": tokens,
                "order_id": order_id,
                "simulated": simulated
            }
        )

    def order_failed(
        self,
        market_id: str,
        leg: str,
        usdc: float,
        error: Optional[str] = None
    ):
        """Log when an order placement fails."""
        self.logger.error(
            "Order failed",
            extra={
                "event": "order_failed",
                "market_id": market_id,
                "leg": leg,
                "usdc": usdc,
                "error": error
            }
        )

    def fill_received(
        self,
        market_id: str,
        order_id: str,
        leg: str,
        size: float,
        price: float
    ):
        """Log a fill applied from the user stream."""
        self.logger.info(
            "Fill received",
            extra={
                "event": "fill_received",
                "market_id": market_id,
                "order_id": order_id,
                "leg": leg,
                "size": size,
                "price": price
            }
        )

    def merge_completed(
        self,
        market_id: str,
        pairs: float,
        tx_hash: str = ""
    ):
        """Log when pairs are merged on-chain."""
        self.logger.info(
            "Merge completed",
            extra={
                "event": "merge_completed",
                "market_id": market_id,
                "pairs": pairs,
                "usdc_recovered": pairs,
                "tx_hash": tx_hash
            }
        )

    def merge_failed(
        self,
        market_id: str,
        reason: str,
        error: Optional[str] = None
    ):
        """Log when a merge does not happen."""
        self.logger.error(
            "Merge failed",
            extra={
                "event": "merge_failed",
                "market_id": market_id,
                "reason": reason,
                "error": error
            }
        )
