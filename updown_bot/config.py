"""
Configuration module for the Up/Down trading bot.
Loads settings from environment variables with validation.
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


@dataclass
class PolymarketConfig:
    """Polymarket API configuration."""
    private_key: str
    funder_address: str
    signature_type: int = 0  # 0=EOA, 1=Poly proxy, 2=Gnosis Safe

    # Optional pre-derived L2 credentials (derived from the key otherwise)
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    # API endpoints
    clob_url: str = "https://clob.polymarket.com"
    gamma_url: str = "https://gamma-api.polymarket.com"
    market_ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    user_ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/user"


@dataclass
class WalletConfig:
    """Wallet and blockchain configuration for on-chain merges."""
    polygon_rpc_url: str
    merge_private_key: str

    # Chain ID for Polygon Mainnet
    chain_id: int = 137


@dataclass
class StrategyConfig:
    """Decision engine thresholds, order sizes (USDC) and cooldowns."""
    arb_threshold: float = 0.97
    momentum_trigger: float = 0.85
    momentum_max_entry: float = 0.92  # Don't chase a winner above this

    arb_order_usdc: float = 5.0  # Per leg
    arb_max_usdc: float = 20.0  # Per market
    momentum_main_usdc: float = 10.0
    momentum_hedge_usdc: float = 1.0
    momentum_max_usdc: float = 30.0  # Per market

    arb_cooldown_seconds: float = 5.0
    momentum_cooldown_seconds: float = 120.0
    resolution_minutes: float = 1.0
    min_merge_pairs: float = 0.01


@dataclass
class TimingConfig:
    """Polling cadence and network timeouts."""
    poll_interval_seconds: float = 2.0
    market_refresh_minutes: int = 10
    max_market_age_hours: int = 4
    price_max_age_seconds: float = 5.0
    http_timeout_seconds: float = 6.0
    order_timeout_seconds: float = 10.0
    merge_timeout_seconds: float = 60.0
    reconcile_interval_seconds: float = 120.0


@dataclass
class RiskConfig:
    """Risk control settings."""
    simulation_mode: bool  # Route orders and merges through no-op stand-ins
    limit_orders: bool = False  # GTC at the quoted price instead of FOK
    assets: list[str] = field(default_factory=lambda: ["bitcoin"])


@dataclass
class LogConfig:
    """Logging configuration."""
    log_level: str
    json_logging: bool


@dataclass
class Config:
    """Main configuration container."""
    polymarket: PolymarketConfig
    wallet: WalletConfig
    strategy: StrategyConfig
    timing: TimingConfig
    risk: RiskConfig
    logging: LogConfig
    inventory_file: str = "inventory_state.json"


def get_env(key: str, default: Optional[str] = None, required: bool = True) -> str:
    """Get environment variable with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value or ""


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes")


def get_env_int(key: str, default: int) -> int:
    """Get integer environment variable."""
    value = os.getenv(key, str(default))
    return int(value)


def get_env_float(key: str, default: float) -> float:
    """Get float environment variable."""
    value = os.getenv(key, str(default))
    return float(value)


def get_env_list(key: str, default: str) -> list[str]:
    """Get comma-separated list environment variable."""
    value = os.getenv(key, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config() -> Config:
    """Load and validate configuration from environment."""

    # DRY_RUN is the older name for simulation mode
    simulation_mode = get_env_bool(
        "SIMULATION_MODE",
        get_env_bool("DRY_RUN", True)  # Default to simulation
    )

    # Live trading cannot start without a signing key
    private_key = get_env("PRIVATE_KEY", required=not simulation_mode)

    defaults = StrategyConfig()
    timing_defaults = TimingConfig()

    return Config(
        polymarket=PolymarketConfig(
            private_key=private_key,
            funder_address=get_env("FUNDER_ADDRESS", "", required=False),
            signature_type=get_env_int("SIGNATURE_TYPE", 0),
            api_key=get_env("POLYMARKET_API_KEY", "", required=False),
            api_secret=get_env("POLYMARKET_API_SECRET", "", required=False),
            api_passphrase=get_env("POLYMARKET_API_PASSPHRASE", "", required=False),
        ),
        wallet=WalletConfig(
            polygon_rpc_url=get_env(
                "POLYGON_RPC", "https://polygon-bor-rpc.publicnode.com", required=False
            ),
            merge_private_key=get_env("MERGE_PRIVATE_KEY", private_key, required=False),
        ),
        strategy=StrategyConfig(
            arb_threshold=get_env_float("ARB_THRESHOLD", defaults.arb_threshold),
            momentum_trigger=get_env_float("MOMENTUM_TRIGGER", defaults.momentum_trigger),
            momentum_max_entry=get_env_float("MOMENTUM_MAX_ENTRY", defaults.momentum_max_entry),
            arb_order_usdc=get_env_float("ARB_ORDER_USDC", defaults.arb_order_usdc),
            arb_max_usdc=get_env_float("ARB_MAX_USDC", defaults.arb_max_usdc),
            momentum_main_usdc=get_env_float("MOMENTUM_MAIN_USDC", defaults.momentum_main_usdc),
            momentum_hedge_usdc=get_env_float("MOMENTUM_HEDGE_USDC", defaults.momentum_hedge_usdc),
            momentum_max_usdc=get_env_float("MOMENTUM_MAX_USDC", defaults.momentum_max_usdc),
            arb_cooldown_seconds=get_env_float("ARB_COOLDOWN_SECONDS", defaults.arb_cooldown_seconds),
            momentum_cooldown_seconds=get_env_float(
                "MOMENTUM_COOLDOWN_SECONDS", defaults.momentum_cooldown_seconds
            ),
            resolution_minutes=get_env_float("RESOLUTION_MINUTES", defaults.resolution_minutes),
        ),
        timing=TimingConfig(
            poll_interval_seconds=get_env_float("POLL_INTERVAL", timing_defaults.poll_interval_seconds),
            market_refresh_minutes=get_env_int("MARKET_REFRESH_MIN", timing_defaults.market_refresh_minutes),
            max_market_age_hours=get_env_int("MAX_MARKET_AGE_H", timing_defaults.max_market_age_hours),
            price_max_age_seconds=get_env_float("PRICE_MAX_AGE", timing_defaults.price_max_age_seconds),
            http_timeout_seconds=get_env_float("HTTP_TIMEOUT", timing_defaults.http_timeout_seconds),
            order_timeout_seconds=get_env_float("ORDER_TIMEOUT", timing_defaults.order_timeout_seconds),
            merge_timeout_seconds=get_env_float("MERGE_TIMEOUT", timing_defaults.merge_timeout_seconds),
        ),
        risk=RiskConfig(
            simulation_mode=simulation_mode,
            limit_orders=get_env_bool("LIMIT_ORDERS", False),
            assets=get_env_list("ASSETS", "bitcoin"),
        ),
        logging=LogConfig(
            log_level=get_env("LOG_LEVEL", "INFO", required=False),
            json_logging=get_env_bool("JSON_LOGGING", True),
        ),
        inventory_file=get_env("INVENTORY_FILE", "inventory_state.json", required=False),
    )
