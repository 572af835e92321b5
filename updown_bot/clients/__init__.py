# Polymarket clients
from .websocket_client import MarketWebSocketClient, UserWebSocketClient
from .clob_client import CLOBClient
from .gamma_client import GammaClient
from .polygon_client import PolygonClient
from .price_feed import PriceFeed

__all__ = [
    "MarketWebSocketClient",
    "UserWebSocketClient",
    "CLOBClient",
    "GammaClient",
    "PolygonClient",
    "PriceFeed",
]
