"""
Exchange Gateway - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange adapter implementations.

AVAILABLE ADAPTERS:
- KrakenExchange: Kraken Futures (challenge/response private feed)
- BinanceExchange: Binance USD-M Futures (listen key user stream)

UTILITIES:
- create_exchange: Factory for creating adapters
- PlaceOrderRequest: Normalized order request

============================================================
"""

# Base
from .base import (
    BaseExchange,
    PlaceOrderRequest,
    adjust,
    round_usd,
)

# Adapters
from .kraken import KrakenExchange
from .kraken_ws import KrakenPublicWebSocket, KrakenPrivateWebSocket
from .binance import BinanceExchange
from .binance_ws import BinancePublicWebSocket, BinanceUserDataStream

# Factory
from .factory import (
    ExchangeId,
    create_exchange,
    list_supported,
    register,
)


__all__ = [
    # Base
    "BaseExchange",
    "PlaceOrderRequest",
    "adjust",
    "round_usd",
    # Adapters
    "KrakenExchange",
    "KrakenPublicWebSocket",
    "KrakenPrivateWebSocket",
    "BinanceExchange",
    "BinancePublicWebSocket",
    "BinanceUserDataStream",
    # Factory
    "ExchangeId",
    "create_exchange",
    "list_supported",
    "register",
]
