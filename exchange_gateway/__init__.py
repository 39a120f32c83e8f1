"""
Exchange Gateway Package.

============================================================
PURPOSE
============================================================
Connectivity to cryptocurrency derivatives exchanges.

CORE:
- Authenticated, rate-limited REST
- Streaming sessions with reconnect, authentication and heartbeat
- Reference-counted subscriptions replayed on reconnect
- Locally synchronized order books

============================================================
MODULES
============================================================
- types: Normalized shapes and session states
- config: Exchange, rate limit, timeout and stream configuration
- errors: Error taxonomy and per-exchange mapping
- signing: Request signers and nonce source
- rate_limiter: FIFO token bucket
- http_client: Rate-limited signing REST client
- websocket_base: Streaming session state machine
- subscriptions: Subscription registry
- orderbook: Order book synchronizer
- heartbeat: Heartbeat monitor
- store: In-memory store and event emitter
- adapters: Kraken and Binance adapters

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    BookSide,
    OrderBookLevel,
    OrderBook,
    FeedKind,
    Topic,
    SessionState,
    SignedRequest,
    OrderSide,
    OrderType,
    OrderStatus,
    PositionSide,
    Market,
    Ticker,
    Candle,
    Account,
    Order,
    Position,
    Balance,
    FillEvent,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    RateLimitConfig,
    TimeoutConfig,
    StreamConfig,
    ExchangeConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    RetryEligibility,
    ExchangeError,
    ExchangeException,
    ConfigurationError,
    ProtocolError,
    map_exchange_error,
    map_kraken_error,
    map_binance_error,
)

# ============================================================
# CORE
# ============================================================
from .signing import (
    NonceSource,
    RequestSigner,
    KrakenFuturesSigner,
    BinanceSigner,
)
from .rate_limiter import TokenBucket
from .http_client import AuthMode, RateLimitedHttpClient
from .subscriptions import SubscriptionRegistry, SubscriptionToken
from .orderbook import OrderBookSynchronizer
from .heartbeat import HeartbeatMonitor
from .store import MemoryStore, EventEmitter
from .metrics import AdapterMetrics
from .websocket_base import StreamingSession, ExchangeContext

# ============================================================
# ADAPTERS
# ============================================================
from .adapters import (
    BaseExchange,
    PlaceOrderRequest,
    KrakenExchange,
    BinanceExchange,
    ExchangeId,
    create_exchange,
    list_supported,
)


__all__ = [
    # Types
    "BookSide",
    "OrderBookLevel",
    "OrderBook",
    "FeedKind",
    "Topic",
    "SessionState",
    "SignedRequest",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "PositionSide",
    "Market",
    "Ticker",
    "Candle",
    "Account",
    "Order",
    "Position",
    "Balance",
    "FillEvent",
    # Config
    "RateLimitConfig",
    "TimeoutConfig",
    "StreamConfig",
    "ExchangeConfig",
    # Errors
    "ErrorCategory",
    "RetryEligibility",
    "ExchangeError",
    "ExchangeException",
    "ConfigurationError",
    "ProtocolError",
    "map_exchange_error",
    "map_kraken_error",
    "map_binance_error",
    # Core
    "NonceSource",
    "RequestSigner",
    "KrakenFuturesSigner",
    "BinanceSigner",
    "TokenBucket",
    "AuthMode",
    "RateLimitedHttpClient",
    "SubscriptionRegistry",
    "SubscriptionToken",
    "OrderBookSynchronizer",
    "HeartbeatMonitor",
    "MemoryStore",
    "EventEmitter",
    "AdapterMetrics",
    "StreamingSession",
    "ExchangeContext",
    # Adapters
    "BaseExchange",
    "PlaceOrderRequest",
    "KrakenExchange",
    "BinanceExchange",
    "ExchangeId",
    "create_exchange",
    "list_supported",
]
