"""
Exchange Gateway - Types.

============================================================
PURPOSE
============================================================
Type definitions shared by the gateway core and the
exchange adapters.

- Order book views handed to subscribers (read-only)
- Streaming topics and session states
- Normalized market / order / position shapes

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple


# ============================================================
# ORDER BOOK
# ============================================================

class BookSide(Enum):
    """Order book side."""

    BIDS = "bids"
    ASKS = "asks"


@dataclass(frozen=True)
class OrderBookLevel:
    """One price level with its cumulative depth."""

    price: Decimal
    amount: Decimal
    total: Decimal
    """Running sum of amount from the best price outward."""


@dataclass(frozen=True)
class OrderBook:
    """
    Read-only order book view.

    Bids are sorted descending, asks ascending, one level per price.
    """

    bids: Tuple[OrderBookLevel, ...] = ()
    asks: Tuple[OrderBookLevel, ...] = ()

    @property
    def best_bid(self) -> Optional[OrderBookLevel]:
        """Highest bid, if any."""
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[OrderBookLevel]:
        """Lowest ask, if any."""
        return self.asks[0] if self.asks else None


# ============================================================
# STREAMING
# ============================================================

class FeedKind(Enum):
    """Streaming feed kinds. Values are the wire feed names."""

    TICKER = "ticker"
    BOOK = "book"
    OPEN_ORDERS = "open_orders"
    OPEN_POSITIONS = "open_positions"
    BALANCES = "balances"


@dataclass(frozen=True)
class Topic:
    """A (feed kind, product id) pair identifying one wire subscription."""

    feed: FeedKind
    product_id: str = ""

    def __str__(self) -> str:
        if self.product_id:
            return f"{self.feed.value}:{self.product_id}"
        return self.feed.value


class SessionState(Enum):
    """Streaming session states."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    AUTHENTICATING = "AUTHENTICATING"
    READY = "READY"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


# ============================================================
# SIGNING
# ============================================================

@dataclass(frozen=True)
class SignedRequest:
    """
    Authentication material for one outbound request.

    Computed per call, never cached or reused.
    """

    nonce: int
    signature: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: str = ""
    """Final query string (some exchanges sign inside the query)."""


# ============================================================
# NORMALIZED TRADING SHAPES
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order type."""

    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_market"
    TAKE_PROFIT = "take_profit_market"


class OrderStatus(Enum):
    """Order status."""

    OPEN = "open"
    CLOSED = "closed"
    CANCELED = "canceled"


class PositionSide(Enum):
    """Position side."""

    LONG = "long"
    SHORT = "short"


@dataclass
class Market:
    """Tradeable instrument. `id` is the exchange product id."""

    id: str
    symbol: str
    base: str
    quote: str
    active: bool = True
    price_precision: Decimal = Decimal("0")
    amount_precision: Decimal = Decimal("0")
    min_amount: Decimal = Decimal("0")
    max_amount: Optional[Decimal] = None


@dataclass
class Ticker:
    """Latest market statistics for one symbol."""

    id: str
    symbol: str
    bid: Decimal = Decimal("0")
    ask: Decimal = Decimal("0")
    last: Decimal = Decimal("0")
    mark: Decimal = Decimal("0")
    index: Decimal = Decimal("0")
    percentage: Decimal = Decimal("0")
    funding_rate: Decimal = Decimal("0")
    volume: Decimal = Decimal("0")
    quote_volume: Decimal = Decimal("0")
    open_interest: Decimal = Decimal("0")


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. `timestamp` is in seconds."""

    timestamp: float
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass(frozen=True)
class Account:
    """Identity of the authenticated account."""

    user_id: str = ""
    affiliate_id: str = ""


@dataclass
class Order:
    """Open order."""

    id: str
    symbol: str
    type: OrderType
    side: OrderSide
    price: Decimal
    amount: Decimal
    status: OrderStatus = OrderStatus.OPEN
    filled: Decimal = Decimal("0")
    remaining: Decimal = Decimal("0")
    reduce_only: bool = False


@dataclass
class Position:
    """Open position."""

    symbol: str
    side: PositionSide
    entry_price: Decimal
    contracts: Decimal
    notional: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    leverage: Decimal = Decimal("0")
    liquidation_price: Decimal = Decimal("0")


@dataclass
class Balance:
    """Account balance in the quote currency."""

    total: Decimal = Decimal("0")
    free: Decimal = Decimal("0")
    used: Decimal = Decimal("0")
    upnl: Decimal = Decimal("0")


@dataclass(frozen=True)
class FillEvent:
    """Payload of the `fill` notification."""

    symbol: str
    side: OrderSide
    price: Decimal
    amount: Decimal
