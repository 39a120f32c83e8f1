"""
Exchange Gateway - Exchange Adapter Base.

============================================================
PURPOSE
============================================================
Common shape of an exchange adapter: one REST client, one
public and one optional private streaming session, and the
store/emitter they report into.

CALLER API:
- start(): initial REST load, then connect both sessions
- listen_order_book(symbol, callback) -> unsubscribe
- dispose() / aclose()

REST failures inside adapter operations are emitted on the
`error` channel verbatim and the operation returns its
fallback value, so one failed call never stops the adapter.

============================================================
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple, TypeVar

from ..config import ExchangeConfig
from ..errors import ExchangeError, ExchangeException
from ..http_client import RateLimitedHttpClient
from ..metrics import AdapterMetrics
from ..orderbook import OrderBookCallback
from ..store import EventEmitter, MemoryStore
from ..types import OrderSide, OrderType
from ..websocket_base import ExchangeContext, StreamingSession, TransportFactory


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# REQUEST TYPES
# ============================================================

@dataclass
class PlaceOrderRequest:
    """Request to place an order."""

    symbol: str
    """Normalized symbol."""

    side: OrderSide
    """Order side."""

    type: OrderType
    """Order type."""

    amount: Decimal
    """Order size in contracts."""

    price: Optional[Decimal] = None
    """Limit price."""

    reduce_only: bool = False
    """Reduce only flag."""

    stop_loss: Optional[Decimal] = None
    """Attached stop loss trigger price."""

    take_profit: Optional[Decimal] = None
    """Attached take profit trigger price."""


# ============================================================
# HELPERS
# ============================================================

def adjust(value: Any, step: Decimal) -> Decimal:
    """Round a value to the nearest multiple of `step`."""
    value = Decimal(str(value))
    if not step:
        return value
    return ((value / step).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * step).normalize()


def round_usd(value: Any) -> Decimal:
    """Round a quote-currency amount to cents (missing values are 0)."""
    if value is None:
        return Decimal("0")
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def has_credentials(config: ExchangeConfig) -> bool:
    return bool(config.api_key or config.api_secret)


class _DeferredListen:
    """Order book listen waiting for markets to load."""

    __slots__ = ("timer", "unsubscribe", "cancelled")

    def __init__(self):
        self.timer: Optional[asyncio.TimerHandle] = None
        self.unsubscribe: Optional[Callable[[], None]] = None
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.unsubscribe is not None:
            self.unsubscribe()
            self.unsubscribe = None


# ============================================================
# ADAPTER BASE
# ============================================================

class BaseExchange(ABC):
    """
    Abstract base class for exchange adapters.
    """

    EXCHANGE_ID = "unknown"

    def __init__(
        self,
        config: ExchangeConfig,
        store: Optional[MemoryStore] = None,
        emitter: Optional[EventEmitter] = None,
        http_session=None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize adapter.

        Args:
            config: Exchange configuration
            store: Shared store (a fresh one by default)
            emitter: Event emitter for `error` and `fill`
            http_session: aiohttp-compatible session for REST calls
            transport_factory: Websocket factory for both sessions

        Raises:
            ConfigurationError: If credentials are present but unusable
        """
        self._config = config
        self.store = store or MemoryStore()
        self.emitter = emitter or EventEmitter()
        self.metrics = AdapterMetrics(self.EXCHANGE_ID)
        self.context = ExchangeContext(
            store=self.store,
            emitter=self.emitter,
            metrics=self.metrics,
        )

        self._disposed = False
        self._listens: Set[_DeferredListen] = set()

        # Event loop the adapter runs on, bound by start()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._parked: List[Tuple[Callable[..., Any], tuple]] = []
        self._loop_lock = threading.Lock()

        self.xhr = self._create_client(http_session)
        self.public_ws = self._create_public_session(transport_factory)
        self.private_ws: Optional[StreamingSession] = None
        if has_credentials(config):
            self.private_ws = self._create_private_session(transport_factory)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def exchange_id(self) -> str:
        return self.EXCHANGE_ID

    @property
    def config(self) -> ExchangeConfig:
        return self._config

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # --------------------------------------------------------
    # FACTORIES (OVERRIDE)
    # --------------------------------------------------------

    @abstractmethod
    def _create_client(self, http_session) -> RateLimitedHttpClient:
        """Build the REST client."""

    @abstractmethod
    def _create_public_session(self, transport_factory) -> StreamingSession:
        """Build the public streaming session."""

    @abstractmethod
    def _create_private_session(self, transport_factory) -> StreamingSession:
        """Build the private streaming session."""

    @abstractmethod
    async def start(self) -> None:
        """Load markets and account state, then connect."""

    # --------------------------------------------------------
    # STREAMING
    # --------------------------------------------------------

    def connect_and_subscribe(self) -> None:
        """Connect both streaming sessions. No-op once disposed."""
        if self._disposed:
            return
        self._bind_loop(asyncio.get_running_loop())
        self.public_ws.subscribe_tickers(market.id for market in self.store.markets)
        self.public_ws.connect_and_subscribe()
        if self.private_ws is not None:
            self.private_ws.connect_and_subscribe()

    def listen_order_book(self, symbol: str, callback: OrderBookCallback) -> Callable[[], None]:
        """
        Listen to a symbol's order book. Safe to call from any thread.

        Before markets are loaded the request is retried every
        `market_retry_ms`. An unknown symbol is logged and ignored.

        Returns:
            Idempotent unsubscribe function (also cancels a pending retry)
        """
        listen = _DeferredListen()
        self._listens.add(listen)
        self._call_in_loop(self._attempt_listen, listen, symbol, callback)

        def unsubscribe() -> None:
            self._call_in_loop(self._cancel_listen, listen)

        return unsubscribe

    def _attempt_listen(self, listen: _DeferredListen, symbol: str, callback: OrderBookCallback) -> None:
        listen.timer = None
        if listen.cancelled or self._disposed:
            return

        if not self.store.loaded.markets:
            listen.timer = self._loop.call_later(
                self._config.stream.market_retry_ms / 1000,
                self._attempt_listen,
                listen,
                symbol,
                callback,
            )
            return

        market = self.store.market_by_symbol(symbol)
        if market is None:
            logger.warning(f"{self.EXCHANGE_ID}: market not found: {symbol}")
            self._listens.discard(listen)
            return

        listen.unsubscribe = self.public_ws.subscribe_book(market.id, callback)

    def _cancel_listen(self, listen: _DeferredListen) -> None:
        listen.cancel()
        self._listens.discard(listen)

    # --------------------------------------------------------
    # EVENT LOOP
    # --------------------------------------------------------

    def _bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach to `loop` and run calls parked before it was known."""
        with self._loop_lock:
            if self._loop is not None:
                return
            self._loop = loop
            parked, self._parked = self._parked, []
        for fn, args in parked:
            loop.call_soon(fn, *args)

    def _call_in_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        """
        Run `fn` on the adapter's loop.

        From another thread the call is handed off; before any loop
        is known it is parked until start().
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            self._bind_loop(running)

        with self._loop_lock:
            loop = self._loop
            if loop is None:
                self._parked.append((fn, args))
                return

        if loop is running or loop.is_closed():
            fn(*args)
        else:
            loop.call_soon_threadsafe(fn, *args)

    # --------------------------------------------------------
    # ERRORS
    # --------------------------------------------------------

    def _emit_error(self, error: ExchangeError) -> None:
        logger.warning(f"{self.EXCHANGE_ID} error: {error}")
        self.emitter.emit("error", error)

    async def _guarded(self, call: Awaitable[T], fallback: T) -> T:
        """Await a REST call; on failure emit the error and return `fallback`."""
        try:
            return await call
        except ExchangeException as e:
            self._emit_error(e.error)
            return fallback

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def dispose(self) -> None:
        """Stop everything. Idempotent."""
        if self._disposed:
            return
        self._disposed = True

        for listen in list(self._listens):
            listen.cancel()
        self._listens.clear()

        self.public_ws.dispose()
        if self.private_ws is not None:
            self.private_ws.dispose()

        logger.info(f"{self.EXCHANGE_ID} adapter disposed")

    async def aclose(self) -> None:
        """Dispose and release network resources."""
        self.dispose()
        await self.public_ws.aclose()
        if self.private_ws is not None:
            await self.private_ws.aclose()
        await self.xhr.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    # --------------------------------------------------------
    # STORE HELPERS
    # --------------------------------------------------------

    def _symbols_with_orders(self) -> List[str]:
        return sorted({order.symbol for order in self.store.orders})
