"""
Exchange Gateway - Streaming Session Base.

============================================================
PURPOSE
============================================================
Base class for one streaming connection to an exchange
(public or private feed).

FEATURES:
- Explicit connection state machine
- Automatic reconnection with bounded, jittered backoff
- Optional authentication handshake before READY
- Reference-counted subscriptions replayed on reconnect
- Heartbeat with latency publishing
- Single-writer outbound queue
- Feed-name dispatch table (unknown feeds ignored)

STATES:
IDLE -> CONNECTING -> OPEN -> [AUTHENTICATING] -> READY
     -> CLOSING -> CLOSED, with CLOSED -> CONNECTING on reconnect.
A disposed session stays CLOSED.

============================================================
USAGE
============================================================
```python
class KrakenPublicWebSocket(StreamingSession):
    def _send_subscribe(self, topics):
        ...

ws = KrakenPublicWebSocket(context, config)
ws.connect_and_subscribe()
unsubscribe = ws.subscribe_book("PF_XBTUSD", on_book)
...
unsubscribe()
ws.dispose()
```

============================================================
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from .config import ExchangeConfig
from .errors import ExchangeError, ExchangeException, ProtocolError
from .heartbeat import HeartbeatMonitor
from .metrics import AdapterMetrics
from .orderbook import OrderBookCallback, OrderBookSynchronizer
from .store import EventEmitter, MemoryStore
from .subscriptions import SubscriptionRegistry, SubscriptionToken
from .types import FeedKind, SessionState, Topic


logger = logging.getLogger(__name__)


TransportFactory = Callable[[str], Awaitable[aiohttp.ClientWebSocketResponse]]
StateListener = Callable[[SessionState, SessionState], None]
MessageHandler = Callable[[Dict[str, Any]], None]


# ============================================================
# STATE MACHINE
# ============================================================

TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING, SessionState.CLOSED}),
    SessionState.CONNECTING: frozenset({SessionState.OPEN, SessionState.CLOSED}),
    SessionState.OPEN: frozenset({
        SessionState.AUTHENTICATING,
        SessionState.READY,
        SessionState.CLOSING,
        SessionState.CLOSED,
    }),
    SessionState.AUTHENTICATING: frozenset({
        SessionState.READY,
        SessionState.CLOSING,
        SessionState.CLOSED,
    }),
    SessionState.READY: frozenset({SessionState.CLOSING, SessionState.CLOSED}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset({SessionState.CONNECTING}),
}

LIVE_STATES = frozenset({
    SessionState.OPEN,
    SessionState.AUTHENTICATING,
    SessionState.READY,
})

# Outbound queue item kinds
_FRAME = "frame"
_PING = "ping"
_PONG = "pong"


@dataclass
class ExchangeContext:
    """Collaborators a session reports into. Owned by the adapter."""

    store: MemoryStore = field(default_factory=MemoryStore)
    emitter: EventEmitter = field(default_factory=EventEmitter)
    metrics: Optional[AdapterMetrics] = None


@dataclass(eq=False)
class _BookHandle:
    product_id: str
    callback: OrderBookCallback
    listener_id: Optional[int] = None
    token: Optional[SubscriptionToken] = None
    detached: bool = False


# ============================================================
# STREAMING SESSION
# ============================================================

class StreamingSession(ABC):
    """
    Abstract base class for exchange streaming sessions.

    Subclasses provide the URL, the subscribe/unsubscribe wire
    format, the feed handlers and, for private feeds, the
    authentication handshake.
    """

    EXCHANGE_ID = "unknown"
    REQUIRES_AUTH = False

    def __init__(
        self,
        context: ExchangeContext,
        config: ExchangeConfig,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize session.

        Args:
            context: Store, emitter and metrics of the owning adapter
            config: Exchange configuration
            transport_factory: Coroutine `url -> websocket`; defaults to
                an aiohttp session owned by this object
        """
        self._context = context
        self._config = config
        self._stream = config.stream
        self._metrics = context.metrics or AdapterMetrics(self.EXCHANGE_ID)
        self._transport_factory = transport_factory or self._open_transport

        # Connection state
        self._state = SessionState.IDLE
        self._state_listeners: List[StateListener] = []
        self._disposed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

        # Tasks
        self._run_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._outbound: asyncio.Queue = asyncio.Queue()

        # Reconnection
        self._reconnect_attempts = 0

        # Collaborators
        self._registry = SubscriptionRegistry(self._send_subscribe, self._send_unsubscribe)
        self._books = OrderBookSynchronizer()
        self._heartbeat = HeartbeatMonitor(
            send_ping=self._send_ping,
            on_latency=self._publish_latency,
            on_timeout=self._on_heartbeat_timeout,
            interval_ms=self._stream.ping_interval_ms,
            timeout_ms=self._stream.pong_timeout_ms,
        )

        # Feed name -> handler
        self._handlers: Dict[str, MessageHandler] = {}
        self._ticker_tokens: Dict[str, SubscriptionToken] = {}

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def store(self) -> MemoryStore:
        return self._context.store

    @property
    def emitter(self) -> EventEmitter:
        return self._context.emitter

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def books(self) -> OrderBookSynchronizer:
        return self._books

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        return self._heartbeat

    # --------------------------------------------------------
    # STATE MACHINE
    # --------------------------------------------------------

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Observe transitions as `(old, new)`. Returns a remover."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if new_state is old_state:
            return
        if self._disposed and new_state not in (SessionState.CLOSING, SessionState.CLOSED):
            return
        if new_state not in TRANSITIONS[old_state]:
            raise RuntimeError(f"Invalid transition {old_state.value} -> {new_state.value}")

        self._state = new_state
        logger.debug(f"{self.__class__.__name__}: {old_state.value} -> {new_state.value}")

        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"State listener error: {e}", exc_info=True)

    def _mark_ready(self) -> None:
        """OPEN/AUTHENTICATING -> READY. Ignored in any other state."""
        if self._state not in (SessionState.OPEN, SessionState.AUTHENTICATING):
            return
        self._set_state(SessionState.READY)
        self._reconnect_attempts = 0
        self._registry.mark_ready()
        self._heartbeat.start()
        self._on_ready()

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def connect_and_subscribe(self) -> None:
        """
        Start connecting. Idempotent; a no-op once disposed.

        Must be called from the event loop the session will run on.
        """
        if self._disposed or self._run_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._run_task = self._loop.create_task(self._run())

    def dispose(self) -> None:
        """
        Stop the session for good. Idempotent.

        Cancels every task and timer and closes the transport; the
        session ends in CLOSED and never reconnects.
        """
        if self._disposed:
            return

        if self._state in LIVE_STATES:
            self._set_state(SessionState.CLOSING)
        self._disposed = True

        self._heartbeat.stop()
        self._on_dispose()
        self._registry.clear()
        self._books.clear()
        self._ticker_tokens.clear()

        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        elif self._state is not SessionState.CLOSED:
            self._set_state(SessionState.CLOSED)

        logger.info(f"{self.__class__.__name__} disposed")

    async def aclose(self) -> None:
        """Dispose and wait for the transport to close."""
        self.dispose()
        if self._run_task is not None:
            await asyncio.gather(self._run_task, return_exceptions=True)
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def flush(self) -> None:
        """Wait until every queued outbound frame has been written."""
        await self._outbound.join()

    async def _run(self) -> None:
        """Connect, serve, and reconnect until disposed."""
        try:
            while not self._disposed:
                self._set_state(SessionState.CONNECTING)

                ws = await self._connect()
                if ws is not None:
                    await self._serve(ws)
                else:
                    self._set_state(SessionState.CLOSED)

                if self._disposed:
                    break

                self._reconnect_attempts += 1
                limit = self._stream.max_reconnect_attempts
                if limit is not None and self._reconnect_attempts > limit:
                    logger.error("Max reconnection attempts reached")
                    break

                delay_ms = self._backoff_delay_ms(self._reconnect_attempts)
                self._metrics.record_reconnect()
                logger.warning(
                    f"{self.__class__.__name__} reconnecting in {delay_ms:.0f}ms "
                    f"(attempt {self._reconnect_attempts})"
                )
                await asyncio.sleep(delay_ms / 1000)
        finally:
            if self._state is not SessionState.CLOSED:
                self._set_state(SessionState.CLOSED)

    def _backoff_delay_ms(self, attempt: int) -> float:
        delay = min(
            self._stream.reconnect_initial_ms * (2 ** (attempt - 1)),
            self._stream.reconnect_max_ms,
        )
        if self._stream.reconnect_jitter:
            delay *= 1 - self._stream.reconnect_jitter * random.random()
        return delay

    async def _connect(self) -> Optional[aiohttp.ClientWebSocketResponse]:
        try:
            url = await self._resolve_url()
            return await asyncio.wait_for(
                self._transport_factory(url),
                self._config.timeout.connect_timeout_ms / 1000,
            )
        except ExchangeException as e:
            logger.warning(f"{self.__class__.__name__} connection failed: {e}")
            self._emit_error(e.error)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"{self.__class__.__name__} connection failed: {e!r}")
        return None

    async def _open_transport(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(url, autoping=False)

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Run one connection from OPEN until the transport closes."""
        self._ws = ws
        self._set_state(SessionState.OPEN)
        logger.info(f"{self.__class__.__name__} connected")

        loop = asyncio.get_running_loop()
        writer = loop.create_task(self._write_loop(ws))
        reader = loop.create_task(self._receive_loop(ws))
        self._reader_task = reader

        try:
            try:
                self._on_open()
            except Exception as e:
                logger.error(f"Open handler failed: {e}", exc_info=True)
                reader.cancel()
            await asyncio.wait({reader})
        finally:
            reader.cancel()
            writer.cancel()
            self._reader_task = None
            self._ws = None

            self._heartbeat.stop()
            self._registry.mark_closed()
            self._discard_outbound()

            if not ws.closed:
                try:
                    await asyncio.wait_for(ws.close(), 1.0)
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    logger.debug(f"Transport close failed: {e!r}")

            self._set_state(SessionState.CLOSED)
            logger.info(f"{self.__class__.__name__} disconnected")
            self._on_closed()

    def _drop_connection(self) -> None:
        """Abort the live transport; the run loop reconnects."""
        if self._reader_task is not None:
            self._reader_task.cancel()

    # --------------------------------------------------------
    # MESSAGE HANDLING
    # --------------------------------------------------------

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Main receive loop. One message at a time, in arrival order."""
        async for msg in ws:
            if self._disposed:
                break

            if msg.type == aiohttp.WSMsgType.TEXT:
                self._dispatch(msg.data)

            elif msg.type == aiohttp.WSMsgType.BINARY:
                logger.debug(f"Binary message ignored: {len(msg.data)} bytes")

            elif msg.type == aiohttp.WSMsgType.PING:
                self._enqueue(_PONG, msg.data)

            elif msg.type == aiohttp.WSMsgType.PONG:
                self._heartbeat.pong()

            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error: {ws.exception()}")
                break

    def _dispatch(self, raw: str) -> None:
        """Decode one text frame and route it by feed name."""
        try:
            message = json.loads(raw)
            if not isinstance(message, dict):
                raise ProtocolError(f"Unexpected frame: {raw[:100]}")
            if self._on_control(message):
                return
            handler = self._handlers.get(self._feed_of(message))
            if handler is not None:
                handler(message)
        except (ValueError, ProtocolError) as e:
            self._metrics.record_dropped_message()
            logger.debug(f"Dropped message: {e}")
        except Exception as e:
            logger.error(f"Error handling message: {e}", exc_info=True)

    def _feed_of(self, message: Dict[str, Any]) -> Optional[str]:
        """Extract the feed name from a message (override per exchange)."""
        return message.get("feed")

    def _on_control(self, message: Dict[str, Any]) -> bool:
        """Handle acks, pongs and handshake messages. True if consumed."""
        return False

    # --------------------------------------------------------
    # SENDING
    # --------------------------------------------------------

    def send(self, frame: Dict[str, Any]) -> bool:
        """
        Queue a JSON frame for the live connection.

        Returns:
            False if there is no live connection (frame dropped)
        """
        return self._enqueue(_FRAME, frame)

    def _enqueue(self, kind: str, payload: Any = None) -> bool:
        if self._state not in LIVE_STATES:
            logger.debug(f"Not connected, dropping outbound {kind}")
            return False
        self._outbound.put_nowait((kind, payload))
        return True

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Sole writer of the transport."""
        while True:
            kind, payload = await self._outbound.get()
            try:
                if kind == _FRAME:
                    await ws.send_str(json.dumps(payload))
                elif kind == _PING:
                    await ws.ping()
                elif kind == _PONG:
                    await ws.pong(payload or b"")
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.warning(f"Send failed: {e!r}")
                self._drop_connection()
            finally:
                self._outbound.task_done()

    def _discard_outbound(self) -> None:
        while not self._outbound.empty():
            self._outbound.get_nowait()
            self._outbound.task_done()

    # --------------------------------------------------------
    # SUBSCRIPTIONS
    # --------------------------------------------------------

    def subscribe(self, topic: Topic) -> SubscriptionToken:
        """Acquire a topic. Call from the session's loop."""
        return self._registry.acquire(topic)

    def unsubscribe(self, token: SubscriptionToken) -> None:
        """Release a topic acquired with subscribe(). Idempotent."""
        self._call_in_loop(self._registry.release, token)

    def subscribe_tickers(self, product_ids: Iterable[str]) -> None:
        """Hold one ticker subscription per product until disposal. Idempotent."""
        for product_id in product_ids:
            if product_id not in self._ticker_tokens:
                self._ticker_tokens[product_id] = self.subscribe(Topic(FeedKind.TICKER, product_id))

    def subscribe_book(self, product_id: str, callback: OrderBookCallback) -> Callable[[], None]:
        """
        Listen to a product's order book.

        Safe to call from any thread. Returns an idempotent
        unsubscribe function.
        """
        handle = _BookHandle(product_id=product_id, callback=callback)
        self._call_in_loop(self._attach_book, handle)

        def unsubscribe() -> None:
            self._call_in_loop(self._detach_book, handle)

        return unsubscribe

    def _attach_book(self, handle: _BookHandle) -> None:
        if handle.detached or self._disposed:
            return
        handle.listener_id = self._books.add_listener(handle.product_id, handle.callback)
        handle.token = self._registry.acquire(Topic(FeedKind.BOOK, handle.product_id))

    def _detach_book(self, handle: _BookHandle) -> None:
        if handle.detached:
            return
        handle.detached = True
        if handle.token is None:
            return
        self._books.remove_listener(handle.product_id, handle.listener_id)
        self._registry.release(handle.token)

    def _call_in_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run on the session's loop; hand off if called from another thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            fn(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(fn, *args)

    # --------------------------------------------------------
    # HEARTBEAT
    # --------------------------------------------------------

    def _send_ping(self) -> None:
        """Send one heartbeat ping (protocol-level by default)."""
        self._enqueue(_PING)

    def _publish_latency(self, latency_ms: float) -> None:
        self.store.update(latency=round(latency_ms))
        self._metrics.record_latency(latency_ms)

    def _on_heartbeat_timeout(self) -> None:
        logger.warning(f"{self.__class__.__name__} heartbeat timed out, reconnecting")
        self._drop_connection()

    # --------------------------------------------------------
    # ERRORS
    # --------------------------------------------------------

    def _emit_error(self, error: ExchangeError) -> None:
        self.emitter.emit("error", error)

    # --------------------------------------------------------
    # HOOKS (OVERRIDE)
    # --------------------------------------------------------

    @abstractmethod
    async def _resolve_url(self) -> str:
        """URL for the next connection attempt."""

    @abstractmethod
    def _send_subscribe(self, topics: List[Topic]) -> None:
        """Send a subscribe command (exchange-specific)."""

    @abstractmethod
    def _send_unsubscribe(self, topics: List[Topic]) -> None:
        """Send an unsubscribe command (exchange-specific)."""

    def _on_open(self) -> None:
        """
        Called on OPEN.

        Public sessions replay their topics and become READY on the
        first acknowledgment, or at once when there is nothing to
        subscribe.
        """
        if not self._registry.replay():
            self._mark_ready()

    def _on_ready(self) -> None:
        """Called on READY."""

    def _on_closed(self) -> None:
        """Called on every transition to CLOSED after a connection."""

    def _on_dispose(self) -> None:
        """Cancel subclass timers."""
