"""
Exchange Gateway - Kraken Futures Streaming Sessions.

============================================================
PURPOSE
============================================================
Public and private websocket feeds of Kraken Futures.

PUBLIC (no auth):
- ticker:        partial ticker updates for every market
- book_snapshot: full book, replaces the local book
- book:          one price level change

PRIVATE (challenge/response):
1. -> {"event": "challenge", "api_key": ...}
2. <- {"event": "challenge", "message": <challenge>}
3. -> subscribe per feed with original and signed challenge
4. <- {"event": "subscribed", ...}  => READY

Private heartbeat is a JSON ping; the exchange rejects it with
an alert that doubles as the pong.

============================================================
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import ProtocolError, map_kraken_error
from ..orderbook import to_decimal
from ..types import (
    Balance,
    FeedKind,
    FillEvent,
    Order,
    OrderStatus,
    SessionState,
    Topic,
)
from ..websocket_base import StreamingSession, TransportFactory
from .base import round_usd

if TYPE_CHECKING:
    from .kraken import KrakenExchange


logger = logging.getLogger(__name__)


WS_URL = {
    "livenet": "wss://futures.kraken.com/ws/v1/",
    "testnet": "wss://demo-futures.kraken.com/ws/v1/",
}

PONG_MESSAGE = "Bad websocket message"

# Wire ticker field -> Ticker attribute
TICKER_FIELDS = {
    "bid": "bid",
    "ask": "ask",
    "last": "last",
    "markPrice": "mark",
    "index": "index",
    "change": "percentage",
    "openInterest": "open_interest",
    "funding_rate": "funding_rate",
    "volume": "volume",
    "volumeQuote": "quote_volume",
}


def _product_id(data: Dict[str, Any]) -> str:
    product_id = data.get("product_id")
    if not product_id:
        raise ProtocolError(f"Missing product_id in {data.get('feed')} message")
    return product_id


class _KrakenSession(StreamingSession):
    """Shared Kraken plumbing."""

    EXCHANGE_ID = "kraken"

    def __init__(self, parent: "KrakenExchange", transport_factory: Optional[TransportFactory] = None):
        super().__init__(parent.context, parent.config, transport_factory)
        self.parent = parent

    async def _resolve_url(self) -> str:
        return WS_URL["testnet" if self._config.testnet else "livenet"]

    def _report(self, message: Dict[str, Any], code: str = None) -> None:
        text = str(message.get("message") or message.get("event"))
        logger.warning(f"{self.__class__.__name__} {message.get('event')}: {text}")
        self._emit_error(map_kraken_error(code or text, text))


# ============================================================
# PUBLIC
# ============================================================

class KrakenPublicWebSocket(_KrakenSession):
    """
    Kraken Futures public feed.
    """

    def __init__(self, parent: "KrakenExchange", transport_factory: Optional[TransportFactory] = None):
        super().__init__(parent, transport_factory)
        self._handlers = {
            "ticker": self._handle_ticker,
            "book_snapshot": self._handle_book_snapshot,
            "book": self._handle_book,
        }

    # --------------------------------------------------------
    # COMMANDS
    # --------------------------------------------------------

    def _send_subscribe(self, topics: List[Topic]) -> None:
        self._send_feed_command("subscribe", topics)

    def _send_unsubscribe(self, topics: List[Topic]) -> None:
        self._send_feed_command("unsubscribe", topics)

    def _send_feed_command(self, event: str, topics: List[Topic]) -> None:
        product_ids: Dict[str, List[str]] = {}
        for topic in topics:
            product_ids.setdefault(topic.feed.value, []).append(topic.product_id)

        for feed, ids in product_ids.items():
            self.send({"event": event, "feed": feed, "product_ids": ids})

    def _on_control(self, message: Dict[str, Any]) -> bool:
        event = message.get("event")
        if event is None:
            return False

        if event == "subscribed":
            self._mark_ready()
        elif event in ("error", "subscribed_failed"):
            self._report(message)
        else:
            logger.debug(f"Kraken public event: {event}")
        return True

    # --------------------------------------------------------
    # FEEDS
    # --------------------------------------------------------

    def _handle_ticker(self, data: Dict[str, Any]) -> None:
        ticker = self.store.ticker_by_id(_product_id(data))
        if ticker is None:
            return

        changes = {
            name: to_decimal(data[wire])
            for wire, name in TICKER_FIELDS.items()
            if data.get(wire) is not None
        }
        self.store.update_ticker(ticker, changes)

    def _handle_book_snapshot(self, data: Dict[str, Any]) -> None:
        self.books.apply_snapshot(
            _product_id(data),
            data.get("bids") or [],
            data.get("asks") or [],
        )

    def _handle_book(self, data: Dict[str, Any]) -> None:
        self.books.apply_delta(
            _product_id(data),
            data.get("side"),
            data.get("price"),
            data.get("qty"),
        )


# ============================================================
# PRIVATE
# ============================================================

class KrakenPrivateWebSocket(_KrakenSession):
    """
    Kraken Futures private feed (orders, positions, balances).
    """

    REQUIRES_AUTH = True

    FEEDS = (FeedKind.OPEN_ORDERS, FeedKind.OPEN_POSITIONS, FeedKind.BALANCES)

    def __init__(self, parent: "KrakenExchange", transport_factory: Optional[TransportFactory] = None):
        super().__init__(parent, transport_factory)
        self._challenge = ""
        self._signed_challenge = ""

        for feed in self.FEEDS:
            self.subscribe(Topic(feed))

        self._handlers = {
            "open_orders_snapshot": self._handle_open_orders_snapshot,
            "open_orders": self._handle_open_orders,
            "open_positions": self._handle_open_positions,
            "balances_snapshot": self._handle_balances,
            "balances": self._handle_balances,
        }

    @property
    def is_authenticated(self) -> bool:
        return bool(self._signed_challenge)

    # --------------------------------------------------------
    # HANDSHAKE
    # --------------------------------------------------------

    def _on_open(self) -> None:
        self._challenge = ""
        self._signed_challenge = ""
        self._set_state(SessionState.AUTHENTICATING)
        self.send({"event": "challenge", "api_key": self.parent.signer.api_key})

    def _on_challenge(self, challenge: Optional[str]) -> None:
        if not challenge:
            raise ProtocolError("Empty challenge")
        self._challenge = challenge
        self._signed_challenge = self.parent.signer.sign_challenge(challenge)
        self.registry.replay()

    def _on_closed(self) -> None:
        self._challenge = ""
        self._signed_challenge = ""

    def _credentials(self) -> Dict[str, str]:
        return {
            "api_key": self.parent.signer.api_key,
            "original_challenge": self._challenge,
            "signed_challenge": self._signed_challenge,
        }

    def _send_subscribe(self, topics: List[Topic]) -> None:
        if not self.is_authenticated:
            logger.debug("Challenge not signed yet, subscribe deferred")
            return
        for topic in topics:
            self.send({"event": "subscribe", "feed": topic.feed.value, **self._credentials()})

    def _send_unsubscribe(self, topics: List[Topic]) -> None:
        for topic in topics:
            self.send({"event": "unsubscribe", "feed": topic.feed.value, **self._credentials()})

    def _send_ping(self) -> None:
        self.send({"event": "ping"})

    def _on_control(self, message: Dict[str, Any]) -> bool:
        event = message.get("event")
        if event is None:
            return False

        if event == "alert" and message.get("message") == PONG_MESSAGE:
            self.heartbeat.pong()
        elif event == "challenge":
            self._on_challenge(message.get("message"))
        elif event == "subscribed":
            self._mark_ready()
        elif event in ("error", "subscribed_failed", "alert"):
            auth_failed = self.state is SessionState.AUTHENTICATING
            self._report(message, "authenticationError" if auth_failed else None)
        else:
            logger.debug(f"Kraken private event: {event}")
        return True

    # --------------------------------------------------------
    # FEEDS
    # --------------------------------------------------------

    def _handle_open_orders_snapshot(self, data: Dict[str, Any]) -> None:
        orders = (self.parent.map_order(o) for o in data.get("orders") or [])
        self.store.update(orders=[order for order in orders if order is not None])

    def _handle_open_orders(self, data: Dict[str, Any]) -> None:
        is_cancel = bool(data.get("is_cancel"))

        if data.get("order"):
            order = self.parent.map_order(data["order"], is_cancel=is_cancel)
            if order is None:
                return
            previous = self._stored_order(order.id)

            if order.status is OrderStatus.CANCELED:
                self.store.remove_orders([order])
            elif order.status is OrderStatus.CLOSED:
                self.store.remove_orders([order])
                self._emit_fill(order, previous)
            else:
                self.store.add_or_update_orders([order])
                self._emit_fill(order, previous)

        elif data.get("order_id") and is_cancel:
            order = self._stored_order(data["order_id"])
            if order is None:
                return
            self.store.remove_orders([order])
            if data.get("reason") == "full_fill" and order.remaining > 0:
                self._publish_fill(order, order.remaining)

    def _stored_order(self, order_id: str) -> Optional[Order]:
        return next((o for o in self.store.orders if o.id == order_id), None)

    def _emit_fill(self, order: Order, previous: Optional[Order]) -> None:
        amount = order.filled - (previous.filled if previous else 0)
        if amount > 0:
            self._publish_fill(order, amount)

    def _publish_fill(self, order: Order, amount) -> None:
        self.emitter.emit("fill", FillEvent(
            symbol=order.symbol,
            side=order.side,
            price=order.price,
            amount=amount,
        ))

    def _handle_open_positions(self, data: Dict[str, Any]) -> None:
        positions = (self.parent.map_position(p) for p in data.get("positions") or [])
        self.store.update(positions=[p for p in positions if p is not None])

    def _handle_balances(self, data: Dict[str, Any]) -> None:
        flex = data.get("flex_futures")
        if not flex:
            return
        self.store.update(balance=Balance(
            total=round_usd(flex.get("balance_value")),
            free=round_usd(flex.get("available_margin")),
            used=round_usd(flex.get("initial_margin")),
            upnl=round_usd(flex.get("total_unrealized")),
        ))
