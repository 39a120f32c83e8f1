"""
Exchange Gateway - Binance Futures Streaming Sessions.

============================================================
PURPOSE
============================================================
Public depth stream and private user data stream of Binance
USD-M Futures.

PUBLIC:
- <symbol>@depth20@100ms partial books, each one a snapshot
- {"method": "SUBSCRIBE", "params": [...], "id": n}
- ack {"result": null, "id": n} => READY

USER DATA:
- URL carries a listen key obtained over REST
- key renewed every `listen_key_renewal_ms`; a failed renewal
  is reported on `error` and the stream keeps running
- listenKeyExpired drops the connection; the reconnect fetches
  a fresh key

============================================================
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import ExchangeException, ProtocolError, map_binance_error
from ..orderbook import to_decimal
from ..types import Balance, FeedKind, FillEvent, Position, PositionSide, Topic
from ..websocket_base import StreamingSession, TransportFactory
from .base import round_usd

if TYPE_CHECKING:
    from .binance import BinanceExchange


logger = logging.getLogger(__name__)


WS_URL = {
    "livenet": "wss://fstream.binance.com/ws",
    "testnet": "wss://stream.binancefuture.com/ws",
}

STREAM_NAMES = {
    FeedKind.BOOK: "{}@depth20@100ms",
    FeedKind.TICKER: "{}@ticker",
}

OPEN_STATUSES = ("NEW", "PARTIALLY_FILLED")
FILL_STATUSES = ("PARTIALLY_FILLED", "FILLED")

QUOTE_ASSET = "USDT"

HEDGE_SIDES = {
    "LONG": PositionSide.LONG,
    "SHORT": PositionSide.SHORT,
}


def _stream_name(topic: Topic) -> str:
    return STREAM_NAMES[topic.feed].format(topic.product_id.lower())


def _symbol_of(data: Dict[str, Any]) -> str:
    symbol = data.get("s")
    if not symbol:
        raise ProtocolError(f"Missing symbol in {data.get('e')} message")
    return symbol


class _BinanceSession(StreamingSession):
    """Shared Binance plumbing."""

    EXCHANGE_ID = "binance"

    def __init__(self, parent: "BinanceExchange", transport_factory: Optional[TransportFactory] = None):
        super().__init__(parent.context, parent.config, transport_factory)
        self.parent = parent

    @property
    def _base_url(self) -> str:
        return WS_URL["testnet" if self._config.testnet else "livenet"]

    def _feed_of(self, message: Dict[str, Any]) -> Optional[str]:
        return message.get("e")


# ============================================================
# PUBLIC
# ============================================================

class BinancePublicWebSocket(_BinanceSession):
    """
    Binance Futures public market streams.
    """

    def __init__(self, parent: "BinanceExchange", transport_factory: Optional[TransportFactory] = None):
        super().__init__(parent, transport_factory)
        self._request_id = 0
        self._handlers = {
            "depthUpdate": self._handle_depth,
            "24hrTicker": self._handle_ticker,
        }

    async def _resolve_url(self) -> str:
        return self._base_url

    def _send_subscribe(self, topics: List[Topic]) -> None:
        self._send_method("SUBSCRIBE", topics)

    def _send_unsubscribe(self, topics: List[Topic]) -> None:
        self._send_method("UNSUBSCRIBE", topics)

    def _send_method(self, method: str, topics: List[Topic]) -> None:
        self._request_id += 1
        self.send({
            "method": method,
            "params": [_stream_name(topic) for topic in topics],
            "id": self._request_id,
        })

    def _on_control(self, message: Dict[str, Any]) -> bool:
        if "id" not in message or "e" in message:
            return False

        error = message.get("error")
        if error:
            logger.warning(f"Binance stream request {message['id']} failed: {error}")
            self._emit_error(map_binance_error(error.get("code"), error.get("msg", "")))
        else:
            self._mark_ready()
        return True

    def _handle_depth(self, data: Dict[str, Any]) -> None:
        self.books.apply_snapshot(_symbol_of(data), data.get("b") or [], data.get("a") or [])

    def _handle_ticker(self, data: Dict[str, Any]) -> None:
        ticker = self.store.ticker_by_id(_symbol_of(data))
        if ticker is None:
            return
        self.store.update_ticker(ticker, {
            "last": to_decimal(data["c"]),
            "percentage": to_decimal(data["P"]),
            "volume": to_decimal(data["v"]),
            "quote_volume": to_decimal(data["q"]),
        })


# ============================================================
# USER DATA
# ============================================================

class BinanceUserDataStream(_BinanceSession):
    """
    Binance Futures user data stream (orders, positions, balance).
    """

    REQUIRES_AUTH = True

    def __init__(self, parent: "BinanceExchange", transport_factory: Optional[TransportFactory] = None):
        super().__init__(parent, transport_factory)
        self._renewal_task: Optional[asyncio.Task] = None
        self._handlers = {
            "ORDER_TRADE_UPDATE": self._handle_order_update,
            "ACCOUNT_UPDATE": self._handle_account_update,
            "listenKeyExpired": self._handle_listen_key_expired,
        }

    async def _resolve_url(self) -> str:
        listen_key = await self.parent.create_listen_key()
        if self._renewal_task is None and not self.is_disposed:
            self._renewal_task = asyncio.get_running_loop().create_task(self._renew_listen_key())
        return f"{self._base_url}/{listen_key}"

    def _send_subscribe(self, topics: List[Topic]) -> None:
        """The user data stream is implicitly subscribed."""

    def _send_unsubscribe(self, topics: List[Topic]) -> None:
        """The user data stream is implicitly subscribed."""

    async def _renew_listen_key(self) -> None:
        interval = self._stream.listen_key_renewal_ms / 1000
        while not self.is_disposed:
            await asyncio.sleep(interval)
            try:
                await self.parent.renew_listen_key()
            except ExchangeException as e:
                logger.warning(f"Listen key renewal failed: {e}")
                self._emit_error(e.error)

    def _on_dispose(self) -> None:
        if self._renewal_task is not None:
            self._renewal_task.cancel()
            self._renewal_task = None

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    def _handle_listen_key_expired(self, data: Dict[str, Any]) -> None:
        logger.warning("Listen key expired, reconnecting")
        self._drop_connection()

    def _handle_order_update(self, data: Dict[str, Any]) -> None:
        o = data.get("o") or {}
        status = o.get("X")
        order = self.parent.map_stream_order(o)

        if status in FILL_STATUSES:
            amount = to_decimal(o.get("l", 0))
            if amount > 0:
                price = to_decimal(o.get("L", 0)) or to_decimal(o.get("ap", 0))
                self.emitter.emit("fill", FillEvent(
                    symbol=order.symbol,
                    side=order.side,
                    price=price,
                    amount=amount,
                ))

        if status in OPEN_STATUSES:
            self.store.add_or_update_orders([order])
        else:
            self.store.remove_orders([order])

    def _handle_account_update(self, data: Dict[str, Any]) -> None:
        account = data.get("a") or {}

        updates = account.get("P") or []
        if updates:
            self.store.update(positions=self._merge_positions(updates))

        for b in account.get("B") or []:
            if b.get("a") != QUOTE_ASSET:
                continue
            wallet = to_decimal(b["wb"])
            free = to_decimal(b.get("cw", wallet))
            self.store.update(balance=Balance(
                total=round_usd(wallet),
                free=round_usd(free),
                used=round_usd(wallet - free),
                upnl=self.store.balance.upnl,
            ))

    def _merge_positions(self, updates: List[Dict[str, Any]]) -> List[Position]:
        positions = list(self.store.positions)

        for p in updates:
            symbol = p["s"]
            contracts = to_decimal(p["pa"])

            hedge_side = HEDGE_SIDES.get(p.get("ps"))
            if hedge_side is None:
                # One-way mode: at most one position per symbol
                positions = [x for x in positions if x.symbol != symbol]
                side = PositionSide.LONG if contracts > 0 else PositionSide.SHORT
            else:
                positions = [x for x in positions if not (x.symbol == symbol and x.side is hedge_side)]
                side = hedge_side

            if contracts == 0:
                continue

            entry_price = to_decimal(p["ep"])
            upnl = to_decimal(p.get("up", 0))
            positions.append(Position(
                symbol=symbol,
                side=side,
                entry_price=entry_price,
                contracts=abs(contracts),
                notional=round_usd(abs(contracts) * entry_price + upnl),
                unrealized_pnl=round_usd(upnl),
            ))

        return positions
