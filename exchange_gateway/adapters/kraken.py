"""
Exchange Gateway - Kraken Futures Adapter.

============================================================
PURPOSE
============================================================
Adapter for Kraken Futures multi-collateral linear
perpetuals (`PF_*` instruments).

- REST: 3 requests/second, `Authent` signing, 5000 ms timeout
- Public stream: tickers and order books
- Private stream: orders, positions, balances

============================================================
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..config import RateLimitConfig
from ..errors import ExchangeError, ExchangeException, map_kraken_error
from ..http_client import RateLimitedHttpClient
from ..orderbook import to_decimal
from ..signing import KrakenFuturesSigner
from ..types import (
    Account,
    Balance,
    Candle,
    Market,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    Ticker,
)
from .base import BaseExchange, PlaceOrderRequest, adjust, has_credentials, round_usd
from .kraken_ws import KrakenPrivateWebSocket, KrakenPublicWebSocket


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BASE_URL = {
    "livenet": "https://futures.kraken.com",
    "testnet": "https://demo-futures.kraken.com",
}

ENDPOINTS = {
    "MARKETS": "/derivatives/api/v3/instruments",
    "ACCOUNT": "/derivatives/api/v3/subaccounts",
    "TICKERS": "/derivatives/api/v3/tickers",
    "BALANCE": "/derivatives/api/v3/accounts",
    "POSITIONS": "/derivatives/api/v3/openpositions",
    "ORDERS": "/derivatives/api/v3/openorders",
    "CANCEL_ALL_ORDERS": "/derivatives/api/v3/cancelallorders",
    "KLINE": "/api/charts/v1",
    "PLACE_ORDER": "/derivatives/api/v3/sendorder",
    "BATCH_ORDER": "/derivatives/api/v3/batchorder",
}

PUBLIC_ENDPOINTS = (
    ENDPOINTS["MARKETS"],
    ENDPOINTS["TICKERS"],
    ENDPOINTS["KLINE"],
)

REQUESTS_PER_SECOND = 3.0

INVALID_CREDENTIALS = "Invalid API key, secret or passphrase"

ORDER_STATUS = {
    "untouched": OrderStatus.OPEN,
    "partiallyFilled": OrderStatus.OPEN,
    "filled": OrderStatus.CLOSED,
    "cancelled": OrderStatus.CANCELED,
}

ORDER_TYPE = {
    "lmt": OrderType.LIMIT,
    "limit": OrderType.LIMIT,
    "mkt": OrderType.MARKET,
    "market": OrderType.MARKET,
    "stp": OrderType.STOP_LOSS,
    "stop": OrderType.STOP_LOSS,
    "take_profit": OrderType.TAKE_PROFIT,
}

ORDER_TYPE_WIRE = {
    OrderType.LIMIT: "lmt",
    OrderType.MARKET: "mkt",
    OrderType.STOP_LOSS: "stp",
    OrderType.TAKE_PROFIT: "take_profit",
}

POSITION_SIDE = {
    "long": PositionSide.LONG,
    "short": PositionSide.SHORT,
}


def normalize_symbol(product_id: Optional[str]) -> str:
    """`PF_XBTUSD` -> `XBTUSD`."""
    if not product_id:
        return ""
    return product_id.replace("PF_", "")


def reverse_symbol(symbol: str) -> str:
    """`XBTUSD` -> `PF_XBTUSD`."""
    return f"PF_{symbol}"


def detect_kraken_error(status: int, payload: Any) -> Optional[ExchangeError]:
    """Kraken reports failures as `result: "error"`, often with HTTP 200."""
    if isinstance(payload, dict) and payload.get("result") == "error":
        code = payload.get("error") or "unknown"
        return map_kraken_error(str(code), str(code), status)
    if not 200 <= status < 300:
        code = payload.get("error") if isinstance(payload, dict) else None
        return map_kraken_error(str(code or status), str(payload), status)
    return None


# ============================================================
# KRAKEN EXCHANGE
# ============================================================

class KrakenExchange(BaseExchange):
    """
    Kraken Futures exchange adapter.
    """

    EXCHANGE_ID = "kraken"

    def _create_client(self, http_session) -> RateLimitedHttpClient:
        signer = None
        if has_credentials(self._config):
            signer = KrakenFuturesSigner(self._config.api_key, self._config.api_secret)

        rate_limit = self._config.rate_limit
        if rate_limit.requests_per_second > REQUESTS_PER_SECOND:
            rate_limit = RateLimitConfig(requests_per_second=REQUESTS_PER_SECOND)

        return RateLimitedHttpClient(
            self.EXCHANGE_ID,
            BASE_URL["testnet" if self._config.testnet else "livenet"],
            signer=signer,
            rate_limit=rate_limit,
            timeout=self._config.timeout,
            public_paths=PUBLIC_ENDPOINTS,
            error_detector=detect_kraken_error,
            metrics=self.metrics,
            session=http_session,
        )

    def _create_public_session(self, transport_factory) -> KrakenPublicWebSocket:
        return KrakenPublicWebSocket(self, transport_factory)

    def _create_private_session(self, transport_factory) -> KrakenPrivateWebSocket:
        return KrakenPrivateWebSocket(self, transport_factory)

    @property
    def signer(self) -> Optional[KrakenFuturesSigner]:
        return self.xhr.signer

    # --------------------------------------------------------
    # STARTUP
    # --------------------------------------------------------

    async def start(self) -> None:
        """
        Initial load, in order: markets, tickers, balance and
        positions, then streams, then open orders.
        """
        self._bind_loop(asyncio.get_running_loop())
        markets = await self.fetch_markets()
        if self._disposed:
            return
        self.store.update(markets=markets, loaded={"markets": True})

        tickers = await self.fetch_tickers()
        if self._disposed:
            return
        logger.info(f"Loaded {min(len(tickers), len(markets))} Kraken markets")
        self.store.update(tickers=tickers, loaded={"tickers": True})

        if self.xhr.signer is not None:
            balance, positions = await asyncio.gather(
                self.fetch_balance(),
                self.fetch_positions(),
            )
            if self._disposed:
                return
            self.store.update(
                balance=balance,
                positions=positions,
                loaded={"balance": True, "positions": True},
            )

        self.connect_and_subscribe()
        logger.info("Ready to trade on Kraken")

        if self.xhr.signer is not None:
            orders = await self.fetch_orders()
            if self._disposed:
                return
            logger.info(f"Loaded {len(orders)} open orders")
            self.store.update(orders=orders, loaded={"orders": True})

    # --------------------------------------------------------
    # FETCHING
    # --------------------------------------------------------

    async def fetch_markets(self) -> List[Market]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["MARKETS"]), None)
        if data is None:
            return self.store.markets

        markets = []
        for m in data.get("instruments", []):
            if m.get("type") != "flexible_futures":
                continue

            symbol = normalize_symbol(m["symbol"])
            min_size = (
                Decimal(10) ** -int(m.get("contractValueTradePrecision", 0))
                * to_decimal(m.get("contractSize", 1))
            )
            max_size = m.get("maxPositionSize")

            markets.append(Market(
                id=m["symbol"],
                symbol=symbol,
                base=symbol.split("USD")[0],
                quote="USD",
                active=bool(m.get("tradeable", True)),
                price_precision=to_decimal(m.get("tickSize", 0)),
                amount_precision=min_size,
                min_amount=min_size,
                max_amount=to_decimal(max_size) if max_size is not None else None,
            ))

        return markets

    async def fetch_tickers(self) -> List[Ticker]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["TICKERS"]), None)
        if data is None:
            return self.store.tickers

        tickers = []
        for t in data.get("tickers", []):
            market = self.store.market_by_symbol(normalize_symbol(t.get("symbol")))
            if market is None:
                continue

            last = to_decimal(t.get("last", 0))
            quote_volume = to_decimal(t.get("volumeQuote", 0))
            tickers.append(Ticker(
                id=market.id,
                symbol=market.symbol,
                bid=to_decimal(t.get("bid", 0)),
                ask=to_decimal(t.get("ask", 0)),
                last=last,
                mark=to_decimal(t.get("markPrice", 0)),
                index=to_decimal(t.get("indexPrice", 0)),
                percentage=to_decimal(t.get("change24h", 0)),
                funding_rate=to_decimal(t.get("fundingRate", 0)),
                volume=quote_volume * last,
                quote_volume=quote_volume,
                open_interest=to_decimal(t.get("openInterest", 0)),
            ))

        return tickers

    async def fetch_balance(self) -> Balance:
        data = await self._guarded(self.xhr.get(ENDPOINTS["BALANCE"]), None)
        if data is None:
            return self.store.balance

        flex = (data.get("accounts") or {}).get("flex") or {}
        return Balance(
            total=round_usd(flex.get("balanceValue")),
            free=round_usd(flex.get("availableMargin")),
            used=round_usd(flex.get("initialMargin")),
            upnl=round_usd(flex.get("totalUnrealized")),
        )

    async def fetch_positions(self) -> List[Position]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["POSITIONS"]), None)
        if data is None:
            return self.store.positions

        positions = []
        for p in data.get("openPositions", []):
            symbol = normalize_symbol(p.get("symbol"))
            market = self.store.market_by_symbol(symbol)
            ticker = self.store.ticker_by_id(reverse_symbol(symbol))
            if market is None or ticker is None:
                continue

            entry_price = adjust(p["price"], market.price_precision)
            size = to_decimal(p["size"])
            side = POSITION_SIDE[p["side"]]
            mark = ticker.mark

            if side is PositionSide.LONG:
                pnl = (mark - entry_price) * size
            else:
                pnl = (entry_price - mark) * size

            positions.append(Position(
                symbol=symbol,
                side=side,
                entry_price=entry_price,
                contracts=size,
                notional=round_usd(size * mark),
                unrealized_pnl=round_usd(pnl),
            ))

        return positions

    async def fetch_orders(self) -> List[Order]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["ORDERS"]), None)
        if data is None:
            return []

        orders = (self.map_order(o) for o in data.get("openOrders", []))
        return [order for order in orders if order is not None]

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_account(self) -> Account:
        """Account identity (`masterAccountUid`). Empty on failure."""
        data = await self._guarded(self.xhr.get(ENDPOINTS["ACCOUNT"]), None)
        if data is None:
            return Account()
        return Account(user_id=data.get("masterAccountUid") or "")

    async def validate_account(self) -> str:
        """
        Check the configured credentials against the account endpoint.

        Returns:
            Empty string when valid, otherwise the reason
        """
        if self.xhr.signer is None:
            return INVALID_CREDENTIALS
        try:
            await self.xhr.get(ENDPOINTS["ACCOUNT"])
        except ExchangeException as e:
            return e.error.exchange_code or INVALID_CREDENTIALS
        return ""

    async def fetch_ohlcv(self, symbol: str, interval: str) -> List[Candle]:
        """
        Fetch trade candles, oldest first.

        Args:
            symbol: Normalized symbol (`XBTUSD`)
            interval: Chart resolution (`1m`, `1h`, `1d`, ...)
        """
        if self.store.market_by_symbol(symbol) is None:
            self._emit_error(map_kraken_error("contractNotFound", f"Market {symbol} not found"))
            return []

        path = f"{ENDPOINTS['KLINE']}/trade/{reverse_symbol(symbol)}/{interval}"
        data = await self._guarded(self.xhr.get(path), None)
        if data is None:
            return []

        candles = [
            Candle(
                timestamp=c["time"] / 1000,
                open=to_decimal(c["open"]),
                high=to_decimal(c["high"]),
                low=to_decimal(c["low"]),
                close=to_decimal(c["close"]),
                volume=to_decimal(c["volume"]),
            )
            for c in data.get("candles", [])
        ]
        candles.sort(key=lambda candle: candle.timestamp)
        return candles

    # --------------------------------------------------------
    # MAPPING
    # --------------------------------------------------------

    def map_order(self, o: Dict[str, Any], is_cancel: bool = False) -> Optional[Order]:
        """
        Map a REST or websocket order to an Order.

        Returns None for orders on unknown markets.
        """
        symbol = normalize_symbol(o.get("symbol") or o.get("instrument"))
        if self.store.market_by_symbol(symbol) is None:
            return None

        side_value = o.get("side")
        if side_value is None:
            side_value = "buy" if o.get("direction") == 0 else "sell"
        side = OrderSide(side_value)

        type_value = o.get("orderType") or o.get("type")
        order_type = ORDER_TYPE.get(type_value, OrderType.LIMIT)

        if order_type in (OrderType.STOP_LOSS, OrderType.TAKE_PROFIT):
            price = o.get("stopPrice") or o.get("stop_price") or 0
        else:
            price = o.get("limitPrice") or o.get("limit_price") or 0

        amount = to_decimal(o.get("qty") or o.get("unfilledSize") or 0)
        filled = to_decimal(o.get("filled") or o.get("filledSize") or 0)

        status = ORDER_STATUS.get(o.get("status"))
        if status is None:
            if is_cancel or o.get("is_cancel"):
                status = OrderStatus.CANCELED
            elif amount > 0 and filled == amount:
                status = OrderStatus.CLOSED
            else:
                status = OrderStatus.OPEN

        return Order(
            id=o["order_id"],
            symbol=symbol,
            type=order_type,
            side=side,
            price=to_decimal(price),
            amount=amount,
            status=status,
            filled=filled,
            remaining=amount - filled,
            reduce_only=bool(o.get("reduceOnly") or o.get("reduce_only") or False),
        )

    def map_position(self, p: Dict[str, Any]) -> Optional[Position]:
        """Map a websocket `open_positions` entry. None for unknown markets."""
        symbol = normalize_symbol(p.get("instrument"))
        market = self.store.market_by_symbol(symbol)
        if market is None:
            logger.debug(f"Market {symbol} not found on Kraken")
            return None

        balance = to_decimal(p["balance"])
        size = abs(balance)
        mark = to_decimal(p.get("mark_price", 0))

        liquidation = p.get("liquidation_threshold")
        return Position(
            symbol=symbol,
            side=PositionSide.LONG if balance >= 0 else PositionSide.SHORT,
            entry_price=adjust(p["entry_price"], market.price_precision),
            contracts=size,
            notional=round_usd(size * mark),
            unrealized_pnl=round_usd(p.get("pnl")),
            leverage=round_usd(p.get("effective_leverage")),
            liquidation_price=(
                adjust(liquidation, market.price_precision) if liquidation else Decimal("0")
            ),
        )

    # --------------------------------------------------------
    # TRADING
    # --------------------------------------------------------

    async def place_order(self, request: PlaceOrderRequest) -> List[str]:
        """
        Place an order.

        Orders with attached stop loss / take profit go through a
        single batch so the legs are accepted together.

        Returns:
            Exchange order ids of the placed legs
        """
        if request.type is not OrderType.MARKET and (request.stop_loss or request.take_profit):
            return await self.place_orders([request])

        market = self._require_market(request.symbol)
        order_req = {
            "orderType": ORDER_TYPE_WIRE[request.type],
            "symbol": market.id,
            "side": request.side.value,
            "size": adjust(request.amount, market.amount_precision),
            "limitPrice": (
                adjust(request.price, market.price_precision) if request.price else None
            ),
            "reduceOnly": request.reduce_only or None,
        }

        data = await self._guarded(self.xhr.post(ENDPOINTS["PLACE_ORDER"], order_req), None)
        if data is None:
            return []

        send_status = data.get("sendStatus") or {}
        if send_status.get("status") != "placed":
            self._emit_error(map_kraken_error(str(send_status.get("status"))))
            return []
        return [send_status["order_id"]]

    async def place_orders(self, requests: List[PlaceOrderRequest]) -> List[str]:
        """Place several orders (with attached legs) in one batch."""
        batch = []
        for request in requests:
            market = self._require_market(request.symbol)
            size = adjust(request.amount, market.amount_precision)
            opposite = OrderSide.SELL if request.side is OrderSide.BUY else OrderSide.BUY

            batch.append(_compact({
                "order": "send",
                "order_tag": "baseOrder",
                "symbol": market.id,
                "orderType": ORDER_TYPE_WIRE[request.type],
                "side": request.side.value,
                "size": size,
                "limitPrice": (
                    adjust(request.price, market.price_precision) if request.price else None
                ),
                "reduceOnly": request.reduce_only or None,
            }))

            for tag, order_type, trigger in (
                ("stopLossOrder", "stp", request.stop_loss),
                ("takeProfitOrder", "take_profit", request.take_profit),
            ):
                if not trigger:
                    continue
                batch.append({
                    "order": "send",
                    "order_tag": tag,
                    "symbol": market.id,
                    "orderType": order_type,
                    "side": opposite.value,
                    "size": size,
                    "stopPrice": adjust(trigger, market.price_precision),
                    "reduceOnly": True,
                })

        data = await self._guarded(self._batch(batch), None)
        if data is None:
            return []

        order_ids = []
        for status in data.get("batchStatus", []):
            if status.get("status") == "placed":
                order_ids.append(status["order_id"])
            else:
                self._emit_error(map_kraken_error(str(status.get("status"))))
        return order_ids

    async def cancel_orders(self, orders: List[Order]) -> None:
        """Cancel orders in one batch."""
        if not orders:
            return
        batch = [{"order": "cancel", "order_id": order.id} for order in orders]
        await self._guarded(self._batch(batch), None)

    async def cancel_all_orders(self) -> None:
        await self._guarded(self.xhr.post(ENDPOINTS["CANCEL_ALL_ORDERS"]), None)

    async def cancel_symbol_orders(self, symbol: str) -> None:
        await self._guarded(
            self.xhr.post(ENDPOINTS["CANCEL_ALL_ORDERS"], {"symbol": reverse_symbol(symbol)}),
            None,
        )

    async def _batch(self, batch: List[Dict[str, Any]]) -> Any:
        payload = json.dumps({"batchOrder": batch}, default=lambda value: format(value, "f"))
        return await self.xhr.post(ENDPOINTS["BATCH_ORDER"], data=f"json={quote(payload, safe='')}")

    def _require_market(self, symbol: str) -> Market:
        market = self.store.market_by_symbol(symbol)
        if market is None:
            raise ValueError(f"Market not found: {symbol}")
        return market


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}
