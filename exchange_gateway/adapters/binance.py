"""
Exchange Gateway - Binance Futures Adapter.

============================================================
PURPOSE
============================================================
Adapter for Binance USD-M Futures.

- REST: HMAC SHA256 signing, X-MBX-APIKEY header
- Public stream: partial depth snapshots
- User data stream: listen key, renewed on a timer

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, List

from ..http_client import RateLimitedHttpClient
from ..orderbook import to_decimal
from ..signing import BinanceSigner
from ..types import (
    Balance,
    Market,
    Order,
    OrderSide,
    OrderType,
    Position,
    PositionSide,
    Ticker,
)
from .base import BaseExchange, PlaceOrderRequest, adjust, has_credentials, round_usd
from .binance_ws import BinancePublicWebSocket, BinanceUserDataStream


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BASE_URL = {
    "livenet": "https://fapi.binance.com",
    "testnet": "https://testnet.binancefuture.com",
}

ENDPOINTS = {
    "PING": "/fapi/v1/ping",
    "MARKETS": "/fapi/v1/exchangeInfo",
    "TICKERS": "/fapi/v1/ticker/24hr",
    "BOOK_TICKERS": "/fapi/v1/ticker/bookTicker",
    "PREMIUM_INDEX": "/fapi/v1/premiumIndex",
    "ACCOUNT": "/fapi/v2/account",
    "POSITIONS": "/fapi/v2/positionRisk",
    "OPEN_ORDERS": "/fapi/v1/openOrders",
    "ORDER": "/fapi/v1/order",
    "CANCEL_SYMBOL_ORDERS": "/fapi/v1/allOpenOrders",
    "LISTEN_KEY": "/fapi/v1/listenKey",
}

PUBLIC_ENDPOINTS = (
    ENDPOINTS["PING"],
    ENDPOINTS["MARKETS"],
    ENDPOINTS["TICKERS"],
    ENDPOINTS["BOOK_TICKERS"],
    ENDPOINTS["PREMIUM_INDEX"],
)

KEY_ONLY_ENDPOINTS = (
    ENDPOINTS["LISTEN_KEY"],
)

ORDER_TYPE = {
    "LIMIT": OrderType.LIMIT,
    "MARKET": OrderType.MARKET,
    "STOP_MARKET": OrderType.STOP_LOSS,
    "TAKE_PROFIT_MARKET": OrderType.TAKE_PROFIT,
}

ORDER_TYPE_WIRE = {value: key for key, value in ORDER_TYPE.items()}

ORDER_SIDE = {
    "BUY": OrderSide.BUY,
    "SELL": OrderSide.SELL,
}

POSITION_SIDE = {
    "LONG": PositionSide.LONG,
    "SHORT": PositionSide.SHORT,
}


def _filters(symbol_info: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {f["filterType"]: f for f in symbol_info.get("filters", [])}


# ============================================================
# BINANCE EXCHANGE
# ============================================================

class BinanceExchange(BaseExchange):
    """
    Binance USD-M Futures exchange adapter.
    """

    EXCHANGE_ID = "binance"

    def _create_client(self, http_session) -> RateLimitedHttpClient:
        signer = None
        if has_credentials(self._config):
            signer = BinanceSigner(self._config.api_key, self._config.api_secret)

        return RateLimitedHttpClient(
            self.EXCHANGE_ID,
            BASE_URL["testnet" if self._config.testnet else "livenet"],
            signer=signer,
            rate_limit=self._config.rate_limit,
            timeout=self._config.timeout,
            public_paths=PUBLIC_ENDPOINTS,
            key_only_paths=KEY_ONLY_ENDPOINTS,
            metrics=self.metrics,
            session=http_session,
        )

    def _create_public_session(self, transport_factory) -> BinancePublicWebSocket:
        return BinancePublicWebSocket(self, transport_factory)

    def _create_private_session(self, transport_factory) -> BinanceUserDataStream:
        return BinanceUserDataStream(self, transport_factory)

    # --------------------------------------------------------
    # STARTUP
    # --------------------------------------------------------

    async def start(self) -> None:
        """Load markets, tickers and account state, then connect."""
        self._bind_loop(asyncio.get_running_loop())
        markets = await self.fetch_markets()
        if self._disposed:
            return
        self.store.update(markets=markets, loaded={"markets": True})

        tickers = await self.fetch_tickers()
        if self._disposed:
            return
        logger.info(f"Loaded {len(markets)} Binance markets")
        self.store.update(tickers=tickers, loaded={"tickers": True})

        if self.xhr.signer is not None:
            balance, positions, orders = await asyncio.gather(
                self.fetch_balance(),
                self.fetch_positions(),
                self.fetch_orders(),
            )
            if self._disposed:
                return
            self.store.update(
                balance=balance,
                positions=positions,
                orders=orders,
                loaded={"balance": True, "positions": True, "orders": True},
            )

        self.connect_and_subscribe()
        logger.info("Ready to trade on Binance")

    # --------------------------------------------------------
    # FETCHING
    # --------------------------------------------------------

    async def fetch_markets(self) -> List[Market]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["MARKETS"]), None)
        if data is None:
            return self.store.markets

        markets = []
        for s in data.get("symbols", []):
            if s.get("contractType") != "PERPETUAL":
                continue

            filters = _filters(s)
            price_filter = filters.get("PRICE_FILTER", {})
            lot_size = filters.get("LOT_SIZE", {})
            max_qty = lot_size.get("maxQty")

            markets.append(Market(
                id=s["symbol"],
                symbol=s["symbol"],
                base=s["baseAsset"],
                quote=s["quoteAsset"],
                active=s.get("status") == "TRADING",
                price_precision=to_decimal(price_filter.get("tickSize", 0)),
                amount_precision=to_decimal(lot_size.get("stepSize", 0)),
                min_amount=to_decimal(lot_size.get("minQty", 0)),
                max_amount=to_decimal(max_qty) if max_qty is not None else None,
            ))

        return markets

    async def fetch_tickers(self) -> List[Ticker]:
        results = await asyncio.gather(
            self._guarded(self.xhr.get(ENDPOINTS["TICKERS"]), None),
            self._guarded(self.xhr.get(ENDPOINTS["BOOK_TICKERS"]), []),
            self._guarded(self.xhr.get(ENDPOINTS["PREMIUM_INDEX"]), []),
        )
        daily, books, premiums = results
        if daily is None:
            return self.store.tickers

        books_by_symbol = {b["symbol"]: b for b in books}
        premiums_by_symbol = {p["symbol"]: p for p in premiums}

        tickers = []
        for t in daily:
            market = self.store.market_by_id(t["symbol"])
            if market is None:
                continue

            book = books_by_symbol.get(market.id, {})
            premium = premiums_by_symbol.get(market.id, {})
            tickers.append(Ticker(
                id=market.id,
                symbol=market.symbol,
                bid=to_decimal(book.get("bidPrice", 0)),
                ask=to_decimal(book.get("askPrice", 0)),
                last=to_decimal(t.get("lastPrice", 0)),
                mark=to_decimal(premium.get("markPrice", 0)),
                index=to_decimal(premium.get("indexPrice", 0)),
                percentage=to_decimal(t.get("priceChangePercent", 0)),
                funding_rate=to_decimal(premium.get("lastFundingRate", 0)),
                volume=to_decimal(t.get("volume", 0)),
                quote_volume=to_decimal(t.get("quoteVolume", 0)),
            ))

        return tickers

    async def fetch_balance(self) -> Balance:
        data = await self._guarded(self.xhr.get(ENDPOINTS["ACCOUNT"]), None)
        if data is None:
            return self.store.balance

        return Balance(
            total=round_usd(data.get("totalMarginBalance")),
            free=round_usd(data.get("availableBalance")),
            used=round_usd(data.get("totalInitialMargin")),
            upnl=round_usd(data.get("totalUnrealizedProfit")),
        )

    async def fetch_positions(self) -> List[Position]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["POSITIONS"]), None)
        if data is None:
            return self.store.positions

        positions = []
        for p in data:
            contracts = to_decimal(p["positionAmt"])
            if contracts == 0:
                continue

            side = POSITION_SIDE.get(p.get("positionSide"))
            if side is None:
                side = PositionSide.LONG if contracts > 0 else PositionSide.SHORT

            positions.append(Position(
                symbol=p["symbol"],
                side=side,
                entry_price=to_decimal(p["entryPrice"]),
                contracts=abs(contracts),
                notional=round_usd(abs(to_decimal(p.get("notional", 0)))),
                unrealized_pnl=round_usd(p.get("unRealizedProfit")),
                leverage=to_decimal(p.get("leverage", 0)),
                liquidation_price=to_decimal(p.get("liquidationPrice", 0)),
            ))

        return positions

    async def fetch_orders(self) -> List[Order]:
        data = await self._guarded(self.xhr.get(ENDPOINTS["OPEN_ORDERS"]), None)
        if data is None:
            return []
        return [self.map_order(o) for o in data]

    def map_order(self, o: Dict[str, Any]) -> Order:
        """Map a REST order to an Order."""
        amount = to_decimal(o["origQty"])
        filled = to_decimal(o.get("executedQty", 0))
        price = to_decimal(o.get("price", 0)) or to_decimal(o.get("stopPrice", 0))

        return Order(
            id=str(o["orderId"]),
            symbol=o["symbol"],
            type=ORDER_TYPE.get(o.get("type"), OrderType.LIMIT),
            side=ORDER_SIDE[o["side"]],
            price=price,
            amount=amount,
            filled=filled,
            remaining=amount - filled,
            reduce_only=bool(o.get("reduceOnly", False)),
        )

    def map_stream_order(self, o: Dict[str, Any]) -> Order:
        """Map the `o` object of an ORDER_TRADE_UPDATE event to an Order."""
        amount = to_decimal(o["q"])
        filled = to_decimal(o.get("z", 0))
        price = to_decimal(o.get("p", 0)) or to_decimal(o.get("sp", 0))

        return Order(
            id=str(o["i"]),
            symbol=o["s"],
            type=ORDER_TYPE.get(o.get("o"), OrderType.LIMIT),
            side=ORDER_SIDE[o["S"]],
            price=price,
            amount=amount,
            filled=filled,
            remaining=amount - filled,
            reduce_only=bool(o.get("R", False)),
        )

    # --------------------------------------------------------
    # TRADING
    # --------------------------------------------------------

    async def place_order(self, request: PlaceOrderRequest) -> List[str]:
        """
        Place an order and its attached stop loss / take profit legs.

        Returns:
            Exchange order ids of the placed legs
        """
        market = self.store.market_by_symbol(request.symbol)
        if market is None:
            raise ValueError(f"Market not found: {request.symbol}")

        quantity = adjust(request.amount, market.amount_precision)
        params: Dict[str, Any] = {
            "symbol": market.id,
            "side": request.side.value.upper(),
            "type": ORDER_TYPE_WIRE[request.type],
            "quantity": quantity,
            "reduceOnly": request.reduce_only or None,
        }
        if request.type is OrderType.LIMIT:
            params["price"] = adjust(request.price, market.price_precision)
            params["timeInForce"] = "GTC"
        elif request.type in (OrderType.STOP_LOSS, OrderType.TAKE_PROFIT):
            params["stopPrice"] = adjust(request.price, market.price_precision)

        legs = [params]
        opposite = "SELL" if request.side is OrderSide.BUY else "BUY"
        for order_type, trigger in (
            (OrderType.STOP_LOSS, request.stop_loss),
            (OrderType.TAKE_PROFIT, request.take_profit),
        ):
            if trigger:
                legs.append({
                    "symbol": market.id,
                    "side": opposite,
                    "type": ORDER_TYPE_WIRE[order_type],
                    "quantity": quantity,
                    "stopPrice": adjust(trigger, market.price_precision),
                    "reduceOnly": True,
                })

        order_ids = []
        for leg in legs:
            data = await self._guarded(self.xhr.post(ENDPOINTS["ORDER"], leg), None)
            if data is None:
                # Do not attach protection legs to an order that failed
                if leg is params:
                    return []
                continue
            order_ids.append(str(data["orderId"]))
        return order_ids

    async def cancel_orders(self, orders: List[Order]) -> None:
        await asyncio.gather(*(
            self._guarded(
                self.xhr.delete(ENDPOINTS["ORDER"], {"symbol": order.symbol, "orderId": order.id}),
                None,
            )
            for order in orders
        ))

    async def cancel_symbol_orders(self, symbol: str) -> None:
        await self._guarded(
            self.xhr.delete(ENDPOINTS["CANCEL_SYMBOL_ORDERS"], {"symbol": symbol}),
            None,
        )

    async def cancel_all_orders(self) -> None:
        for symbol in self._symbols_with_orders():
            await self.cancel_symbol_orders(symbol)

    # --------------------------------------------------------
    # USER DATA STREAM
    # --------------------------------------------------------

    async def create_listen_key(self) -> str:
        """
        Create (or fetch the active) listen key.

        Raises:
            ExchangeException: If the request fails
        """
        data = await self.xhr.post(ENDPOINTS["LISTEN_KEY"])
        return data["listenKey"]

    async def renew_listen_key(self) -> None:
        """
        Extend the listen key's validity.

        Raises:
            ExchangeException: If the request fails
        """
        await self.xhr.put(ENDPOINTS["LISTEN_KEY"])

