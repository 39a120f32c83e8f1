"""
Kraken Futures Adapter Tests.

============================================================
PURPOSE
============================================================
End-to-end adapter flows against an in-memory REST session
and websocket transport.

TEST CATEGORIES:
- REST startup: markets, tickers, balance, positions, orders
- Public stream: tickers and order books
- Private stream: challenge handshake, orders, heartbeat
- Trading: single orders and batches

============================================================
"""

import asyncio
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from exchange_gateway.adapters.base import PlaceOrderRequest
from exchange_gateway.adapters.kraken import KrakenExchange
from exchange_gateway.config import ExchangeConfig
from exchange_gateway.errors import ErrorCategory, ExchangeException, create_network_error
from exchange_gateway.types import OrderSide, OrderType, PositionSide, SessionState


API = "/derivatives/api/v3"

INSTRUMENTS = {
    "result": "success",
    "instruments": [
        {
            "symbol": "PF_XBTUSD",
            "type": "flexible_futures",
            "tickSize": 0.5,
            "contractSize": 1,
            "contractValueTradePrecision": 4,
            "maxPositionSize": 1000000,
            "tradeable": True,
        },
        {"symbol": "PI_XBTUSD", "type": "futures_inverse", "tickSize": 0.5},
    ],
}

TICKERS = {
    "result": "success",
    "tickers": [
        {
            "symbol": "PF_XBTUSD",
            "bid": 49999.5,
            "ask": 50000.5,
            "last": 50000,
            "markPrice": 50000,
            "indexPrice": 49990,
            "change24h": 1.5,
            "fundingRate": 0.0001,
            "volumeQuote": 10,
            "openInterest": 250,
        },
        {"symbol": "PF_UNLISTED", "bid": 1, "ask": 2},
    ],
}

ACCOUNTS = {
    "result": "success",
    "accounts": {
        "flex": {
            "balanceValue": 1000.126,
            "availableMargin": 800,
            "initialMargin": 200,
            "totalUnrealized": -5.5,
        }
    },
}

POSITIONS = {
    "result": "success",
    "openPositions": [
        {"symbol": "PF_XBTUSD", "side": "long", "price": 49000.3, "size": 0.5},
    ],
}

OPEN_ORDERS = {
    "result": "success",
    "openOrders": [
        {
            "order_id": "o-1",
            "symbol": "PF_XBTUSD",
            "side": "buy",
            "orderType": "lmt",
            "limitPrice": 48000,
            "unfilledSize": 1,
            "filledSize": 0,
        },
    ],
}


def make_config(authenticated=True):
    config = ExchangeConfig.for_testing("kraken")
    if not authenticated:
        config = replace(config, api_key="", api_secret="")
    config.stream = replace(config.stream, ping_interval_ms=1000, pong_timeout_ms=1000)
    return config


def route_rest(http_session):
    http_session.route("GET", f"{API}/instruments", INSTRUMENTS)
    http_session.route("GET", f"{API}/tickers", TICKERS)
    http_session.route("GET", f"{API}/accounts", ACCOUNTS)
    http_session.route("GET", f"{API}/openpositions", POSITIONS)
    http_session.route("GET", f"{API}/openorders", OPEN_ORDERS)


def make_exchange(http_session, transport, authenticated=True):
    exchange = KrakenExchange(
        make_config(authenticated),
        http_session=http_session,
        transport_factory=transport,
    )
    errors = []
    fills = []
    exchange.emitter.on("error", errors.append)
    exchange.emitter.on("fill", fills.append)
    return exchange, errors, fills


def socket_sending(transport, event):
    """The socket whose first frame was `event`."""
    for ws in transport.sockets:
        if ws.sent and ws.sent[0].get("event") == event:
            return ws
    return None


async def ready_private(exchange, transport, eventually):
    await eventually(lambda: socket_sending(transport, "challenge") is not None)
    ws = socket_sending(transport, "challenge")
    ws.feed({"event": "challenge", "message": "challenge-uuid"})
    await eventually(lambda: len(ws.events("subscribe")) == 3)
    ws.feed({"event": "subscribed", "feed": "open_orders"})
    await eventually(lambda: exchange.private_ws.is_ready)
    return ws


# ============================================================
# REST STARTUP
# ============================================================

class TestKrakenStartup:
    """Tests for the initial REST load."""

    @pytest.mark.asyncio
    async def test_start_loads_account_state(self, http_session, transport):
        """Test markets, tickers, balance, positions and orders."""
        route_rest(http_session)
        exchange, errors, _ = make_exchange(http_session, transport)

        await exchange.start()
        store = exchange.store

        assert [m.id for m in store.markets] == ["PF_XBTUSD"]
        market = store.markets[0]
        assert market.symbol == "XBTUSD"
        assert market.price_precision == Decimal("0.5")
        assert market.amount_precision == Decimal("0.0001")

        assert [t.id for t in store.tickers] == ["PF_XBTUSD"]
        assert store.tickers[0].mark == Decimal("50000")
        assert store.tickers[0].funding_rate == Decimal("0.0001")

        assert store.balance.total == Decimal("1000.13")
        assert store.balance.upnl == Decimal("-5.50")

        position = store.positions[0]
        assert position.side is PositionSide.LONG
        assert position.entry_price == Decimal("49000.5")
        assert position.notional == Decimal("25000.00")
        assert position.unrealized_pnl == Decimal("499.75")

        assert [o.id for o in store.orders] == ["o-1"]
        assert store.orders[0].price == Decimal("48000")
        assert store.loaded.orders is True
        assert errors == []

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_private_requests_are_signed(self, http_session, transport):
        """Test Authent headers on private endpoints only."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport)

        await exchange.start()

        public = http_session.calls("GET", f"{API}/instruments")[0]
        private = http_session.calls("GET", f"{API}/accounts")[0]
        assert "Authent" not in public.headers
        assert private.headers["APIKey"] == "test-key"
        assert private.headers["Authent"]
        assert int(private.headers["Nonce"]) > 0

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_public_only_skips_account_calls(self, http_session, transport):
        """Test that no private call is made without credentials."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)

        await exchange.start()

        assert exchange.private_ws is None
        assert http_session.calls("GET", f"{API}/accounts") == []
        assert exchange.store.loaded.balance is False

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_rest_error_is_emitted(self, http_session, transport):
        """Test that a failed fetch emits and returns its fallback."""
        route_rest(http_session)
        http_session.route("GET", f"{API}/openorders", {"result": "error", "error": "apiLimitExceeded"})
        exchange, errors, _ = make_exchange(http_session, transport)

        orders = await exchange.fetch_orders()

        assert orders == []
        assert errors[0].category is ErrorCategory.RATE_LIMIT
        assert errors[0].operation == f"{API}/openorders"

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_stored_markets(self, http_session, transport):
        """Test the fallback to the current store on network failure."""
        route_rest(http_session)
        exchange, errors, _ = make_exchange(http_session, transport)
        await exchange.start()
        loaded = exchange.store.markets

        exchange.xhr.get = AsyncMock(
            side_effect=ExchangeException(create_network_error("kraken", "connection reset"))
        )
        markets = await exchange.fetch_markets()

        assert markets is loaded
        assert errors[-1].category is ErrorCategory.NETWORK
        exchange.xhr.get.assert_awaited_once_with("/derivatives/api/v3/instruments")

        await exchange.aclose()


# ============================================================
# ACCOUNT AND CANDLES
# ============================================================

class TestKrakenAccount:
    """Tests for account lookup and OHLCV candles."""

    @pytest.mark.asyncio
    async def test_get_account(self, http_session, transport):
        """Test the master account uid."""
        http_session.route("GET", f"{API}/subaccounts", {"result": "success", "masterAccountUid": "uid-1"})
        exchange, errors, _ = make_exchange(http_session, transport)

        account = await exchange.get_account()

        assert account.user_id == "uid-1"
        assert account.affiliate_id == ""
        assert "Authent" in http_session.calls("GET", f"{API}/subaccounts")[0].headers
        assert errors == []

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_get_account_failure_is_emitted(self, http_session, transport):
        """Test an empty account and an emitted error on failure."""
        http_session.route("GET", f"{API}/subaccounts", {"result": "error", "error": "authenticationError"})
        exchange, errors, _ = make_exchange(http_session, transport)

        account = await exchange.get_account()

        assert account.user_id == ""
        assert errors[0].category is ErrorCategory.AUTHENTICATION

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_validate_account(self, http_session, transport):
        """Test valid, rejected and missing credentials."""
        http_session.route("GET", f"{API}/subaccounts", {"result": "success", "masterAccountUid": "uid-1"})
        exchange, _, _ = make_exchange(http_session, transport)
        assert await exchange.validate_account() == ""

        http_session.route("GET", f"{API}/subaccounts", {"result": "error", "error": "authenticationError"})
        assert await exchange.validate_account() == "authenticationError"
        await exchange.aclose()

        public, _, _ = make_exchange(http_session, transport, authenticated=False)
        assert await public.validate_account() == "Invalid API key, secret or passphrase"
        await public.aclose()

    @pytest.mark.asyncio
    async def test_fetch_ohlcv_sorted_oldest_first(self, http_session, transport):
        """Test candle mapping and ordering."""
        route_rest(http_session)
        http_session.route("GET", "/api/charts/v1/trade/PF_XBTUSD/1h", {
            "candles": [
                {"time": 1700003600000, "open": "2", "high": "3", "low": "1", "close": "2.5", "volume": 7},
                {"time": 1700000000000, "open": "1", "high": "2", "low": "0.5", "close": "2", "volume": 5},
            ],
        })
        exchange, errors, _ = make_exchange(http_session, transport)
        exchange.store.update(markets=await exchange.fetch_markets())

        candles = await exchange.fetch_ohlcv("XBTUSD", "1h")

        assert [c.timestamp for c in candles] == [1700000000, 1700003600]
        assert candles[0].close == Decimal("2")
        assert candles[1].volume == Decimal("7")
        assert "Authent" not in http_session.calls("GET", "/api/charts/v1/trade/PF_XBTUSD/1h")[0].headers
        assert errors == []

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_fetch_ohlcv_unknown_market(self, http_session, transport):
        """Test that an unknown symbol emits and makes no request."""
        exchange, errors, _ = make_exchange(http_session, transport)

        candles = await exchange.fetch_ohlcv("DOGEUSD", "1m")

        assert candles == []
        assert errors[0].category is ErrorCategory.SYMBOL_NOT_FOUND
        assert http_session.requests == []

        await exchange.aclose()


# ============================================================
# PUBLIC STREAM
# ============================================================

class TestKrakenPublicStream:
    """Tests for tickers and order books."""

    @pytest.mark.asyncio
    async def test_order_book_flow(self, http_session, transport, eventually):
        """Test subscribe, snapshot, delta and unsubscribe."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)
        await exchange.start()

        await eventually(lambda: transport.sockets and transport.current.events("subscribe"))
        ws = transport.current
        assert ws.events("subscribe") == [
            {"event": "subscribe", "feed": "ticker", "product_ids": ["PF_XBTUSD"]}
        ]
        ws.feed({"event": "subscribed", "feed": "ticker", "product_ids": ["PF_XBTUSD"]})
        await eventually(lambda: exchange.public_ws.is_ready)

        books = []
        unsubscribe = exchange.listen_order_book("XBTUSD", books.append)
        await eventually(lambda: len(ws.events("subscribe")) == 2)
        assert ws.events("subscribe")[1] == {
            "event": "subscribe", "feed": "book", "product_ids": ["PF_XBTUSD"],
        }

        ws.feed({
            "feed": "book_snapshot",
            "product_id": "PF_XBTUSD",
            "bids": [{"price": 50000, "qty": 1}, {"price": 49999.5, "qty": 2}],
            "asks": [{"price": 50000.5, "qty": 3}],
        })
        ws.feed({"feed": "book", "product_id": "PF_XBTUSD", "side": "sell", "price": 50001, "qty": 4})
        await eventually(lambda: len(books) == 2)

        book = books[-1]
        assert [level.price for level in book.bids] == [Decimal("50000"), Decimal("49999.5")]
        assert [level.total for level in book.bids] == [Decimal("1"), Decimal("3")]
        assert [level.total for level in book.asks] == [Decimal("3"), Decimal("7")]

        unsubscribe()
        unsubscribe()
        await exchange.public_ws.flush()
        assert ws.events("unsubscribe") == [
            {"event": "unsubscribe", "feed": "book", "product_ids": ["PF_XBTUSD"]}
        ]

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_ticker_updates_store(self, http_session, transport, eventually):
        """Test partial ticker updates."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)
        await exchange.start()
        await eventually(lambda: transport.sockets)

        transport.current.feed({
            "feed": "ticker",
            "product_id": "PF_XBTUSD",
            "bid": 50100,
            "markPrice": 50101,
            "funding_rate": 0.0002,
        })
        ticker = exchange.store.ticker_by_id("PF_XBTUSD")
        await eventually(lambda: ticker.bid == Decimal("50100"))

        assert ticker.mark == Decimal("50101")
        assert ticker.ask == Decimal("50000.5")

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_listen_before_markets_load(self, http_session, transport, eventually):
        """Test that early listeners are retried until markets arrive."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)

        exchange.listen_order_book("XBTUSD", lambda book: None)
        await asyncio.sleep(0.03)
        assert not exchange.public_ws.books.has_listeners("PF_XBTUSD")

        await exchange.start()
        await eventually(lambda: exchange.public_ws.books.has_listeners("PF_XBTUSD"))

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_cancelled_listen_is_never_subscribed(self, http_session, transport):
        """Test that unsubscribe cancels a pending retry."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)

        unsubscribe = exchange.listen_order_book("XBTUSD", lambda book: None)
        unsubscribe()
        await exchange.start()
        await asyncio.sleep(0.05)

        assert not exchange.public_ws.books.has_listeners("PF_XBTUSD")

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_ignored(self, http_session, transport):
        """Test listening to a symbol with no market."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)
        await exchange.start()

        unsubscribe = exchange.listen_order_book("DOGEUSD", lambda book: None)

        assert exchange._listens == set()
        unsubscribe()
        assert len(exchange.public_ws.registry) == 1

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_listen_from_worker_thread_before_start(self, http_session, transport, eventually):
        """Test a listen made off the loop before the adapter has started."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)
        loop = asyncio.get_running_loop()

        await loop.run_in_executor(None, exchange.listen_order_book, "XBTUSD", lambda book: None)
        await exchange.start()

        await eventually(lambda: exchange.public_ws.books.has_listeners("PF_XBTUSD"))

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_unsubscribe_from_worker_thread(self, http_session, transport):
        """Test cancelling a pending retry from another thread."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport, authenticated=False)
        loop = asyncio.get_running_loop()

        unsubscribe = exchange.listen_order_book("XBTUSD", lambda book: None)
        await loop.run_in_executor(None, unsubscribe)
        await exchange.start()
        await asyncio.sleep(0.05)

        assert not exchange.public_ws.books.has_listeners("PF_XBTUSD")
        assert exchange._listens == set()

        await exchange.aclose()


# ============================================================
# PRIVATE STREAM
# ============================================================

class TestKrakenPrivateStream:
    """Tests for the authenticated feed."""

    @pytest.mark.asyncio
    async def test_challenge_handshake(self, http_session, transport, eventually):
        """Test challenge -> signed subscribe -> READY."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport)
        states = []
        await exchange.start()

        await eventually(lambda: socket_sending(transport, "challenge") is not None)
        ws = socket_sending(transport, "challenge")
        private = exchange.private_ws
        private.add_state_listener(lambda old, new: states.append(new))

        assert ws.sent[0] == {"event": "challenge", "api_key": "test-key"}
        assert private.state is SessionState.AUTHENTICATING
        assert ws.events("subscribe") == []

        ws.feed({"event": "challenge", "message": "challenge-uuid"})
        await eventually(lambda: len(ws.events("subscribe")) == 3)

        expected = exchange.signer.sign_challenge("challenge-uuid")
        assert [frame["feed"] for frame in ws.events("subscribe")] == [
            "open_orders", "open_positions", "balances",
        ]
        for frame in ws.events("subscribe"):
            assert frame["original_challenge"] == "challenge-uuid"
            assert frame["signed_challenge"] == expected

        ws.feed({"event": "subscribed", "feed": "open_orders"})
        await eventually(lambda: private.is_ready)
        assert states == [SessionState.READY]

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_auth_failure_is_reported(self, http_session, transport, eventually):
        """Test that a rejected handshake emits an authentication error."""
        route_rest(http_session)
        exchange, errors, _ = make_exchange(http_session, transport)
        await exchange.start()
        await eventually(lambda: socket_sending(transport, "challenge") is not None)

        socket_sending(transport, "challenge").feed({"event": "alert", "message": "Failed to sign"})
        await eventually(lambda: errors)

        assert errors[0].category is ErrorCategory.AUTHENTICATION
        assert exchange.private_ws.state is SessionState.AUTHENTICATING

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_order_updates_emit_fills(self, http_session, transport, eventually):
        """Test fill deltas and store bookkeeping."""
        route_rest(http_session)
        exchange, _, fills = make_exchange(http_session, transport)
        await exchange.start()
        ws = await ready_private(exchange, transport, eventually)

        def update(filled):
            return {
                "feed": "open_orders",
                "order": {
                    "instrument": "PF_XBTUSD",
                    "order_id": "o-1",
                    "type": "limit",
                    "qty": 1,
                    "filled": filled,
                    "limit_price": 48000,
                    "direction": 0,
                    "reduce_only": False,
                },
                "is_cancel": False,
            }

        ws.feed(update(0.4))
        await eventually(lambda: len(fills) == 1)
        assert fills[0].amount == Decimal("0.4")
        assert fills[0].side is OrderSide.BUY
        assert exchange.store.orders[0].filled == Decimal("0.4")

        ws.feed(update(1))
        await eventually(lambda: len(fills) == 2)
        assert fills[1].amount == Decimal("0.6")
        assert exchange.store.orders == []

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_cancel_removes_order(self, http_session, transport, eventually):
        """Test cancellation by order id."""
        route_rest(http_session)
        exchange, _, fills = make_exchange(http_session, transport)
        await exchange.start()
        ws = await ready_private(exchange, transport, eventually)

        ws.feed({"feed": "open_orders", "order_id": "o-1", "is_cancel": True, "reason": "cancelled_by_user"})
        await eventually(lambda: exchange.store.orders == [])

        assert fills == []
        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_positions_and_balances(self, http_session, transport, eventually):
        """Test position and balance feeds."""
        route_rest(http_session)
        exchange, _, _ = make_exchange(http_session, transport)
        await exchange.start()
        ws = await ready_private(exchange, transport, eventually)

        ws.feed({
            "feed": "open_positions",
            "positions": [{
                "instrument": "PF_XBTUSD",
                "balance": -2,
                "entry_price": 51000.2,
                "mark_price": 50000,
                "pnl": 2000.4,
                "effective_leverage": 3.333,
                "liquidation_threshold": 60000.1,
            }],
        })
        ws.feed({
            "feed": "balances",
            "flex_futures": {
                "balance_value": 2000,
                "available_margin": 1500,
                "initial_margin": 500,
                "total_unrealized": 10,
            },
        })
        await eventually(lambda: exchange.store.balance.total == Decimal("2000.00"))

        position = exchange.store.positions[0]
        assert position.side is PositionSide.SHORT
        assert position.contracts == Decimal("2")
        assert position.entry_price == Decimal("51000")
        assert position.liquidation_price == Decimal("60000")
        assert position.leverage == Decimal("3.33")
        assert exchange.store.balance.free == Decimal("1500.00")

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_alert_answers_heartbeat(self, http_session, transport, eventually):
        """Test that the rejection alert counts as a pong."""
        route_rest(http_session)
        exchange, errors, _ = make_exchange(http_session, transport)
        await exchange.start()
        ws = await ready_private(exchange, transport, eventually)

        await eventually(lambda: ws.events("ping"))
        ws.feed({"event": "alert", "message": "Bad websocket message"})
        await eventually(lambda: exchange.private_ws.heartbeat.latency_ms is not None)

        assert errors == []
        await exchange.aclose()


# ============================================================
# TRADING
# ============================================================

class TestKrakenTrading:
    """Tests for order placement and cancellation."""

    @pytest.mark.asyncio
    async def test_place_limit_order(self, http_session, transport):
        """Test sendorder with precision adjustment."""
        route_rest(http_session)
        http_session.route("POST", f"{API}/sendorder", {
            "result": "success",
            "sendStatus": {"status": "placed", "order_id": "new-1"},
        })
        exchange, _, _ = make_exchange(http_session, transport)
        await exchange.start()

        order_ids = await exchange.place_order(PlaceOrderRequest(
            symbol="XBTUSD",
            side=OrderSide.BUY,
            type=OrderType.LIMIT,
            amount=Decimal("0.12345"),
            price=Decimal("50000.3"),
        ))

        request = http_session.calls("POST", f"{API}/sendorder")[0]
        assert order_ids == ["new-1"]
        assert request.form == {
            "orderType": "lmt",
            "symbol": "PF_XBTUSD",
            "side": "buy",
            "size": "0.1235",
            "limitPrice": "50000.5",
        }
        assert request.headers["Authent"]

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_rejected_order_emits_error(self, http_session, transport):
        """Test a non-placed send status."""
        route_rest(http_session)
        http_session.route("POST", f"{API}/sendorder", {
            "result": "success",
            "sendStatus": {"status": "insufficientAvailableFunds"},
        })
        exchange, errors, _ = make_exchange(http_session, transport)
        await exchange.start()

        order_ids = await exchange.place_order(PlaceOrderRequest(
            symbol="XBTUSD",
            side=OrderSide.SELL,
            type=OrderType.MARKET,
            amount=Decimal("1"),
        ))

        assert order_ids == []
        assert errors[-1].category is ErrorCategory.INSUFFICIENT_FUNDS

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_order_with_legs_uses_batch(self, http_session, transport):
        """Test stop loss and take profit legs in one batch."""
        route_rest(http_session)
        http_session.route("POST", f"{API}/batchorder", {
            "result": "success",
            "batchStatus": [
                {"status": "placed", "order_id": "base"},
                {"status": "placed", "order_id": "sl"},
                {"status": "invalidSize"},
            ],
        })
        exchange, errors, _ = make_exchange(http_session, transport)
        await exchange.start()

        order_ids = await exchange.place_order(PlaceOrderRequest(
            symbol="XBTUSD",
            side=OrderSide.BUY,
            type=OrderType.LIMIT,
            amount=Decimal("1"),
            price=Decimal("50000"),
            stop_loss=Decimal("49000"),
            take_profit=Decimal("52000"),
        ))

        batch = http_session.calls("POST", f"{API}/batchorder")[0].json_body["batchOrder"]
        assert order_ids == ["base", "sl"]
        assert [leg["order_tag"] for leg in batch] == ["baseOrder", "stopLossOrder", "takeProfitOrder"]
        assert batch[1]["side"] == "sell"
        assert batch[1]["stopPrice"] == "49000"
        assert batch[2]["orderType"] == "take_profit"
        assert "reduceOnly" not in batch[0]
        assert errors[-1].category is ErrorCategory.INVALID_QUANTITY

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_cancel_symbol_orders(self, http_session, transport):
        """Test cancelallorders with a symbol."""
        route_rest(http_session)
        http_session.route("POST", f"{API}/cancelallorders", {"result": "success"})
        exchange, _, _ = make_exchange(http_session, transport)
        await exchange.start()

        await exchange.cancel_symbol_orders("XBTUSD")

        request = http_session.calls("POST", f"{API}/cancelallorders")[0]
        assert request.form == {"symbol": "PF_XBTUSD"}

        await exchange.aclose()

    @pytest.mark.asyncio
    async def test_unknown_market_raises(self, http_session, transport):
        """Test placing on a market that is not loaded."""
        exchange, _, _ = make_exchange(http_session, transport)

        with pytest.raises(ValueError, match="Market not found"):
            await exchange.place_order(PlaceOrderRequest(
                symbol="XBTUSD",
                side=OrderSide.BUY,
                type=OrderType.MARKET,
                amount=Decimal("1"),
            ))

        await exchange.aclose()
