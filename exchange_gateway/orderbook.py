"""
Exchange Gateway - Order Book Synchronizer.

============================================================
PURPOSE
============================================================
Maintains a coherent, sorted, depth-annotated order book per
product from snapshot and incremental delta events.

RULES:
- Snapshot: replaces both sides (duplicate prices: last write wins)
- Delta amount 0: removes the level (no-op if absent)
- Delta on existing price: replaces its amount
- Delta on new price: inserts the level
- After every mutation the side is re-sorted and its cumulative
  totals recomputed; listeners then receive an immutable view

Input is fully validated before any mutation, so a malformed
message never leaves a half-applied book behind.

============================================================
"""

import itertools
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from .errors import ProtocolError
from .types import BookSide, OrderBook, OrderBookLevel


logger = logging.getLogger(__name__)


OrderBookCallback = Callable[[OrderBook], None]
RawLevel = Union[Dict[str, Any], Tuple[Any, Any], list]


def to_decimal(value: Any) -> Decimal:
    """Convert a wire number to Decimal (floats via their repr)."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ProtocolError(f"Invalid number: {value!r}")
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ProtocolError(f"Invalid number: {value!r}") from e
    if not result.is_finite():
        raise ProtocolError(f"Invalid number: {value!r}")
    return result


def parse_level(raw: RawLevel) -> Tuple[Decimal, Decimal]:
    """
    Parse one price level.

    Accepts `{"price", "qty"}` / `{"price", "amount"}` dicts and
    `[price, qty]` pairs.
    """
    if isinstance(raw, dict):
        price = raw.get("price")
        amount = raw.get("qty", raw.get("amount"))
    elif isinstance(raw, (list, tuple)) and len(raw) >= 2:
        price, amount = raw[0], raw[1]
    else:
        raise ProtocolError(f"Invalid book level: {raw!r}")

    price, amount = to_decimal(price), to_decimal(amount)
    if price <= 0 or amount < 0:
        raise ProtocolError(f"Invalid book level: {raw!r}")
    return price, amount


def build_side(levels: Dict[Decimal, Decimal], side: BookSide) -> Tuple[OrderBookLevel, ...]:
    """Sort a side from best price outward and attach cumulative totals."""
    prices = sorted(levels, reverse=(side is BookSide.BIDS))
    total = Decimal("0")
    result = []
    for price in prices:
        amount = levels[price]
        total += amount
        result.append(OrderBookLevel(price=price, amount=amount, total=total))
    return tuple(result)


class _BookState:
    """Mutable book for one product. Never leaves the synchronizer."""

    __slots__ = ("levels", "view")

    def __init__(self):
        self.levels: Dict[BookSide, Dict[Decimal, Decimal]] = {
            BookSide.BIDS: {},
            BookSide.ASKS: {},
        }
        self.view = OrderBook()

    def rebuild(self, *sides: BookSide) -> None:
        bids, asks = self.view.bids, self.view.asks
        if BookSide.BIDS in sides:
            bids = build_side(self.levels[BookSide.BIDS], BookSide.BIDS)
        if BookSide.ASKS in sides:
            asks = build_side(self.levels[BookSide.ASKS], BookSide.ASKS)
        self.view = OrderBook(bids=bids, asks=asks)


# ============================================================
# SYNCHRONIZER
# ============================================================

class OrderBookSynchronizer:
    """
    Owns every order book of one streaming session.

    Books are keyed by exchange product id. Events for a product with
    no registered listener are ignored, and removing the last listener
    discards the book so a later subscription starts from scratch.
    """

    def __init__(self):
        self._books: Dict[str, _BookState] = {}
        self._listeners: Dict[str, Dict[int, OrderBookCallback]] = {}
        self._ids = itertools.count(1)

    # --------------------------------------------------------
    # LISTENERS
    # --------------------------------------------------------

    def add_listener(self, key: str, callback: OrderBookCallback) -> int:
        """Register a callback for a product. Returns a listener id."""
        listener_id = next(self._ids)
        self._listeners.setdefault(key, {})[listener_id] = callback
        return listener_id

    def remove_listener(self, key: str, listener_id: int) -> bool:
        """
        Remove a callback.

        Returns:
            True if it was the product's last listener (book discarded)
        """
        listeners = self._listeners.get(key)
        if not listeners or listeners.pop(listener_id, None) is None:
            return False
        if listeners:
            return False
        del self._listeners[key]
        self._books.pop(key, None)
        return True

    def has_listeners(self, key: str) -> bool:
        return bool(self._listeners.get(key))

    def get_book(self, key: str) -> Optional[OrderBook]:
        """Current view of a product's book, if one exists."""
        state = self._books.get(key)
        return state.view if state else None

    def clear(self) -> None:
        """Drop every book and listener."""
        self._books.clear()
        self._listeners.clear()

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    def _state_for(self, key: str) -> _BookState:
        state = self._books.get(key)
        if state is None:
            state = _BookState()
            self._books[key] = state
        return state

    def apply_snapshot(
        self,
        key: str,
        bids: Iterable[RawLevel],
        asks: Iterable[RawLevel],
    ) -> Optional[OrderBook]:
        """
        Replace both sides of a book.

        Raises:
            ProtocolError: If any level is malformed (book untouched)
        """
        if not self.has_listeners(key):
            return None

        new_bids: Dict[Decimal, Decimal] = {}
        new_asks: Dict[Decimal, Decimal] = {}
        for target, raw_levels in ((new_bids, bids), (new_asks, asks)):
            for raw in raw_levels or ():
                price, amount = parse_level(raw)
                if amount == 0:
                    target.pop(price, None)
                else:
                    target[price] = amount

        state = self._state_for(key)
        state.levels[BookSide.BIDS] = new_bids
        state.levels[BookSide.ASKS] = new_asks
        state.rebuild(BookSide.BIDS, BookSide.ASKS)

        self._notify(key, state.view)
        return state.view

    def apply_delta(
        self,
        key: str,
        side: Union[BookSide, str],
        price: Any,
        amount: Any,
    ) -> Optional[OrderBook]:
        """
        Apply a single price-level change.

        Raises:
            ProtocolError: If side, price or amount is malformed
        """
        if not self.has_listeners(key):
            return None

        side = self._parse_side(side)
        price, amount = parse_level({"price": price, "qty": amount})

        state = self._state_for(key)
        levels = state.levels[side]
        if amount == 0:
            if price in levels:
                del levels[price]
                state.rebuild(side)
        else:
            levels[price] = amount
            state.rebuild(side)

        self._notify(key, state.view)
        return state.view

    @staticmethod
    def _parse_side(side: Union[BookSide, str]) -> BookSide:
        if isinstance(side, BookSide):
            return side
        normalized = str(side).lower()
        if normalized in ("buy", "bid", "bids"):
            return BookSide.BIDS
        if normalized in ("sell", "ask", "asks"):
            return BookSide.ASKS
        raise ProtocolError(f"Invalid book side: {side!r}")

    def _notify(self, key: str, view: OrderBook) -> None:
        # Copy: a callback may unsubscribe itself or others.
        for listener_id, callback in list(self._listeners.get(key, {}).items()):
            if listener_id not in self._listeners.get(key, {}):
                continue
            try:
                callback(view)
            except Exception as e:
                logger.error(f"Order book callback error for {key}: {e}", exc_info=True)
