"""
Exchange Gateway - Store and Events.

============================================================
PURPOSE
============================================================
In-memory state shared by an exchange adapter and its
streaming sessions, plus a small named-event emitter.

- MemoryStore: markets, tickers, orders, positions, balance,
  latency and per-collection `loaded` flags
- EventEmitter: `error` and `fill` notifications to the
  application (fire-and-forget)

Both are mutated only from the adapter's event loop.

============================================================
"""

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .types import Balance, Market, Order, Position, Ticker


logger = logging.getLogger(__name__)


# ============================================================
# STORE
# ============================================================

@dataclass
class LoadedFlags:
    """Which collections have completed their initial REST load."""

    markets: bool = False
    tickers: bool = False
    balance: bool = False
    orders: bool = False
    positions: bool = False


class MemoryStore:
    """
    Normalized exchange state.
    """

    def __init__(self):
        self.markets: List[Market] = []
        self.tickers: List[Ticker] = []
        self.orders: List[Order] = []
        self.positions: List[Position] = []
        self.balance = Balance()
        self.latency: float = 0.0
        self.loaded = LoadedFlags()

    def update(self, **changes: Any) -> None:
        """
        Replace top-level fields.

        `loaded` accepts a dict of flags that is merged into the
        current flags.
        """
        for name, value in changes.items():
            if name == "loaded" and isinstance(value, dict):
                value = replace(self.loaded, **value)
            if not hasattr(self, name):
                raise AttributeError(f"Unknown store field: {name}")
            setattr(self, name, value)

    def reset(self) -> None:
        self.__init__()

    # --------------------------------------------------------
    # LOOKUPS
    # --------------------------------------------------------

    def market_by_symbol(self, symbol: str) -> Optional[Market]:
        return next((m for m in self.markets if m.symbol == symbol), None)

    def market_by_id(self, market_id: str) -> Optional[Market]:
        return next((m for m in self.markets if m.id == market_id), None)

    def ticker_by_id(self, ticker_id: str) -> Optional[Ticker]:
        return next((t for t in self.tickers if t.id == ticker_id), None)

    # --------------------------------------------------------
    # PARTIAL UPDATES
    # --------------------------------------------------------

    def update_ticker(self, ticker: Ticker, changes: Dict[str, Any]) -> None:
        """Apply field changes to a stored ticker (unknown fields ignored)."""
        known = {f.name for f in fields(Ticker)}
        for name, value in changes.items():
            if name in known and value is not None:
                setattr(ticker, name, value)

    def add_or_update_orders(self, orders: Iterable[Order]) -> None:
        by_id = {order.id: idx for idx, order in enumerate(self.orders)}
        for order in orders:
            idx = by_id.get(order.id)
            if idx is None:
                by_id[order.id] = len(self.orders)
                self.orders.append(order)
            else:
                self.orders[idx] = order

    def remove_orders(self, orders: Iterable[Order]) -> None:
        ids = {order.id for order in orders}
        self.orders = [order for order in self.orders if order.id not in ids]


# ============================================================
# EVENTS
# ============================================================

EventListener = Callable[..., None]


@dataclass
class EventEmitter:
    """
    Named-event emitter.

    Listener failures are logged and never reach the emitter.
    """

    _listeners: Dict[str, List[EventListener]] = field(default_factory=dict)

    def on(self, event: str, listener: EventListener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: EventListener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener of an event. Returns whether any existed."""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Listener error for '{event}': {e}", exc_info=True)
        return bool(listeners)
