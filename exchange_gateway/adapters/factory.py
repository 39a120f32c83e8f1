"""
Exchange Adapter Factory.

============================================================
PURPOSE
============================================================
Centralized creation of exchange adapters.

- Credentials from the environment by default
- Shared store / emitter injection
- Registry for additional adapters

============================================================
USAGE
============================================================
```python
# Credentials from KRAKEN_API_KEY / KRAKEN_API_SECRET
exchange = create_exchange("kraken", testnet=True)
await exchange.start()

# Explicit config
exchange = create_exchange("binance", config=ExchangeConfig(
    exchange_id="binance",
    api_key="...",
    api_secret="...",
))
```

============================================================
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Type

from ..config import ExchangeConfig
from ..store import EventEmitter, MemoryStore
from .base import BaseExchange
from .binance import BinanceExchange
from .kraken import KrakenExchange


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE IDENTIFIERS
# ============================================================

class ExchangeId(Enum):
    """Supported exchange identifiers."""

    KRAKEN = "kraken"
    BINANCE = "binance"


_registry: Dict[str, Type[BaseExchange]] = {
    ExchangeId.KRAKEN.value: KrakenExchange,
    ExchangeId.BINANCE.value: BinanceExchange,
}


def register(exchange_id: str, adapter_class: Type[BaseExchange]) -> None:
    """Register an adapter class under an exchange id."""
    _registry[exchange_id.lower()] = adapter_class


def list_supported() -> List[str]:
    """List supported exchanges."""
    return sorted(_registry)


def create_exchange(
    exchange_id: str,
    config: Optional[ExchangeConfig] = None,
    store: Optional[MemoryStore] = None,
    emitter: Optional[EventEmitter] = None,
    testnet: bool = False,
    **kwargs,
) -> BaseExchange:
    """
    Create an exchange adapter.

    Args:
        exchange_id: Exchange identifier (kraken, binance)
        config: Exchange configuration; loaded from the environment if None
        store: Shared store
        emitter: Shared event emitter
        testnet: Use testnet (only when config is None)
        **kwargs: Passed to the adapter (http_session, transport_factory)

    Returns:
        Adapter instance (not started)

    Raises:
        ValueError: If the exchange is not supported
        ConfigurationError: If credentials are present but unusable
    """
    if isinstance(exchange_id, ExchangeId):
        exchange_id = exchange_id.value
    exchange_id = exchange_id.lower()

    adapter_class = _registry.get(exchange_id)
    if adapter_class is None:
        raise ValueError(f"Unsupported exchange: {exchange_id}")

    if config is None:
        config = ExchangeConfig.from_env(exchange_id, testnet=testnet)

    logger.info(f"Creating {exchange_id} adapter (testnet={config.testnet})")
    return adapter_class(config, store=store, emitter=emitter, **kwargs)
