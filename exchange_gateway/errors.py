"""
Exchange Gateway - Error Handling and Mapping.

============================================================
PURPOSE
============================================================
Standardized error handling for the gateway with:
- Unified error taxonomy across exchanges
- Exchange-specific error code mapping
- Retry eligibility classification (advisory only)
- Error context preservation (raw exchange code/message)

============================================================
PROPAGATION
============================================================
1. Transport faults   - recovered by reconnecting, never raised
2. Protocol faults    - one message dropped (ProtocolError)
3. Auth faults        - emitted on the error channel
4. Application faults - ExchangeException from REST calls
5. Config faults      - ConfigurationError at construction

============================================================
"""

import logging
from enum import Enum
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    INVALID_ORDER = "INVALID_ORDER"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_MARGIN = "INSUFFICIENT_MARGIN"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    MARKET_CLOSED = "MARKET_CLOSED"
    TIMEOUT = "TIMEOUT"
    CONFIGURATION = "CONFIGURATION"
    PROTOCOL = "PROTOCOL"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


# ============================================================
# EXCHANGE ERROR
# ============================================================

@dataclass
class ExchangeError:
    """
    Standardized exchange error.

    The exchange's own code and message are kept verbatim so that
    callers can decide their retry policy.
    """

    # Core fields
    category: ErrorCategory
    code: str               # Normalized error code
    message: str            # Human-readable message

    # Retry info
    retry_eligible: RetryEligibility
    retry_after_ms: Optional[int] = None

    # Original error info
    exchange_code: Optional[str] = None
    exchange_message: Optional[str] = None
    http_status: Optional[int] = None

    # Context
    exchange_id: Optional[str] = None
    operation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "retry_eligible": self.retry_eligible.value,
            "retry_after_ms": self.retry_after_ms,
            "exchange_code": self.exchange_code,
            "exchange_message": self.exchange_message,
            "http_status": self.http_status,
            "exchange_id": self.exchange_id,
            "operation": self.operation,
        }

    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.code}: {self.message}"


class ExchangeException(Exception):
    """Exception wrapper for ExchangeError."""

    def __init__(self, error: ExchangeError):
        self.error = error
        super().__init__(str(error))


class ConfigurationError(Exception):
    """Missing or malformed credentials / settings. Raised before any I/O."""


class ProtocolError(Exception):
    """Malformed streaming message. The message is dropped."""


# ============================================================
# KRAKEN FUTURES ERROR MAPPING
# ============================================================

# Kraken Futures reports errors as strings, both in the top-level
# `error` field and in `sendStatus.status` of order placement.
KRAKEN_ERROR_MAP: Dict[str, Tuple[ErrorCategory, RetryEligibility]] = {
    # Rate limiting
    "apiLimitExceeded": (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),

    # Authentication
    "authenticationError": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "accountInactive": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "nonceBelowThreshold": (ErrorCategory.AUTHENTICATION, RetryEligibility.RETRY),
    "nonceDuplicate": (ErrorCategory.AUTHENTICATION, RetryEligibility.RETRY),

    # Order validation
    "requiredArgumentMissing": (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    "invalidArgument": (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    "invalidUnit": (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    "invalidSize": (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    "tooManySmallOrders": (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    "invalidPrice": (ErrorCategory.INVALID_PRICE, RetryEligibility.NO_RETRY),
    "orderForEditNotFound": (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    "notFound": (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    "contractNotFound": (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),

    # Funds / margin
    "insufficientAvailableFunds": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    "insufficientFunds": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    "wouldCauseLiquidation": (ErrorCategory.INSUFFICIENT_MARGIN, RetryEligibility.NO_RETRY),

    # Market state
    "marketSuspended": (ErrorCategory.MARKET_CLOSED, RetryEligibility.NO_RETRY),
    "marketInactive": (ErrorCategory.MARKET_CLOSED, RetryEligibility.NO_RETRY),

    # Exchange internal
    "Server Error": (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    "Unavailable": (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
}


def _classify_http_status(http_status: Optional[int]) -> Tuple[ErrorCategory, RetryEligibility]:
    if http_status in (418, 429):
        return ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF
    if http_status in (401, 403):
        return ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY
    if http_status and http_status >= 500:
        return ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY
    return ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY


def map_kraken_error(
    code: str,
    message: str = None,
    http_status: int = None,
) -> ExchangeError:
    """
    Map Kraken Futures error to unified format.

    Args:
        code: Kraken error string (e.g. "apiLimitExceeded")
        message: Error message (defaults to the code)
        http_status: HTTP status code

    Returns:
        Unified ExchangeError
    """
    code = str(code)
    message = message or code

    if code in KRAKEN_ERROR_MAP:
        category, retry = KRAKEN_ERROR_MAP[code]
    else:
        category, retry = _classify_http_status(http_status)

    return ExchangeError(
        category=category,
        code=f"KRAKEN_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=code,
        exchange_message=message,
        http_status=http_status,
        exchange_id="kraken",
    )


# ============================================================
# BINANCE ERROR MAPPING
# ============================================================

BINANCE_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    # Rate limiting
    -1003: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    -1015: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),

    # Authentication
    -1002: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -1022: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -2014: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -2015: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Order validation
    -1013: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    -1021: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
    -1100: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    -1102: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    -1111: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    -1121: (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),
    -4014: (ErrorCategory.INVALID_PRICE, RetryEligibility.NO_RETRY),

    # Funds / margin
    -2010: (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    -2019: (ErrorCategory.INSUFFICIENT_MARGIN, RetryEligibility.NO_RETRY),

    # Orders
    -2011: (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    -2013: (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),

    # Exchange internal
    -1000: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    -1001: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    -1007: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
}


def map_binance_error(
    code: int,
    message: str,
    http_status: int = None,
) -> ExchangeError:
    """
    Map Binance error to unified format.

    Args:
        code: Binance error code
        message: Binance error message
        http_status: HTTP status code

    Returns:
        Unified ExchangeError
    """
    if code in BINANCE_ERROR_MAP:
        category, retry = BINANCE_ERROR_MAP[code]
    else:
        category, retry = _classify_http_status(http_status)

    return ExchangeError(
        category=category,
        code=f"BINANCE_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="binance",
    )


# ============================================================
# ERROR MAPPER FACTORY
# ============================================================

def map_exchange_error(
    exchange_id: str,
    code: Any,
    message: str,
    http_status: int = None,
) -> ExchangeError:
    """
    Map exchange error to unified format.

    Routes to the exchange-specific mapper; unknown exchanges get
    an UNKNOWN error that still carries the raw code and message.
    """
    exchange_id = exchange_id.lower()

    if exchange_id == "kraken":
        return map_kraken_error(str(code), message, http_status)
    elif exchange_id == "binance":
        try:
            numeric = int(code)
        except (TypeError, ValueError):
            numeric = 0
        return map_binance_error(numeric, message, http_status)

    return ExchangeError(
        category=ErrorCategory.UNKNOWN,
        code=f"{exchange_id.upper()}_{code}",
        message=message,
        retry_eligible=RetryEligibility.NO_RETRY,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id=exchange_id,
    )


# ============================================================
# NETWORK ERROR HELPERS
# ============================================================

def create_network_error(
    exchange_id: str,
    message: str,
    operation: str = None,
) -> ExchangeError:
    """Create network error."""
    return ExchangeError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_NETWORK_ERROR",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_timeout_error(
    exchange_id: str,
    timeout_ms: int,
    operation: str = None,
) -> ExchangeError:
    """Create timeout error."""
    return ExchangeError(
        category=ErrorCategory.TIMEOUT,
        code=f"{exchange_id.upper()}_TIMEOUT",
        message=f"Request timed out after {timeout_ms}ms",
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_rate_limit_error(
    exchange_id: str,
    retry_after_ms: int = None,
) -> ExchangeError:
    """Create rate limit error."""
    return ExchangeError(
        category=ErrorCategory.RATE_LIMIT,
        code=f"{exchange_id.upper()}_RATE_LIMIT",
        message="Rate limit exceeded",
        retry_eligible=RetryEligibility.BACKOFF,
        retry_after_ms=retry_after_ms,
        exchange_id=exchange_id,
    )
