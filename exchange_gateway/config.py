"""
Exchange Gateway - Configuration.

============================================================
PURPOSE
============================================================
All configuration for exchange adapters, REST clients and
streaming sessions.

CRITICAL CONSTRAINTS:
- Credentials validated before any connection attempt
- No automatic REST retries
- Bounded reconnect backoff for streaming sessions

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


# ============================================================
# RATE LIMIT CONFIGURATION
# ============================================================

@dataclass
class RateLimitConfig:
    """
    Token bucket configuration for outbound REST requests.

    Requests beyond the rate are delayed, never dropped.
    """

    requests_per_second: float = 3.0
    """Sustained request rate."""

    burst: Optional[int] = None
    """Bucket capacity. Defaults to the per-second rate (at least 1)."""

    @property
    def capacity(self) -> int:
        """Effective bucket capacity."""
        if self.burst is not None:
            return max(1, self.burst)
        return max(1, int(self.requests_per_second))


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """
    Timeout configuration.
    """

    request_timeout_ms: int = 5000
    """Default REST request timeout (overridable per call)."""

    connect_timeout_ms: int = 10000
    """Websocket handshake timeout."""


# ============================================================
# STREAM CONFIGURATION
# ============================================================

@dataclass
class StreamConfig:
    """
    Streaming session configuration.
    """

    # Reconnection
    reconnect_initial_ms: int = 250
    """Delay before the first reconnect attempt."""

    reconnect_max_ms: int = 30000
    """Upper bound of the exponential backoff."""

    reconnect_jitter: float = 0.5
    """Fraction of the delay randomized away (0 disables jitter)."""

    max_reconnect_attempts: Optional[int] = None
    """Consecutive failed attempts before giving up. None retries forever."""

    # Heartbeat
    ping_interval_ms: int = 10000
    """Pause between a pong and the next ping."""

    pong_timeout_ms: int = 10000
    """Missing pong after this long forces a reconnect."""

    # Private sessions
    listen_key_renewal_ms: int = 30 * 60 * 1000
    """Listen key keep-alive interval."""

    # Callers
    market_retry_ms: int = 100
    """Retry interval for listeners registered before markets load."""


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

@dataclass
class ExchangeConfig:
    """
    Master configuration for one exchange adapter.
    """

    exchange_id: str = "kraken"
    """Exchange identifier."""

    api_key: str = ""
    """API key."""

    api_secret: str = ""
    """API secret, in the exchange's declared encoding."""

    testnet: bool = False
    """Whether to use the exchange's demo environment."""

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    """Rate limit configuration."""

    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    """Timeout configuration."""

    stream: StreamConfig = field(default_factory=StreamConfig)
    """Streaming configuration."""

    @classmethod
    def from_env(cls, exchange_id: str, testnet: bool = False) -> "ExchangeConfig":
        """
        Load credentials from the environment.

        Reads <EXCHANGE>_API_KEY and <EXCHANGE>_API_SECRET after loading
        a local .env file, if present.
        """
        load_dotenv()
        prefix = exchange_id.upper()
        return cls(
            exchange_id=exchange_id,
            api_key=os.environ.get(f"{prefix}_API_KEY", ""),
            api_secret=os.environ.get(f"{prefix}_API_SECRET", ""),
            testnet=testnet,
        )

    @classmethod
    def for_testing(
        cls,
        exchange_id: str = "kraken",
        api_key: str = "test-key",
        api_secret: str = "c2VjcmV0LWtleQ==",
    ) -> "ExchangeConfig":
        """Get configuration for testing: no reconnect delay, short heartbeats."""
        return cls(
            exchange_id=exchange_id,
            api_key=api_key,
            api_secret=api_secret,
            testnet=True,
            stream=StreamConfig(
                reconnect_initial_ms=0,
                reconnect_max_ms=0,
                reconnect_jitter=0.0,
                ping_interval_ms=50,
                pong_timeout_ms=50,
                listen_key_renewal_ms=50,
                market_retry_ms=10,
            ),
        )
