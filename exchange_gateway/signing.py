"""
Exchange Gateway - Request Signing.

============================================================
PURPOSE
============================================================
Turns an outbound request into an exchange-accepted
authenticated request.

SCHEMES:
- Kraken Futures: BASE64(HMAC-SHA512(b64decode(secret),
                  SHA256(payload + nonce + path)))
- Binance Futures: HEX(HMAC-SHA256(secret, query&timestamp + body))

Signing is pure apart from advancing the nonce counter.
Public endpoints never reach a signer.

============================================================
"""

import base64
import binascii
import hashlib
import hmac
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .errors import ConfigurationError
from .types import SignedRequest


logger = logging.getLogger(__name__)


# ============================================================
# NONCE SOURCE
# ============================================================

class NonceSource:
    """
    Strictly increasing nonce generator.

    Nonces track wall-clock time at the given scale (microseconds by
    default) but never repeat or go backwards, even when called from
    several threads within the same clock tick.
    """

    def __init__(self, scale: int = 1_000_000):
        self._scale = scale
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        """Issue the next nonce."""
        with self._lock:
            candidate = int(time.time() * self._scale)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate

    @property
    def last(self) -> int:
        """Most recently issued nonce (0 if none)."""
        return self._last


# ============================================================
# SIGNER INTERFACE
# ============================================================

class RequestSigner(ABC):
    """Produces authentication material for one request."""

    def __init__(self, api_key: str, nonce_source: NonceSource):
        if not api_key:
            raise ConfigurationError("API key is required for authenticated endpoints")
        self._api_key = api_key
        self._nonces = nonce_source

    @property
    def api_key(self) -> str:
        return self._api_key

    @abstractmethod
    def sign(
        self,
        method: str,
        path: str,
        query: str = "",
        body: str = "",
    ) -> SignedRequest:
        """
        Sign a request.

        Args:
            method: HTTP method
            path: Endpoint path, without host or query string
            query: Canonical url-encoded query string
            body: Canonical request body

        Returns:
            SignedRequest with headers and the final query string
        """

    def key_headers(self) -> Dict[str, str]:
        """Headers identifying the key on endpoints that need no signature."""
        return {}


# ============================================================
# KRAKEN FUTURES
# ============================================================

def _decode_base64_secret(secret: str) -> bytes:
    if not secret:
        raise ConfigurationError("API secret is required for authenticated endpoints")
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"API secret is not valid base64: {e}") from e


class KrakenFuturesSigner(RequestSigner):
    """
    Kraken Futures `Authent` signer.

    The secret is decoded once at construction so a malformed secret
    fails before any network call.
    """

    PATH_PREFIX = "/derivatives"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        nonce_source: Optional[NonceSource] = None,
    ):
        super().__init__(api_key, nonce_source or NonceSource(scale=1_000_000))
        self._secret = _decode_base64_secret(api_secret)

    def _digest(self, message: str) -> str:
        sha256_hash = hashlib.sha256(message.encode()).digest()
        signature = hmac.new(self._secret, sha256_hash, hashlib.sha512).digest()
        return base64.b64encode(signature).decode()

    def sign(
        self,
        method: str,
        path: str,
        query: str = "",
        body: str = "",
    ) -> SignedRequest:
        nonce = self._nonces.next()

        endpoint_path = path
        if endpoint_path.startswith(self.PATH_PREFIX):
            endpoint_path = endpoint_path[len(self.PATH_PREFIX):]

        payload = body if body else query
        signature = self._digest(f"{payload}{nonce}{endpoint_path}")

        return SignedRequest(
            nonce=nonce,
            signature=signature,
            headers={
                "APIKey": self._api_key,
                "Nonce": str(nonce),
                "Authent": signature,
            },
            query=query,
        )

    def sign_challenge(self, challenge: str) -> str:
        """Sign a websocket authentication challenge."""
        return self._digest(challenge)

    def key_headers(self) -> Dict[str, str]:
        return {"APIKey": self._api_key}


# ============================================================
# BINANCE FUTURES
# ============================================================

class BinanceSigner(RequestSigner):
    """
    Binance `HMAC SHA256` signer.

    The millisecond nonce doubles as the `timestamp` parameter and the
    signature travels in the query string.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        nonce_source: Optional[NonceSource] = None,
    ):
        super().__init__(api_key, nonce_source or NonceSource(scale=1_000))
        if not api_secret:
            raise ConfigurationError("API secret is required for authenticated endpoints")
        self._secret = api_secret.encode()

    def sign(
        self,
        method: str,
        path: str,
        query: str = "",
        body: str = "",
    ) -> SignedRequest:
        nonce = self._nonces.next()

        signed_query = f"{query}&timestamp={nonce}" if query else f"timestamp={nonce}"
        signature = hmac.new(
            self._secret,
            f"{signed_query}{body}".encode(),
            hashlib.sha256,
        ).hexdigest()

        return SignedRequest(
            nonce=nonce,
            signature=signature,
            headers=self.key_headers(),
            query=f"{signed_query}&signature={signature}",
        )

    def key_headers(self) -> Dict[str, str]:
        return {"X-MBX-APIKEY": self._api_key}
