"""
Request Signer Tests.

============================================================
PURPOSE
============================================================
Nonce monotonicity and signature construction.

============================================================
"""

import base64
import hashlib
import hmac
import threading

import pytest

from exchange_gateway.errors import ConfigurationError
from exchange_gateway.signing import BinanceSigner, KrakenFuturesSigner, NonceSource


SECRET = base64.b64encode(b"secret-key").decode()


def kraken_authent(secret: str, message: str) -> str:
    digest = hashlib.sha256(message.encode()).digest()
    return base64.b64encode(
        hmac.new(base64.b64decode(secret), digest, hashlib.sha512).digest()
    ).decode()


# ============================================================
# NONCE
# ============================================================

class TestNonceSource:
    """Tests for NonceSource."""

    def test_sequential_nonces_strictly_increase(self):
        """Test 1000 sequential nonces."""
        source = NonceSource()
        nonces = [source.next() for _ in range(1000)]

        assert all(a < b for a, b in zip(nonces, nonces[1:]))
        assert source.last == nonces[-1]

    def test_concurrent_signing_never_repeats(self):
        """Test nonces under concurrent submission."""
        signer = KrakenFuturesSigner("key", SECRET)
        nonces = []
        lock = threading.Lock()

        def worker():
            for _ in range(250):
                nonce = signer.sign("GET", "/derivatives/api/v3/openpositions").nonce
                with lock:
                    nonces.append(nonce)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(nonces) == 1000
        assert len(set(nonces)) == 1000

    def test_coarse_clock_still_increases(self):
        """Test that nonces advance within one clock tick."""
        source = NonceSource(scale=1)

        first, second, third = source.next(), source.next(), source.next()

        assert first < second < third


# ============================================================
# KRAKEN
# ============================================================

class TestKrakenFuturesSigner:
    """Tests for the Kraken Authent signer."""

    def test_signature_strips_derivatives_prefix(self):
        """Test Authent over query + nonce + path without /derivatives."""
        signer = KrakenFuturesSigner("my-key", SECRET)

        signed = signer.sign("GET", "/derivatives/api/v3/openorders", "symbol=PF_XBTUSD")

        assert signed.headers["APIKey"] == "my-key"
        assert signed.headers["Nonce"] == str(signed.nonce)
        assert signed.headers["Authent"] == kraken_authent(
            SECRET, f"symbol=PF_XBTUSD{signed.nonce}/api/v3/openorders"
        )
        assert signed.query == "symbol=PF_XBTUSD"

    def test_body_takes_precedence_over_query(self):
        """Test that POST bodies are signed."""
        signer = KrakenFuturesSigner("my-key", SECRET)

        signed = signer.sign("POST", "/derivatives/api/v3/sendorder", "", "size=1&side=buy")

        assert signed.signature == kraken_authent(
            SECRET, f"size=1&side=buy{signed.nonce}/api/v3/sendorder"
        )

    def test_each_request_gets_a_fresh_nonce(self):
        """Test that signatures are never reused."""
        signer = KrakenFuturesSigner("my-key", SECRET)

        first = signer.sign("GET", "/derivatives/api/v3/accounts")
        second = signer.sign("GET", "/derivatives/api/v3/accounts")

        assert second.nonce > first.nonce
        assert second.signature != first.signature

    def test_challenge_signature(self):
        """Test websocket challenge signing."""
        signer = KrakenFuturesSigner("my-key", SECRET)

        assert signer.sign_challenge("c0ffee") == kraken_authent(SECRET, "c0ffee")

    def test_invalid_secret_fails_at_construction(self):
        """Test that a non-base64 secret is a configuration error."""
        with pytest.raises(ConfigurationError):
            KrakenFuturesSigner("my-key", "not base64!!")

    def test_missing_credentials(self):
        """Test that empty key or secret fail fast."""
        with pytest.raises(ConfigurationError):
            KrakenFuturesSigner("", SECRET)
        with pytest.raises(ConfigurationError):
            KrakenFuturesSigner("my-key", "")


# ============================================================
# BINANCE
# ============================================================

class TestBinanceSigner:
    """Tests for the Binance HMAC signer."""

    def test_signature_in_query(self):
        """Test timestamp and signature appended to the query."""
        signer = BinanceSigner("bn-key", "bn-secret")

        signed = signer.sign("GET", "/fapi/v2/positionRisk", "symbol=BTCUSDT")

        signed_query = f"symbol=BTCUSDT&timestamp={signed.nonce}"
        expected = hmac.new(b"bn-secret", signed_query.encode(), hashlib.sha256).hexdigest()
        assert signed.query == f"{signed_query}&signature={expected}"
        assert signed.headers == {"X-MBX-APIKEY": "bn-key"}

    def test_body_is_part_of_signed_payload(self):
        """Test that form bodies are covered by the signature."""
        signer = BinanceSigner("bn-key", "bn-secret")

        signed = signer.sign("POST", "/fapi/v1/order", "", "symbol=BTCUSDT&side=BUY")

        payload = f"timestamp={signed.nonce}symbol=BTCUSDT&side=BUY"
        assert signed.signature == hmac.new(
            b"bn-secret", payload.encode(), hashlib.sha256
        ).hexdigest()

    def test_key_headers(self):
        """Test key-only headers."""
        assert BinanceSigner("bn-key", "bn-secret").key_headers() == {"X-MBX-APIKEY": "bn-key"}
