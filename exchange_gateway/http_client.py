"""
Exchange Gateway - Rate-Limited HTTP Client.

============================================================
PURPOSE
============================================================
Single entry point for REST calls to an exchange.

PIPELINE:
1. Canonicalize params/body (the exact string that is signed)
2. Wait for a token (FIFO token bucket, never drops)
3. Sign unless the path is public (prefix allowlist)
4. Dispatch with a per-call timeout
5. Map non-2xx / failure-flagged bodies to ExchangeException

No automatic retries: retry policy belongs to the caller.

============================================================
USAGE
============================================================
```python
client = RateLimitedHttpClient(
    "kraken",
    "https://futures.kraken.com",
    signer=KrakenFuturesSigner(key, secret),
    public_paths=["/derivatives/api/v3/instruments"],
)
data = await client.get("/derivatives/api/v3/openpositions")
```

============================================================
"""

import asyncio
import json
import logging
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union
from urllib.parse import urlencode

import aiohttp

from .config import RateLimitConfig, TimeoutConfig
from .errors import (
    ErrorCategory,
    ExchangeError,
    ExchangeException,
    map_exchange_error,
    create_network_error,
    create_timeout_error,
)
from .logging_utils import AdapterLogger
from .metrics import AdapterMetrics
from .rate_limiter import TokenBucket
from .signing import RequestSigner


logger = logging.getLogger(__name__)


ErrorDetector = Callable[[int, Any], Optional[ExchangeError]]
"""(http_status, decoded_body) -> ExchangeError for failed responses, else None."""

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


class AuthMode(Enum):
    """How a request is authenticated."""

    NONE = "NONE"       # public endpoint
    KEY = "KEY"         # API key header only
    SIGNED = "SIGNED"   # full signature


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def encode_params(params: Optional[Dict[str, Any]]) -> str:
    """Url-encode params, skipping None values."""
    if not params:
        return ""
    return urlencode(
        [(key, _stringify(value)) for key, value in params.items() if value is not None]
    )


def default_error_detector(exchange_id: str) -> ErrorDetector:
    """Treat every non-2xx response as an error, keeping the raw payload."""

    def detect(status: int, payload: Any) -> Optional[ExchangeError]:
        if 200 <= status < 300:
            return None
        code, message = status, str(payload)
        if isinstance(payload, dict):
            code = payload.get("code", payload.get("error", status))
            message = payload.get("msg") or payload.get("message") or str(code)
        return map_exchange_error(exchange_id, code, message, status)

    return detect


# ============================================================
# CLIENT
# ============================================================

class RateLimitedHttpClient:
    """
    Rate-limited, signing REST client for one exchange key.
    """

    def __init__(
        self,
        exchange_id: str,
        base_url: str,
        signer: Optional[RequestSigner] = None,
        rate_limit: Optional[RateLimitConfig] = None,
        timeout: Optional[TimeoutConfig] = None,
        public_paths: Iterable[str] = (),
        key_only_paths: Iterable[str] = (),
        error_detector: Optional[ErrorDetector] = None,
        metrics: Optional[AdapterMetrics] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize client.

        Args:
            exchange_id: Exchange identifier (for errors, logs, metrics)
            base_url: REST base URL
            signer: Request signer; None allows public calls only
            rate_limit: Token bucket settings
            timeout: Default timeout settings
            public_paths: Path prefixes that bypass signing
            key_only_paths: Path prefixes that carry the key but no signature
            error_detector: Exchange-specific failure detection
            metrics: Metrics collector
            session: Externally owned aiohttp session
        """
        self._exchange_id = exchange_id
        self._base_url = base_url.rstrip("/")
        self._signer = signer

        rate_limit = rate_limit or RateLimitConfig()
        self._limiter = TokenBucket(rate_limit.requests_per_second, rate_limit.capacity)
        self._timeout = timeout or TimeoutConfig()

        self._public_paths = tuple(public_paths)
        self._key_only_paths = tuple(key_only_paths)
        self._detect_error = error_detector or default_error_detector(exchange_id)

        self._metrics = metrics or AdapterMetrics(exchange_id)
        self._logger = AdapterLogger(exchange_id)

        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def signer(self) -> Optional[RequestSigner]:
        return self._signer

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # --------------------------------------------------------
    # REQUEST PREPARATION
    # --------------------------------------------------------

    def _auth_mode(self, path: str, auth: Optional[AuthMode]) -> AuthMode:
        if auth is not None:
            return auth
        if any(path.startswith(prefix) for prefix in self._public_paths):
            return AuthMode.NONE
        if any(path.startswith(prefix) for prefix in self._key_only_paths):
            return AuthMode.KEY
        return AuthMode.SIGNED

    @staticmethod
    def _canonicalize(
        method: str,
        params: Optional[Dict[str, Any]],
        data: Union[str, Dict[str, Any], list, None],
    ) -> Tuple[str, str, str]:
        """
        Build (query, body, content_type).

        String data is a form body, structured data is JSON, and for
        POST/PUT without data the params become the form body.
        """
        query = encode_params(params)

        if isinstance(data, str):
            return query, data, FORM_CONTENT_TYPE
        if data is not None:
            return query, json.dumps(data, default=_stringify), JSON_CONTENT_TYPE
        if query and method in ("POST", "PUT"):
            return "", query, FORM_CONTENT_TYPE
        return query, "", JSON_CONTENT_TYPE

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Union[str, Dict[str, Any], list, None] = None,
        timeout_ms: Optional[int] = None,
        auth: Optional[AuthMode] = None,
    ) -> Any:
        """
        Send a request and return the decoded body.

        Raises:
            ExchangeException: On exchange, network or timeout errors
        """
        method = method.upper()
        timeout_ms = timeout_ms or self._timeout.request_timeout_ms
        query, body, content_type = self._canonicalize(method, params, data)

        waited = await self._limiter.acquire()
        self._metrics.record_rate_limit_wait(waited * 1000)

        headers = {"Content-Type": content_type}
        mode = self._auth_mode(path, auth)
        if mode is not AuthMode.NONE:
            if self._signer is None:
                raise ExchangeException(map_exchange_error(
                    self._exchange_id, "NO_CREDENTIALS",
                    f"{path} requires credentials", None,
                ))
            if mode is AuthMode.SIGNED:
                signed = self._signer.sign(method, path, query, body)
                headers.update(signed.headers)
                query = signed.query
            else:
                headers.update(self._signer.key_headers())

        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{query}"

        request_id = self._logger.log_request(
            method=method,
            endpoint=f"{path}?{query}" if query else path,
            headers=headers,
            params=params,
            body=body,
        )

        start_time = time.monotonic()
        try:
            async with self._get_session().request(
                method,
                url,
                data=body.encode() if body else None,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000),
            ) as resp:
                status = resp.status
                text = await resp.text()
                retry_after = resp.headers.get("Retry-After")
        except asyncio.TimeoutError:
            latency_ms = (time.monotonic() - start_time) * 1000
            error = create_timeout_error(self._exchange_id, timeout_ms, path)
            self._record_failure(path, request_id, latency_ms, None, error)
            raise ExchangeException(error)
        except aiohttp.ClientError as e:
            latency_ms = (time.monotonic() - start_time) * 1000
            error = create_network_error(self._exchange_id, str(e), path)
            self._record_failure(path, request_id, latency_ms, None, error)
            raise ExchangeException(error)

        latency_ms = (time.monotonic() - start_time) * 1000

        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = text

        error = self._detect_error(status, payload)
        if error is not None:
            error.operation = error.operation or path
            if error.category is ErrorCategory.RATE_LIMIT and retry_after:
                try:
                    error.retry_after_ms = int(float(retry_after) * 1000)
                except ValueError:
                    pass
            self._record_failure(path, request_id, latency_ms, status, error)
            raise ExchangeException(error)

        self._metrics.record_request(
            endpoint=path,
            latency_ms=latency_ms,
            success=True,
            status_code=status,
        )
        self._logger.log_response(
            request_id=request_id,
            status_code=status,
            latency_ms=latency_ms,
            success=True,
            response_body=payload,
        )
        return payload

    def _record_failure(
        self,
        path: str,
        request_id: str,
        latency_ms: float,
        status: Optional[int],
        error: ExchangeError,
    ) -> None:
        self._metrics.record_request(
            endpoint=path,
            latency_ms=latency_ms,
            success=False,
            status_code=status,
            error_code=error.code,
        )
        self._logger.log_response(
            request_id=request_id,
            status_code=status or 0,
            latency_ms=latency_ms,
            success=False,
            error_code=error.code,
            error_message=error.message,
        )

    # --------------------------------------------------------
    # VERBS
    # --------------------------------------------------------

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request("POST", path, params=params, **kwargs)

    async def put(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request("PUT", path, params=params, **kwargs)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request("DELETE", path, params=params, **kwargs)
