"""
Exchange Gateway Test Fixtures.

============================================================
PURPOSE
============================================================
In-memory stand-ins for the network:

- FakeWebSocket / FakeTransport: scripted websocket server
- FakeHttpSession: aiohttp-compatible session routed by
  (method, path)

============================================================
"""

import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple
from urllib.parse import parse_qsl, unquote, urlsplit

import aiohttp
import pytest


# ============================================================
# WEBSOCKET
# ============================================================

class FakeWebSocket:
    """Websocket double. Frames sent by the client land in `sent`."""

    def __init__(self, url: str):
        self.url = url
        self.sent: List[Dict[str, Any]] = []
        self.pings = 0
        self.pongs = 0
        self.auto_pong = False
        self._closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_str(self, data: str) -> None:
        if self._closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(json.loads(data))

    async def ping(self, message: bytes = b"") -> None:
        self.pings += 1
        if self.auto_pong:
            self.feed_pong()

    async def pong(self, message: bytes = b"") -> None:
        self.pongs += 1

    async def close(self) -> bool:
        self._closed = True
        self._inbox.put_nowait(None)
        return True

    def exception(self):
        return None

    def feed(self, payload: Any) -> None:
        """Deliver a JSON text frame to the client."""
        self._inbox.put_nowait(
            aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, json.dumps(payload), None)
        )

    def feed_raw(self, text: str) -> None:
        self._inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, text, None))

    def feed_pong(self) -> None:
        self._inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.PONG, b"", None))

    def drop(self) -> None:
        """Server-side close."""
        self._inbox.put_nowait(None)

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("event") == name]

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._inbox.get()
        if msg is None:
            self._closed = True
            raise StopAsyncIteration
        return msg


class FakeTransport:
    """Transport factory handing out a new FakeWebSocket per connect."""

    def __init__(self):
        self.sockets: List[FakeWebSocket] = []
        self.failures = 0
        self.auto_pong = False

    async def __call__(self, url: str) -> FakeWebSocket:
        if self.failures:
            self.failures -= 1
            raise aiohttp.ClientConnectionError("connection refused")
        ws = FakeWebSocket(url)
        ws.auto_pong = self.auto_pong
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> FakeWebSocket:
        return self.sockets[-1]


# ============================================================
# HTTP
# ============================================================

class FakeResponse:
    def __init__(self, status: int, payload: Any, headers: Dict[str, str] = None):
        self.status = status
        self._payload = payload
        self.headers = headers or {}

    async def text(self) -> str:
        if isinstance(self._payload, str):
            return self._payload
        return json.dumps(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeHttpSession:
    """aiohttp.ClientSession double. Unrouted requests get a 404."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[SimpleNamespace] = []
        self.closed = False

    def route(self, method: str, path: str, payload: Any = None, status: int = 200, headers=None) -> None:
        """Register a response, or an exception to raise."""
        self.routes[(method, path)] = (payload, status, headers)

    def request(self, method, url, data=None, headers=None, timeout=None):
        parts = urlsplit(url)
        body = data.decode() if data else ""
        self.requests.append(SimpleNamespace(
            method=method,
            path=parts.path,
            query=dict(parse_qsl(parts.query)),
            body=body,
            form=dict(parse_qsl(body)) if body and not body.startswith("json=") else {},
            json_body=json.loads(unquote(body[5:])) if body.startswith("json=") else None,
            headers=headers or {},
        ))

        payload, status, response_headers = self.routes.get(
            (method, parts.path), ({"error": "notFound"}, 404, None)
        )
        if isinstance(payload, BaseException):
            raise payload
        return FakeResponse(status, payload, response_headers)

    def calls(self, method: str, path: str) -> List[SimpleNamespace]:
        return [r for r in self.requests if r.method == method and r.path == path]

    async def close(self) -> None:
        self.closed = True


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def http_session():
    return FakeHttpSession()


@pytest.fixture
def eventually():
    """Poll a condition on the running loop until it holds."""

    async def wait(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.001)

    return wait
