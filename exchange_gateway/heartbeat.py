"""
Exchange Gateway - Heartbeat Monitor.

============================================================
PURPOSE
============================================================
Detects half-open connections and estimates latency.

CYCLE:
1. Send a ping and record the send time
2. Wait up to `timeout_ms` for pong()
3. Pong:    publish one-way latency (RTT / 2), sleep
            `interval_ms`, repeat
4. Timeout: call on_timeout() exactly once and stop

The owning session restarts the monitor on every new
connection.

============================================================
"""

import asyncio
import logging
import time
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    """
    Ping/pong liveness monitor for one connection.
    """

    def __init__(
        self,
        send_ping: Callable[[], None],
        on_latency: Callable[[float], None],
        on_timeout: Callable[[], None],
        interval_ms: int = 10000,
        timeout_ms: int = 10000,
    ):
        """
        Initialize monitor.

        Args:
            send_ping: Sends one ping on the wire
            on_latency: Receives one-way latency in ms
            on_timeout: Called when a pong does not arrive in time
            interval_ms: Pause between a pong and the next ping
            timeout_ms: Pong deadline
        """
        self._send_ping = send_ping
        self._on_latency = on_latency
        self._on_timeout = on_timeout
        self._interval = interval_ms / 1000
        self._timeout = timeout_ms / 1000

        self._task: Optional[asyncio.Task] = None
        self._pong_event: Optional[asyncio.Event] = None

        self._last_ping_at = 0.0
        self._last_pong_at = 0.0
        self._latency_ms: Optional[float] = None

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def latency_ms(self) -> Optional[float]:
        """Last published one-way latency."""
        return self._latency_ms

    @property
    def last_ping_at(self) -> float:
        return self._last_ping_at

    @property
    def last_pong_at(self) -> float:
        return self._last_pong_at

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def start(self) -> None:
        """Start the ping cycle on the running loop (restarts if running)."""
        self.stop()
        self._pong_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Stop the ping cycle. Safe to call repeatedly."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._pong_event = None

    def pong(self) -> None:
        """Record a pong from the exchange."""
        now = time.monotonic()
        self._last_pong_at = now
        if self._pong_event is None or self._pong_event.is_set() or not self._last_ping_at:
            return

        self._latency_ms = (now - self._last_ping_at) * 1000 / 2
        self._pong_event.set()
        try:
            self._on_latency(self._latency_ms)
        except Exception as e:
            logger.error(f"Latency callback error: {e}", exc_info=True)

    # --------------------------------------------------------
    # LOOP
    # --------------------------------------------------------

    async def _run(self) -> None:
        event = self._pong_event
        while True:
            event.clear()
            self._last_ping_at = time.monotonic()
            self._send_ping()

            try:
                await asyncio.wait_for(event.wait(), self._timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Pong not received within {self._timeout * 1000:.0f}ms")
                self._task = None
                self._on_timeout()
                return

            await asyncio.sleep(self._interval)
