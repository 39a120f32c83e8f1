"""
Exchange Gateway - Metrics and Observability.

============================================================
PURPOSE
============================================================
Metrics collection for one exchange adapter.

METRICS TRACKED:
- REST request latency (by endpoint) and success/failure
- Rate limiter delays
- Streaming latency (heartbeat, one-way estimate)
- Reconnects and dropped streaming messages

============================================================
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


# ============================================================
# METRIC TYPES
# ============================================================

class MetricType(Enum):
    """Types of counted events."""

    REQUEST_SUCCESS = "request_success"
    REQUEST_FAILURE = "request_failure"
    RATE_LIMIT_HIT = "rate_limit_hit"
    RATE_LIMIT_WAIT = "rate_limit_wait"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    RECONNECT = "reconnect"
    DROPPED_MESSAGE = "dropped_message"


@dataclass
class LatencyStats:
    """Latency statistics."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    last_ms: Optional[float] = None

    @property
    def avg_ms(self) -> float:
        """Average latency in ms."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, latency_ms: float) -> None:
        """Record a latency measurement."""
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)
        self.last_ms = latency_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms if self.min_ms != float("inf") else 0,
            "max_ms": self.max_ms,
            "last_ms": self.last_ms,
        }


@dataclass
class CounterStats:
    """Counter with a rolling one-minute window."""

    total: int = 0
    last_minute: int = 0

    _minute_marks: List[float] = field(default_factory=list)

    def increment(self) -> None:
        """Increment counter."""
        now = time.monotonic()
        self.total += 1
        self._minute_marks.append(now)
        self._minute_marks = [t for t in self._minute_marks if t > now - 60]
        self.last_minute = len(self._minute_marks)


# ============================================================
# ADAPTER METRICS
# ============================================================

class AdapterMetrics:
    """
    Metrics collector for one exchange adapter.
    """

    def __init__(self, exchange_id: str):
        self._exchange_id = exchange_id
        self._start_time = datetime.now(timezone.utc)

        self._latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._stream_latency = LatencyStats()
        self._rate_limit_wait_ms = 0.0

        self._counters: Dict[MetricType, CounterStats] = {
            mt: CounterStats() for mt in MetricType
        }
        self._error_codes: Dict[str, int] = defaultdict(int)

    @property
    def exchange_id(self) -> str:
        return self._exchange_id

    # --------------------------------------------------------
    # RECORDING
    # --------------------------------------------------------

    def record_request(
        self,
        endpoint: str,
        latency_ms: float,
        success: bool,
        status_code: int = None,
        error_code: str = None,
    ) -> None:
        """
        Record a REST request.

        Args:
            endpoint: API endpoint
            latency_ms: Request latency in ms
            success: Whether request succeeded
            status_code: HTTP status code
            error_code: Normalized error code if failed
        """
        self._latency[endpoint].record(latency_ms)
        self._latency["_all"].record(latency_ms)

        if success:
            self._counters[MetricType.REQUEST_SUCCESS].increment()
            return

        self._counters[MetricType.REQUEST_FAILURE].increment()
        if error_code:
            self._error_codes[error_code] += 1

            upper = error_code.upper()
            if "RATE" in upper:
                self._counters[MetricType.RATE_LIMIT_HIT].increment()
            elif "TIMEOUT" in upper:
                self._counters[MetricType.TIMEOUT].increment()
            elif "NETWORK" in upper:
                self._counters[MetricType.CONNECTION_ERROR].increment()

    def record_rate_limit_wait(self, wait_ms: float) -> None:
        """Record time a request spent queued in the rate limiter."""
        if wait_ms <= 0:
            return
        self._counters[MetricType.RATE_LIMIT_WAIT].increment()
        self._rate_limit_wait_ms += wait_ms

    def record_latency(self, latency_ms: float) -> None:
        """Record streaming latency published by the heartbeat."""
        self._stream_latency.record(latency_ms)

    def record_reconnect(self) -> None:
        """Record a streaming reconnect."""
        self._counters[MetricType.RECONNECT].increment()

    def record_dropped_message(self) -> None:
        """Record a malformed streaming message that was dropped."""
        self._counters[MetricType.DROPPED_MESSAGE].increment()

    # --------------------------------------------------------
    # REPORTING
    # --------------------------------------------------------

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        success = self._counters[MetricType.REQUEST_SUCCESS]
        failure = self._counters[MetricType.REQUEST_FAILURE]
        total_requests = success.total + failure.total

        return {
            "exchange_id": self._exchange_id,
            "uptime_seconds": uptime,
            "requests": {
                "total": total_requests,
                "success": success.total,
                "failure": failure.total,
                "success_rate": success.total / total_requests if total_requests else 1.0,
                "latency": self._latency.get("_all", LatencyStats()).to_dict(),
            },
            "rate_limiter": {
                "delayed": self._counters[MetricType.RATE_LIMIT_WAIT].total,
                "total_wait_ms": self._rate_limit_wait_ms,
            },
            "stream": {
                "latency": self._stream_latency.to_dict(),
                "reconnects": self._counters[MetricType.RECONNECT].total,
                "dropped_messages": self._counters[MetricType.DROPPED_MESSAGE].total,
            },
            "errors": {
                "rate_limit_hits": self._counters[MetricType.RATE_LIMIT_HIT].total,
                "timeouts": self._counters[MetricType.TIMEOUT].total,
                "connection_errors": self._counters[MetricType.CONNECTION_ERROR].total,
                "by_code": dict(self._error_codes),
            },
        }

    def get_latency_by_endpoint(self) -> Dict[str, Dict[str, Any]]:
        """Get latency stats by endpoint."""
        return {
            endpoint: stats.to_dict()
            for endpoint, stats in self._latency.items()
            if endpoint != "_all"
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._start_time = datetime.now(timezone.utc)
        self._latency.clear()
        self._stream_latency = LatencyStats()
        self._rate_limit_wait_ms = 0.0
        self._counters = {mt: CounterStats() for mt in MetricType}
        self._error_codes.clear()
