"""Process-wide bounded metrics sink and its Prometheus exposition."""

import math
import threading
import time
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional
from prometheus_client import CollectorRegistry, Counter, generate_latest
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

REQUEST_DURATION = "request_duration"
TOOL_SERIES_PREFIX = "tool:"
QUANTILES = (0.5, 0.95, 0.99)
DEFAULT_CAPACITY = 1000


def tool_series(tool_name: str) -> str:
    return f"{TOOL_SERIES_PREFIX}{tool_name}"


def percentile(values: Iterable[float], p: float) -> float:
    """Nearest-rank percentile using ``index = ceil((n - 1) * p)``."""
    if not 0 <= p <= 1:
        raise ValueError(f"percentile must be between 0 and 1, got {p}")
    ordered = sorted(values)
    if not ordered:
        return 0
    index = math.ceil((len(ordered) - 1) * p)
    return ordered[index]


class MetricsSink:
    """Named ring buffers of numeric samples.

    Each series keeps at most ``capacity`` samples; appending to a full series
    evicts the oldest one. This is the only state shared between requests.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.started = time.monotonic()
        self._series: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def record(self, series: str, value: float) -> None:
        with self._lock:
            buffer = self._series.get(series)
            if buffer is None:
                buffer = deque(maxlen=self.capacity)
                self._series[series] = buffer
            buffer.append(value)

    def samples(self, series: str) -> List[float]:
        """Snapshot copy of a series, oldest first."""
        with self._lock:
            return list(self._series.get(series, ()))

    def count(self, series: str) -> int:
        with self._lock:
            return len(self._series.get(series, ()))

    def series(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def percentile(self, series: str, p: float) -> float:
        return percentile(self.samples(series), p)

    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started


class SinkCollector(Collector):
    """Expose the sink's series as quantile gauges."""

    def __init__(self, sink: MetricsSink):
        self.sink = sink

    def collect(self):
        uptime = GaugeMetricFamily(
            "process_uptime_seconds", "Server process uptime in seconds"
        )
        uptime.add_metric([], self.sink.uptime_seconds())
        yield uptime

        pattern = GaugeMetricFamily(
            "mcp_pattern", "MCP server architecture pattern identifier", labels=["type"]
        )
        pattern.add_metric(["stateless"], 1)
        yield pattern

        requests = GaugeMetricFamily(
            "mcp_request_duration_milliseconds",
            "HTTP request duration quantiles over the most recent requests",
            labels=["quantile"],
        )
        samples = self.sink.samples(REQUEST_DURATION)
        for q in QUANTILES:
            requests.add_metric([str(q)], percentile(samples, q))
        yield requests

        request_count = GaugeMetricFamily(
            "mcp_request_duration_milliseconds_count",
            "Number of retained request duration samples",
        )
        request_count.add_metric([], len(samples))
        yield request_count

        tools = GaugeMetricFamily(
            "mcp_tool_duration_milliseconds",
            "Tool execution duration quantiles over the most recent calls",
            labels=["tool", "quantile"],
        )
        tool_count = GaugeMetricFamily(
            "mcp_tool_duration_milliseconds_count",
            "Number of retained tool duration samples",
            labels=["tool"],
        )
        for name in self.sink.series():
            if not name.startswith(TOOL_SERIES_PREFIX):
                continue
            tool_name = name[len(TOOL_SERIES_PREFIX):]
            durations = self.sink.samples(name)
            for q in QUANTILES:
                tools.add_metric([tool_name, str(q)], percentile(durations, q))
            tool_count.add_metric([tool_name], len(durations))
        yield tools
        yield tool_count


class ServerMetrics:
    """Sink plus Prometheus counters registered on a private registry."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, registry: Optional[CollectorRegistry] = None):
        self.sink = MetricsSink(capacity)
        self.registry = registry or CollectorRegistry()
        self.registry.register(SinkCollector(self.sink))
        self.request_count = Counter(
            "mcp_requests_total", "Total MCP requests", ["method", "status"],
            registry=self.registry,
        )
        self.tool_calls = Counter(
            "mcp_tool_calls_total", "Total tool calls", ["tool", "status"],
            registry=self.registry,
        )

    def record_request(self, duration_ms: float) -> None:
        self.sink.record(REQUEST_DURATION, duration_ms)

    def record_tool(self, tool_name: str, duration_ms: float, status: str = "success") -> None:
        self.sink.record(tool_series(tool_name), duration_ms)
        self.tool_calls.labels(tool=tool_name, status=status).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
