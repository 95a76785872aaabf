"""In-process metrics for the chat pipeline.

Exposed in Prometheus text format on ``/metrics`` and as JSON on
``/metrics/json``. Tracks:
- HTTP request counts and latencies
- Publishes to the broker and deliveries consumed from it
- WebSocket fan-out (frames queued and dropped) and live connections
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


@dataclass
class Histogram:
    """Cumulative-bucket latency histogram."""

    buckets: tuple[float, ...] = DEFAULT_BUCKETS
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bound in self.buckets:
            if value <= bound:
                self.counts[bound] += 1

    def render(self, name: str, labels: str = "") -> list[str]:
        extra = f", {labels}" if labels else ""
        suffix = f"{{{labels}}}" if labels else ""
        lines = [f'{name}_bucket{{le="{bound}"{extra}}} {self.counts[bound]}' for bound in self.buckets]
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        lines.append(f"{name}_sum{suffix} {self.sum}")
        lines.append(f"{name}_count{suffix} {self.count}")
        return lines


class MetricsRegistry:
    """Thread-safe store of counters, gauges and histograms keyed by labels."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)

    @staticmethod
    def _key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        key = self._key(labels)
        with self._lock:
            self._counters[name][key] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._gauges[name][key] = value

    def add_gauge(self, name: str, delta: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._gauges[name][key] += delta

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            histogram = self._histograms[name].setdefault(key, Histogram())
            histogram.observe(value)

    def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(self._key(labels), 0)

    def gauge_value(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(self._key(labels), 0.0)

    def to_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in series.items():
                    lines.append(f"# TYPE {name} {kind}")
                    for key, value in values.items():
                        lines.append(f"{name}{{{key}}} {value}" if key else f"{name} {value}")
                    lines.append("")
            for name, histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for key, histogram in histograms.items():
                    lines.extend(histogram.render(name, key))
                lines.append("")
        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "gauges": {k: dict(v) for k, v in self._gauges.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }


metrics = MetricsRegistry()


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request."""
    labels = {"method": method, "path": path, "status": str(status_code)}
    metrics.inc_counter("jobchat_http_requests_total", labels)
    metrics.observe_histogram("jobchat_http_request_duration_seconds", duration, labels)


def record_publish(outcome: str, duration: float) -> None:
    """Record a broker publish (outcome: ok, failed)."""
    metrics.inc_counter("jobchat_messages_published_total", {"outcome": outcome})
    metrics.observe_histogram("jobchat_publish_duration_seconds", duration)


def record_consumed(outcome: str) -> None:
    """Record a consumed delivery (outcome: persisted, duplicate, poison, requeued)."""
    metrics.inc_counter("jobchat_deliveries_consumed_total", {"outcome": outcome})


def record_fanout(outcome: str, count: int = 1) -> None:
    """Record WebSocket frames handed to connections (outcome: queued, dropped)."""
    metrics.inc_counter("jobchat_fanout_frames_total", {"outcome": outcome}, count)


def record_connection(delta: int) -> None:
    """Adjust the live WebSocket connection gauge."""
    metrics.add_gauge("jobchat_ws_connections", delta)
