"""Metrics collection and the sync monitoring sink.

The collector keeps counters, gauges and histograms in memory. The sync
orchestrator does not read any of it back; it only pushes per-page counters
through a MonitoringSink so dashboards and alerting can consume them.
"""

import threading
from typing import Any, Optional, Protocol


class MetricsCollector:
    """Thread-safe in-memory metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}

    def _make_key(self, name: str, labels: Optional[dict[str, str]] = None) -> str:
        """Create a unique key for a metric with labels."""
        if not labels:
            return name

        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Set a gauge metric value."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Record a value in a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms.setdefault(key, []).append(value)

    def get(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        """Get a counter or gauge value, 0 if unknown."""
        key = self._make_key(name, labels)
        with self._lock:
            if key in self._counters:
                return self._counters[key]
            if key in self._gauges:
                return self._gauges[key]
            return 0

    def get_histogram_stats(
        self,
        name: str,
        labels: Optional[dict[str, str]] = None,
    ) -> dict[str, float]:
        """Get count, min, max, avg and percentiles for a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            values = list(self._histograms.get(key, []))

        if not values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0}

        sorted_values = sorted(values)
        count = len(values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(values) / count,
            "p50": sorted_values[int(count * 0.5)],
            "p95": sorted_values[min(int(count * 0.95), count - 1)],
            "p99": sorted_values[min(int(count * 0.99), count - 1)],
        }

    def get_all(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        with self._lock:
            histogram_keys = list(self._histograms.keys())
            result = {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }
        result["histograms"] = {k: self.get_histogram_stats(k) for k in histogram_keys}
        return result

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


class MonitoringSink(Protocol):
    """Receives sync counters; never consulted by the sync logic itself."""

    def record_page(self, session_id: str, account_id: str, counters: dict[str, int]) -> None: ...

    def record_completion(
        self,
        session_id: str,
        account_id: str,
        status: str,
        counters: dict[str, int],
    ) -> None: ...


class MetricsMonitoringSink:
    """MonitoringSink that publishes sync counters to a MetricsCollector.

    Gauges hold the latest cumulative value per account; counters count
    pages and finished sessions by status.
    """

    GAUGE_PREFIX = "sync_"

    def __init__(self, collector: Optional[MetricsCollector] = None):
        self.collector = collector or get_collector()

    def record_page(self, session_id: str, account_id: str, counters: dict[str, int]) -> None:
        labels = {"account_id": account_id}
        self.collector.increment("sync_pages_total", labels=labels)
        for name, value in counters.items():
            self.collector.set_gauge(f"{self.GAUGE_PREFIX}{name}", value, labels=labels)

    def record_completion(
        self,
        session_id: str,
        account_id: str,
        status: str,
        counters: dict[str, int],
    ) -> None:
        self.collector.increment(
            "sync_sessions_total",
            labels={"account_id": account_id, "status": status},
        )
        self.collector.record_histogram(
            "sync_session_messages",
            counters.get("messages_processed", 0),
            labels={"account_id": account_id},
        )


# Global metrics collector instance
_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    """Get the global metrics collector."""
    return _collector
