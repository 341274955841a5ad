"""
Monitoring utilities

In-process metrics collection for the shipment service:
- Request metrics (latency, error rates)
- Shipment metrics (creations, failures by kind, webhook outcomes, transitions)

Uses Prometheus-style metrics that can be scraped from GET /metrics.
"""
import logging
import re
import time
from collections import deque
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional, Tuple
from threading import Lock

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    In-memory metrics collector with rolling windows.

    Collects:
    - Counters (monotonically increasing values)
    - Gauges (point-in-time values)
    - Histograms (distribution of values)
    """

    def __init__(self, window_minutes: int = 60):
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = {}  # Rolling window of values
        self._window_minutes = window_minutes
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1, labels: Dict[str, str] = None) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def gauge(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Set a gauge metric (point-in-time value)."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def observe(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Record a histogram observation (e.g., latency)."""
        key = self._make_key(name, labels)
        now = datetime.now(timezone.utc)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = deque(maxlen=10000)  # Keep last 10k observations
            self._histograms[key].append((now, value))

    def _make_key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        """Create metric key from name and labels."""
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        """Get counter value."""
        key = self._make_key(name, labels)
        return self._counters.get(key, 0)

    def get_gauge(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        key = self._make_key(name, labels)
        return self._gauges.get(key)

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None,
                            window_seconds: int = 300) -> Dict:
        """Get histogram statistics for time window."""
        key = self._make_key(name, labels)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)

        with self._lock:
            if key not in self._histograms:
                return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}

            values = [v for ts, v in self._histograms[key] if ts > cutoff]

        return _summarize(values)

    def get_all_metrics(self) -> Dict:
        """Get all metrics for export/display."""
        now = datetime.now(timezone.utc)
        uptime = (now - self._start_time).total_seconds()
        cutoff = now - timedelta(minutes=self._window_minutes)

        with self._lock:
            histograms = {
                key: _summarize([v for ts, v in values if ts > cutoff])
                for key, values in self._histograms.items()
            }
            counters = dict(self._counters)
            gauges = dict(self._gauges)

        return {
            "uptime_seconds": uptime,
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
            "collected_at": now.isoformat(),
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


def _summarize(values) -> Dict:
    if not values:
        return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}

    values = sorted(values)
    p95_idx = int(len(values) * 0.95)

    return {
        "count": len(values),
        "avg": sum(values) / len(values),
        "min": values[0],
        "max": values[-1],
        "p95": values[p95_idx] if p95_idx < len(values) else values[-1],
    }


# Global metrics collector
metrics = MetricsCollector()


# ============== Request Metrics Middleware ==============

class RequestMetricsMiddleware:
    """
    Middleware to collect request metrics.

    Usage in main.py:
        app.add_middleware(RequestMetricsMiddleware)
    """

    _ID_PATTERNS = (
        (re.compile(r"/shp_[0-9a-f]+"), "/:shipment_id"),
        (re.compile(r"/\d+"), "/:id"),
        (re.compile(r"/[0-9a-f-]{36}"), "/:uuid"),
    )

    def __init__(self, app, collector: MetricsCollector = None):
        self.app = app
        self.collector = collector or metrics

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start_time
            method = scope.get("method", "UNKNOWN")
            path = self._normalize_path(scope.get("path", "/"))

            labels = {"method": method, "path": path, "status": str(status_code)}

            self.collector.observe("http_request_duration_seconds", duration, labels)
            self.collector.increment("http_requests_total", labels=labels)

            if status_code >= 400:
                self.collector.increment("http_errors_total", labels={"status": str(status_code)})

    def _normalize_path(self, path: str) -> str:
        """Normalize path by replacing IDs with placeholders."""
        for pattern, placeholder in self._ID_PATTERNS:
            path = pattern.sub(placeholder, path)
        return path


# ============== Metrics Endpoint Data ==============

def _split_key(key: str) -> Tuple[str, str]:
    if "{" not in key:
        return key, ""
    name, _, rest = key.partition("{")
    return name, "{" + rest


def get_prometheus_metrics(collector: MetricsCollector = None) -> str:
    """
    Export metrics in Prometheus text format.

    Used by the /metrics endpoint:
        @app.get("/metrics")
        async def prometheus_metrics():
            return Response(content=get_prometheus_metrics(), media_type="text/plain")
    """
    collector = collector or metrics
    lines = []
    all_metrics = collector.get_all_metrics()

    lines.append("# HELP app_uptime_seconds Application uptime in seconds")
    lines.append("# TYPE app_uptime_seconds gauge")
    lines.append(f"app_uptime_seconds {all_metrics['uptime_seconds']:.2f}")

    typed = set()
    for key, value in sorted(all_metrics["counters"].items()):
        name, labels = _split_key(key)
        if name not in typed:
            lines.append(f"# TYPE {name} counter")
            typed.add(name)
        lines.append(f"{name}{labels} {value}")

    for key, value in sorted(all_metrics["gauges"].items()):
        name, labels = _split_key(key)
        if name not in typed:
            lines.append(f"# TYPE {name} gauge")
            typed.add(name)
        lines.append(f"{name}{labels} {value:.4f}")

    for key, stats in sorted(all_metrics["histograms"].items()):
        if stats["count"] == 0:
            continue
        name, labels = _split_key(key)
        if name not in typed:
            lines.append(f"# TYPE {name} summary")
            typed.add(name)
        lines.append(f"{name}_count{labels} {stats['count']}")
        lines.append(f"{name}_sum{labels} {stats['avg'] * stats['count']:.4f}")
        lines.append(f"{name}_p95{labels} {stats['p95']:.4f}")

    return "\n".join(lines) + "\n"
