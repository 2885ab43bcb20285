"""
In-process metrics for the monitoring pipeline
"""
import threading
from collections import deque, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional


@dataclass
class MetricPoint:
    """Single metric data point"""
    name: str
    value: float
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    unit: str = "count"


class MetricsCollector:
    """Counters, gauges and bounded histograms with a short point history"""

    def __init__(self, max_points_per_metric: int = 1000):
        self.max_points = max_points_per_metric
        self.metrics: Dict[str, Deque[MetricPoint]] = defaultdict(lambda: deque(maxlen=max_points_per_metric))
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=max_points_per_metric))
        self._lock = threading.Lock()

    def increment(self, name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None):
        with self._lock:
            self.counters[name] += value
            self._record_point(name, self.counters[name], tags or {}, "count")

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        with self._lock:
            self.gauges[name] = value
            self._record_point(name, value, tags or {}, "gauge")

    def record_histogram(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        with self._lock:
            self.histograms[name].append(value)
            self._record_point(name, value, tags or {}, "histogram")

    def _record_point(self, name: str, value: float, tags: Dict[str, str], unit: str):
        self.metrics[name].append(MetricPoint(
            name=name,
            value=value,
            timestamp=datetime.utcnow(),
            tags=tags,
            unit=unit
        ))

    def get_metric_summary(self, name: str, hours: int = 24) -> Dict[str, Any]:
        """Get summary statistics for a metric"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)
        values = [point.value for point in self.metrics.get(name, ()) if point.timestamp > cutoff_time]

        if not values:
            return {"error": "No data available"}

        return {
            "name": name,
            "count": len(values),
            "min": min(values),
            "max": max(values),
            "avg": sum(values) / len(values),
            "latest": values[-1],
            "time_window_hours": hours
        }

    def get_all_current_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histogram_counts": {name: len(values) for name, values in self.histograms.items()}
            }
