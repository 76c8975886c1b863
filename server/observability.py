import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


class StructuredLogger:
    """
    Structured JSON logger.
    Every line carries the event name, level, timestamp and request id.
    """

    def __init__(self, name: str = "fleetdesk"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def _base_fields(self) -> Dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(),
        }

    def log_event(
        self,
        event: str,
        level: str = "INFO",
        **fields
    ) -> None:
        """
        Log a structured event with additional fields.

        Args:
            event: Event name (e.g., "poll.checkin", "command.enqueued")
            level: Log level (DEBUG, INFO, WARN, ERROR)
            **fields: Additional event-specific fields
        """
        log_entry = self._base_fields()
        log_entry["level"] = level
        log_entry["event"] = event
        log_entry.update(fields)

        log_line = json.dumps(log_entry, default=str)

        if level == "ERROR":
            self.logger.error(log_line)
        elif level == "WARN":
            self.logger.warning(log_line)
        elif level == "DEBUG":
            self.logger.debug(log_line)
        else:
            self.logger.info(log_line)


def _label_str(labels: Dict[str, str]) -> str:
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


class MetricsCollector:
    """
    In-memory metrics with Prometheus text exposition.
    Counters, gauges and latency histograms keyed by sorted label tuples.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, Dict[tuple, float]] = defaultdict(dict)
        self.latency_buckets = [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000]

        # Per series: cumulative bucket counts, total count and sum. Size is fixed
        # by the bucket list no matter how many observations arrive.
        self._histograms: Dict[str, Dict[tuple, Dict[str, Any]]] = defaultdict(dict)

    def _new_series(self) -> Dict[str, Any]:
        return {"buckets": [0] * len(self.latency_buckets), "count": 0, "sum": 0.0}

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        """Increment a counter metric"""
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._counters[metric_name][label_tuple] += value

    def set_gauge(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Set a gauge to an absolute value"""
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._gauges[metric_name][label_tuple] = value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a histogram observation"""
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            series = self._histograms[metric_name].get(label_tuple)
            if series is None:
                series = self._histograms[metric_name][label_tuple] = self._new_series()
            for i, bucket in enumerate(self.latency_buckets):
                if value <= bucket:
                    series["buckets"][i] += 1
            series["count"] += 1
            series["sum"] += value

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            return self._counters.get(metric_name, {}).get(label_tuple, 0)

    def get_prometheus_text(self) -> str:
        """Render all metrics in Prometheus plain text format."""
        lines = []

        with self._lock:
            for metric_name, label_data in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{_label_str(dict(label_tuple))}}} {count}")
                    else:
                        lines.append(f"{metric_name} {count}")

            for metric_name, label_data in sorted(self._gauges.items()):
                lines.append(f"# TYPE {metric_name} gauge")
                for label_tuple, value in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{_label_str(dict(label_tuple))}}} {value}")
                    else:
                        lines.append(f"{metric_name} {value}")

            for metric_name, label_data in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for label_tuple, series in sorted(label_data.items()):
                    label_dict = dict(label_tuple)

                    for bucket, count in zip(self.latency_buckets, series["buckets"]):
                        bucket_labels = {**label_dict, "le": str(bucket)}
                        lines.append(f"{metric_name}_bucket{{{_label_str(bucket_labels)}}} {count}")

                    inf_labels = {**label_dict, "le": "+Inf"}
                    lines.append(f"{metric_name}_bucket{{{_label_str(inf_labels)}}} {series['count']}")

                    suffix = f"{{{_label_str(label_dict)}}}" if label_dict else ""
                    lines.append(f"{metric_name}_count{suffix} {series['count']}")
                    lines.append(f"{metric_name}_sum{suffix} {series['sum']}")

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
