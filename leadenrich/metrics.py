"""
Process-wide metrics: labelled counters, histograms and gauges.

Values are kept in memory and exposed two ways: ``snapshot()`` for logs, the
run report and tests, and ``render()`` in the Prometheus text format for an
external collector to scrape.
"""

import bisect
import threading
from typing import Dict, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]

LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
COST_BUCKETS = (0.0, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _percentile(values: List[float], p: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = int((p / 100) * (len(ordered) - 1))
    return ordered[idx]


class _Histogram:
    # Raw observations are kept (bounded) for percentiles in snapshots
    MAX_SAMPLES = 10000

    def __init__(self, buckets):
        self.buckets = tuple(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self.samples: List[float] = []

    def observe(self, value: float):
        self.count += 1
        self.sum += value
        idx = bisect.bisect_left(self.buckets, value)
        if idx < len(self.buckets):
            self.bucket_counts[idx] += 1
        self.samples.append(value)
        if len(self.samples) > self.MAX_SAMPLES:
            del self.samples[: len(self.samples) - self.MAX_SAMPLES]


class MetricsCollector:
    """
    Thread-safe metric registry.

    Counter, gauge and histogram names share one namespace; each name keeps
    one series per distinct label set.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = {}
        self._gauges: Dict[str, Dict[LabelKey, float]] = {}
        self._histograms: Dict[str, Dict[LabelKey, _Histogram]] = {}
        self._buckets: Dict[str, tuple] = {}
        self._help: Dict[str, str] = {}

    def describe(self, name: str, help_text: str, buckets=None):
        with self._lock:
            self._help[name] = help_text
            if buckets is not None:
                self._buckets[name] = tuple(buckets)

    def inc(self, name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None):
        key = _label_key(labels)
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0.0) + amount

    def set(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        key = _label_key(labels)
        with self._lock:
            self._gauges.setdefault(name, {})[key] = float(value)

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        key = _label_key(labels)
        with self._lock:
            series = self._histograms.setdefault(name, {})
            hist = series.get(key)
            if hist is None:
                hist = _Histogram(self._buckets.get(name, LATENCY_BUCKETS))
                series[key] = hist
            hist.observe(float(value))

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a counter or gauge series (0 when absent)."""
        key = _label_key(labels)
        with self._lock:
            if name in self._gauges and key in self._gauges[name]:
                return self._gauges[name][key]
            return self._counters.get(name, {}).get(key, 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across all label sets."""
        with self._lock:
            return sum(self._counters.get(name, {}).values())

    def histogram(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        key = _label_key(labels)
        with self._lock:
            hist = self._histograms.get(name, {}).get(key)
            if hist is None:
                return {"count": 0, "sum": 0.0, "p50": 0.0, "p95": 0.0}
            return {
                "count": hist.count,
                "sum": hist.sum,
                "p50": _percentile(hist.samples, 50),
                "p95": _percentile(hist.samples, 95),
            }

    def snapshot(self) -> Dict[str, List[dict]]:
        out: Dict[str, List[dict]] = {}
        with self._lock:
            for source in (self._counters, self._gauges):
                for name, series in source.items():
                    out.setdefault(name, []).extend(
                        {"labels": dict(k), "value": v} for k, v in series.items()
                    )
            for name, series in self._histograms.items():
                out.setdefault(name, []).extend(
                    {
                        "labels": dict(k),
                        "count": h.count,
                        "sum": h.sum,
                        "p50": _percentile(h.samples, 50),
                        "p95": _percentile(h.samples, 95),
                    }
                    for k, h in series.items()
                )
        return out

    def render(self) -> str:
        """Prometheus text exposition format."""
        lines: List[str] = []
        with self._lock:
            for kind, source in (("counter", self._counters), ("gauge", self._gauges)):
                for name in sorted(source):
                    if name in self._help:
                        lines.append(f"# HELP {name} {self._help[name]}")
                    lines.append(f"# TYPE {name} {kind}")
                    for key, value in sorted(source[name].items()):
                        lines.append(f"{name}{_fmt_labels(key)} {_fmt_value(value)}")
            for name in sorted(self._histograms):
                if name in self._help:
                    lines.append(f"# HELP {name} {self._help[name]}")
                lines.append(f"# TYPE {name} histogram")
                for key, hist in sorted(self._histograms[name].items()):
                    cumulative = 0
                    for bound, count in zip(hist.buckets, hist.bucket_counts):
                        cumulative += count
                        lines.append(
                            f"{name}_bucket{_fmt_labels(key + (('le', _fmt_value(bound)),))} {cumulative}"
                        )
                    lines.append(f"{name}_bucket{_fmt_labels(key + (('le', '+Inf'),))} {hist.count}")
                    lines.append(f"{name}_sum{_fmt_labels(key)} {_fmt_value(hist.sum)}")
                    lines.append(f"{name}_count{_fmt_labels(key)} {hist.count}")
        return "\n".join(lines) + "\n"

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


def _fmt_labels(key: LabelKey) -> str:
    if not key:
        return ""
    inner = ",".join(
        '{}="{}"'.format(k, v.replace("\\", "\\\\").replace('"', '\\"')) for k, v in key
    )
    return "{" + inner + "}"


def _fmt_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def register_default_metrics(collector: MetricsCollector) -> MetricsCollector:
    collector.describe("enrichment_requests_total", "Enrichment requests by provider")
    collector.describe("enrichment_cache_hits_total", "Requests served from the result cache")
    collector.describe("enrichment_shared_total", "Requests that joined an in-flight provider call")
    collector.describe("enrichment_provider_calls_total", "Billed provider calls")
    collector.describe("enrichment_errors_total", "Classified enrichment failures")
    collector.describe("enrichment_latency_seconds", "End-to-end enrich() latency", LATENCY_BUCKETS)
    collector.describe("enrichment_cost_usd", "Provider cost per call in USD", COST_BUCKETS)
    collector.describe("enrichment_cache_hit_ratio", "Cache hits and shared calls / requests since start")
    collector.describe("provider_calls_today", "Provider calls since local midnight")
    collector.describe("provider_quota_usage", "Provider calls today / daily quota")
    collector.describe("webhook_deliveries_total", "Webhook delivery attempts by outcome")
    collector.describe("webhook_delivery_seconds", "Webhook POST latency", LATENCY_BUCKETS)
    collector.describe("backfill_runs_total", "Backfill runs by terminal status")
    return collector


# Global collector instance
_global_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get or create the process-wide collector."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = register_default_metrics(MetricsCollector())
    return _global_metrics


def reset_metrics():
    """Reset the global collector (useful for testing)."""
    global _global_metrics
    _global_metrics = None
