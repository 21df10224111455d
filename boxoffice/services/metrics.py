"""Metrics Registry - counters, gauges and duration histograms with a text export.

Invariants:
    - Histogram buckets are fixed at construction and cumulative (le semantics):
      a 40ms timing counts in le=50, le=100, ... le=10000
    - Counters keep a total plus a breakdown per serialized tag set
    - Recent samples are a bounded ring (1000 by default)
    - Prometheus names replace "." and "-" with "_" and are lowercased

Design Decisions:
    - Instance-owned and passed by handle: tests build their own registry,
      the app keeps one in the BoxOffice container
    - Hand-rolled text exposition: the format is a dozen lines and the
      registry needs business helpers a client library would not give us
"""

import logging
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from boxoffice.core.domain_types import ScanOutcome

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS: tuple[float, ...] = (10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
MAX_RECENT = 1000

Tags = Mapping[str, str | int | float | bool]


@dataclass
class _TaggedValue:
    value: float = 0
    by_tags: dict[str, float] = field(default_factory=dict)


@dataclass
class HistogramData:
    buckets: dict[float, int]
    count: int = 0
    sum: float = 0.0
    min: float = float("inf")
    max: float = float("-inf")

    @property
    def average(self) -> float:
        return self.sum / self.count if self.count else 0.0


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    timestamp: float
    tags: dict[str, str] | None = None


class MetricsRegistry:
    """Process-local metrics store."""

    def __init__(
        self,
        buckets: tuple[float, ...] = DEFAULT_BUCKETS,
        max_recent: int = MAX_RECENT,
        clock: Callable[[], float] = time.time,
    ):
        self._buckets = tuple(sorted(buckets))
        self._clock = clock
        self._counters: dict[str, _TaggedValue] = {}
        self._gauges: dict[str, _TaggedValue] = {}
        self._histograms: dict[str, HistogramData] = {}
        self._recent: deque[MetricSample] = deque(maxlen=max_recent)

    # ─── Counters / Gauges ───────────────────────────────────────

    def increment(self, name: str, value: float = 1, tags: Tags | None = None) -> None:
        counter = self._counters.setdefault(name, _TaggedValue())
        counter.value += value
        tag_key = _serialize_tags(tags)
        counter.by_tags[tag_key] = counter.by_tags.get(tag_key, 0) + value
        self._remember(name, value, tags)

    def get_counter(self, name: str, tags: Tags | None = None) -> float:
        counter = self._counters.get(name)
        if counter is None:
            return 0
        if tags:
            return counter.by_tags.get(_serialize_tags(tags), 0)
        return counter.value

    def gauge(self, name: str, value: float, tags: Tags | None = None) -> None:
        gauge = self._gauges.setdefault(name, _TaggedValue())
        gauge.value = value
        gauge.by_tags[_serialize_tags(tags)] = value
        self._remember(name, value, tags)

    def get_gauge(self, name: str, tags: Tags | None = None) -> float:
        gauge = self._gauges.get(name)
        if gauge is None:
            return 0
        if tags:
            return gauge.by_tags.get(_serialize_tags(tags), 0)
        return gauge.value

    # ─── Histograms ──────────────────────────────────────────────

    def timing(self, name: str, duration_ms: float, tags: Tags | None = None) -> None:
        histogram = self._histograms.get(name)
        if histogram is None:
            histogram = HistogramData(buckets={b: 0 for b in self._buckets})
            self._histograms[name] = histogram
        histogram.count += 1
        histogram.sum += duration_ms
        histogram.min = min(histogram.min, duration_ms)
        histogram.max = max(histogram.max, duration_ms)
        for bound in self._buckets:
            if duration_ms <= bound:
                histogram.buckets[bound] += 1
        self._remember(name, duration_ms, tags)

    def get_histogram(self, name: str) -> HistogramData | None:
        return self._histograms.get(name)

    def get_average_timing(self, name: str) -> float:
        histogram = self._histograms.get(name)
        return histogram.average if histogram else 0.0

    def get_percentile(self, name: str, percentile: float) -> float:
        """Upper bound of the first bucket holding the percentile.

        Approximate: falls back to the observed max when the target lies
        beyond the largest bucket.
        """
        histogram = self._histograms.get(name)
        if histogram is None or histogram.count == 0:
            return 0.0
        target = histogram.count * (percentile / 100)
        for bound in self._buckets:
            if histogram.buckets[bound] >= target:
                return bound
        return histogram.max

    # ─── Reads / Export ──────────────────────────────────────────

    def get_all(self) -> dict[str, float]:
        result: dict[str, float] = {}
        for name, counter in self._counters.items():
            result[f"counter.{name}"] = counter.value
        for name, gauge in self._gauges.items():
            result[f"gauge.{name}"] = gauge.value
        for name, h in self._histograms.items():
            result[f"histogram.{name}.count"] = h.count
            result[f"histogram.{name}.sum"] = h.sum
            result[f"histogram.{name}.avg"] = h.average
            result[f"histogram.{name}.min"] = 0 if h.count == 0 else h.min
            result[f"histogram.{name}.max"] = 0 if h.count == 0 else h.max
            for p in (50, 95, 99):
                result[f"histogram.{name}.p{p}"] = self.get_percentile(name, p)
        return result

    def get_recent(self, limit: int = 100) -> list[MetricSample]:
        if limit <= 0:
            return []
        return list(self._recent)[-limit:]

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()
        self._recent.clear()
        logger.info("Metrics reset")

    def to_prometheus(self) -> str:
        """Prometheus text exposition of every counter, gauge and histogram."""
        lines: list[str] = []
        for name, counter in self._counters.items():
            metric = _prometheus_name(name)
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {_fmt(counter.value)}")
        for name, gauge in self._gauges.items():
            metric = _prometheus_name(name)
            lines.append(f"# TYPE {metric} gauge")
            lines.append(f"{metric} {_fmt(gauge.value)}")
        for name, h in self._histograms.items():
            metric = _prometheus_name(name)
            lines.append(f"# TYPE {metric} histogram")
            for bound, count in h.buckets.items():
                lines.append(f'{metric}_bucket{{le="{_fmt(bound)}"}} {count}')
            lines.append(f'{metric}_bucket{{le="+Inf"}} {h.count}')
            lines.append(f"{metric}_sum {_fmt(h.sum)}")
            lines.append(f"{metric}_count {h.count}")
        return "\n".join(lines) + ("\n" if lines else "")

    # ─── Business Helpers ────────────────────────────────────────

    def track_order_creation(
        self,
        duration_ms: float,
        success: bool,
        event_id: str | None = None,
        ticket_count: int = 0,
        total: Decimal | float = 0,
    ) -> None:
        tags = {"event_id": event_id} if event_id else None
        self.timing("order.creation.duration", duration_ms, tags)
        if success:
            self.increment("orders.created", 1, tags)
            self.increment("tickets.sold", ticket_count, tags)
            self.increment("revenue.cents", int(round(Decimal(str(total)) * 100)), tags)
        else:
            self.increment("orders.failed", 1, tags)

    def track_ticket_scan(self, duration_ms: float, outcome: ScanOutcome | str) -> None:
        outcome = ScanOutcome(outcome).value
        self.timing("scan.duration", duration_ms)
        self.increment(f"scans.{outcome}")

    def track_payment(self, success: bool) -> None:
        self.increment("payments.succeeded" if success else "payments.failed")

    def track_email(self, success: bool) -> None:
        """Delivery outcome reported by the confirmation-email sender."""
        self.increment("emails.sent" if success else "emails.failed")

    def track_rate_limited(self, policy: str) -> None:
        self.increment("rate_limit.exceeded", 1, {"policy": policy})

    def _remember(self, name: str, value: float, tags: Tags | None) -> None:
        self._recent.append(MetricSample(
            name=name,
            value=value,
            timestamp=self._clock(),
            tags={k: str(v) for k, v in tags.items()} if tags else None,
        ))


def _serialize_tags(tags: Tags | None) -> str:
    if not tags:
        return ""
    return ",".join(f"{k}:{tags[k]}" for k in sorted(tags))


def _prometheus_name(name: str) -> str:
    return name.replace(".", "_").replace("-", "_").lower()


def _fmt(value: float) -> str:
    """Integral floats render without a trailing .0."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
