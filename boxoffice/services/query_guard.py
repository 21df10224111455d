"""Query Guard - timing, slow-query capture and timeouts for read paths.

Invariants:
    - A QueryTimer emits a SlowQueryRecord only when duration >= threshold
    - Query text in a record is truncated to 5000 characters
    - QueryGuard.run races the read against a deadline (asyncio.wait_for);
      on expiry the caller gets QueryTimeoutError (retryable), never a hang
    - Every guarded read lands in the query.duration histogram, timeouts included
    - SlowQueryLog is a bounded ring (1000 records)

Design Decisions:
    - The timeout cancels the awaiting task; a driver that cannot abort the
      statement server-side keeps running it, the caller has already moved on
    - Stats grouped by a hash of the whitespace-normalized query text so the
      same statement from different call sites aggregates together
"""

import asyncio
import hashlib
import logging
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sized
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from boxoffice.core.errors import QueryTimeoutError
from boxoffice.services.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SLOW_THRESHOLD_MS = 100
DEFAULT_TIMEOUT_MS = 30_000
MAX_QUERY_TEXT = 5000
MAX_SLOW_RECORDS = 1000

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class SlowQueryRecord:
    query_hash: str
    query_text: str
    duration_ms: float
    rows_returned: int | None
    source: str
    context: dict[str, Any] | None
    occurred_at: datetime


@dataclass(frozen=True)
class SlowQueryStats:
    query_hash: str
    query_text: str
    source: str
    count: int
    avg_ms: float
    min_ms: float
    max_ms: float
    last_seen: datetime


def query_hash(query_text: str) -> str:
    normalized = _WHITESPACE.sub(" ", query_text).strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


class SlowQueryLog:
    """Bounded in-memory ring of slow-query records."""

    def __init__(self, max_records: int = MAX_SLOW_RECORDS):
        self._records: deque[SlowQueryRecord] = deque(maxlen=max_records)

    def add(self, record: SlowQueryRecord) -> None:
        self._records.append(record)

    def recent(self, limit: int = 20) -> list[SlowQueryRecord]:
        """Newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._records))[:limit]

    def stats(self) -> list[SlowQueryStats]:
        """Per-query aggregates, slowest average first."""
        groups: dict[str, list[SlowQueryRecord]] = {}
        for record in self._records:
            groups.setdefault(record.query_hash, []).append(record)

        stats = []
        for digest, records in groups.items():
            durations = [r.duration_ms for r in records]
            last = max(records, key=lambda r: r.occurred_at)
            stats.append(SlowQueryStats(
                query_hash=digest,
                query_text=last.query_text,
                source=last.source,
                count=len(records),
                avg_ms=sum(durations) / len(durations),
                min_ms=min(durations),
                max_ms=max(durations),
                last_seen=last.occurred_at,
            ))
        stats.sort(key=lambda s: s.avg_ms, reverse=True)
        return stats

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class QueryTimer:
    """Measures one read; call start() then done()."""

    def __init__(
        self,
        description: str,
        source: str,
        threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
        slow_log: SlowQueryLog | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.description = description
        self.source = source
        self.threshold_ms = threshold_ms
        self._slow_log = slow_log
        self._clock = clock
        self._started: float | None = None
        self._finished: float | None = None

    def start(self) -> "QueryTimer":
        self._started = self._clock()
        self._finished = None
        return self

    @property
    def duration_ms(self) -> float:
        """Elapsed so far, or the final duration once done() ran."""
        if self._started is None:
            return 0.0
        end = self._finished if self._finished is not None else self._clock()
        return (end - self._started) * 1000

    def done(
        self, rows_returned: int | None = None, context: dict[str, Any] | None = None,
    ) -> float:
        """Stop timing; record a slow query when over threshold. Returns duration in ms."""
        if self._started is None:
            self.start()
        self._finished = self._clock()
        duration = self.duration_ms
        if duration >= self.threshold_ms:
            self._record_slow(duration, rows_returned, context)
        return duration

    def _record_slow(
        self, duration: float, rows_returned: int | None, context: dict[str, Any] | None,
    ) -> None:
        text = self.description[:MAX_QUERY_TEXT]
        record = SlowQueryRecord(
            query_hash=query_hash(text),
            query_text=text,
            duration_ms=duration,
            rows_returned=rows_returned,
            source=self.source,
            context=context,
            occurred_at=datetime.now(timezone.utc),
        )
        if self._slow_log is not None:
            self._slow_log.add(record)
        logger.warning(
            f"Slow query ({duration:.0f}ms >= {self.threshold_ms}ms) "
            f"from {self.source}: {text[:200]}",
            extra={"duration_ms": round(duration, 2)},
        )


def _count_rows(result: Any) -> int | None:
    return len(result) if isinstance(result, Sized) else None


class QueryGuard:
    """Runs reads under a timer and a deadline."""

    def __init__(
        self,
        metrics: MetricsRegistry,
        slow_log: SlowQueryLog | None = None,
        threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.metrics = metrics
        self.slow_log = slow_log if slow_log is not None else SlowQueryLog()
        self.threshold_ms = threshold_ms
        self.timeout_ms = timeout_ms
        self._clock = clock

    def timer(self, description: str, source: str) -> QueryTimer:
        return QueryTimer(
            description, source, self.threshold_ms, self.slow_log, self._clock,
        )

    async def run(
        self,
        description: str,
        source: str,
        operation: Awaitable[T],
        timeout_ms: int | None = None,
        row_counter: Callable[[T], int | None] = _count_rows,
        context: dict[str, Any] | None = None,
    ) -> T:
        """Await a read with timing and a timeout.

        Raises:
            QueryTimeoutError: the read did not finish within timeout_ms.
        """
        timeout = timeout_ms if timeout_ms is not None else self.timeout_ms
        timer = self.timer(description, source).start()
        try:
            result = await asyncio.wait_for(operation, timeout / 1000)
        except asyncio.TimeoutError:
            duration = timer.done(None, context)
            self.metrics.timing("query.duration", duration, {"source": source})
            self.metrics.increment("queries.timeout", 1, {"source": source})
            logger.error(
                f"Query timeout after {timeout}ms from {source}: {description[:200]}",
                extra={"duration_ms": round(duration, 2)},
            )
            raise QueryTimeoutError(description, timeout)

        duration = timer.done(row_counter(result), context)
        self.metrics.timing("query.duration", duration, {"source": source})
        if duration >= self.threshold_ms:
            self.metrics.increment("queries.slow", 1, {"source": source})
        return result
