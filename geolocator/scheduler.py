"""Adaptive query scheduling.

The scheduler decides whether a new environment snapshot justifies a lookup
request, and self-tunes a back-off interval so the long-run request rate
settles around one request every six minutes.

Two gates apply in order:
- eligibility: the snapshot is new enough (first query, interval elapsed, more
  fields, or a different set of cells)
- local throttle: even an eligible request is only issued once the back-off
  has fully relaxed or the interval has genuinely elapsed
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .snapshot import (
    EnvironmentSnapshot,
    carrier_fields,
    cell_ids_from_payload,
    cell_tower_fields,
    fallback_fields,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

BACKOFF_BASE_MS = 60_000
BACKOFF_STEP_MS = 10_000
BACKOFF_INITIAL_FACTOR = 8
BACKOFF_MIN_FACTOR = 1
BACKOFF_MAX_FACTOR = 64
HISTORY_CAPACITY = 10

TARGET_MINUTES_PER_QUERY = 6.0
FAST_MINUTES_PER_QUERY = 4.0


@dataclass(frozen=True)
class QueryRecord:
    timestamp: datetime
    payload: dict[str, Any]


@dataclass(frozen=True)
class QueryReasons:
    first_time_query: bool
    interval_exceeded: bool
    more_info: bool
    new_cells: bool

    @property
    def eligible(self) -> bool:
        return self.first_time_query or self.interval_exceeded or self.more_info or self.new_cells


@dataclass(frozen=True)
class QueryDecision:
    issue: bool
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
    reasons: QueryReasons | None = None


@dataclass
class BackOffState:
    factor: int = BACKOFF_INITIAL_FACTOR

    @property
    def interval_ms(self) -> int:
        return BACKOFF_BASE_MS + BACKOFF_STEP_MS * self.factor

    def relax(self) -> None:
        self.factor = BACKOFF_MIN_FACTOR if self.factor <= 2 else min(BACKOFF_MAX_FACTOR, self.factor // 2)

    def tighten(self) -> None:
        self.factor = BACKOFF_MAX_FACTOR if self.factor >= 32 else max(BACKOFF_MIN_FACTOR, self.factor * 2)

    def adjust(self, minutes_per_query: float) -> None:
        if minutes_per_query > TARGET_MINUTES_PER_QUERY or self.factor > BACKOFF_MAX_FACTOR:
            self.relax()
        elif minutes_per_query < FAST_MINUTES_PER_QUERY:
            self.tighten()


class QueryHistory:
    """Newest-first send timestamps used to estimate recent cadence."""

    def __init__(self, capacity: int = HISTORY_CAPACITY) -> None:
        self._timestamps: deque[datetime] = deque(maxlen=capacity)

    def push(self, ts: datetime) -> None:
        self._timestamps.appendleft(ts)

    def __len__(self) -> int:
        return len(self._timestamps)

    def timestamps(self) -> list[datetime]:
        return list(self._timestamps)

    def minutes_per_query(self) -> float:
        # Too little history to judge: report the target rate (neutral).
        if len(self._timestamps) < 3:
            return TARGET_MINUTES_PER_QUERY
        span_s = (self._timestamps[0] - self._timestamps[-1]).total_seconds()
        return (span_s / 60.0) / len(self._timestamps)


def more_info(candidate: dict[str, Any], previous: dict[str, Any]) -> bool:
    return len(candidate) > len(previous)


def new_cells(candidate: dict[str, Any], previous: dict[str, Any]) -> bool:
    return cell_ids_from_payload(candidate) != cell_ids_from_payload(previous)


def candidate_payload(snapshot: EnvironmentSnapshot) -> dict[str, Any]:
    # Wifi networks are merged in by the lifecycle manager at send time.
    payload: dict[str, Any] = {}
    payload.update(cell_tower_fields(snapshot.cells))
    payload.update(carrier_fields(snapshot.carrier))
    payload.update(fallback_fields(lacf=snapshot.fallback_lacf, ipf=snapshot.fallback_ipf))
    return payload


class QueryScheduler:
    def __init__(self, *, now_fn: NowFn | None = None) -> None:
        self._now_fn = now_fn or _utcnow
        self._lock = threading.RLock()

        self.backoff = BackOffState()
        self.history = QueryHistory()
        self._last_query: QueryRecord | None = None
        self._wait_for_wifi = True

    @property
    def last_query(self) -> QueryRecord | None:
        return self._last_query

    @property
    def waiting_for_wifi(self) -> bool:
        return self._wait_for_wifi

    def decide(
        self,
        snapshot: EnvironmentSnapshot,
        previous: QueryRecord | None = None,
    ) -> QueryDecision:
        with self._lock:
            return self._decide(snapshot, previous if previous is not None else self._last_query)

    def accept(self, decision: QueryDecision) -> None:
        """Replace the last query with one that was actually sent."""

        if not decision.issue or decision.timestamp is None:
            return
        with self._lock:
            self._last_query = QueryRecord(timestamp=decision.timestamp, payload=dict(decision.payload))

    def _decide(self, snapshot: EnvironmentSnapshot, previous: QueryRecord | None) -> QueryDecision:
        now = self._now_fn()

        if snapshot.is_empty:
            logger.debug("no cell or wifi data available for an online lookup")
            return QueryDecision(issue=False)

        # Only the first non-empty decision may wait for wifi.
        wait_for_wifi, self._wait_for_wifi = self._wait_for_wifi, False
        if wait_for_wifi and not snapshot.has_wifi:
            # Wifi scans can lag behind modem data and make lookups far more
            # accurate, so give them one chance to arrive.
            logger.debug("no wifi data available for an online lookup, postponing")
            return QueryDecision(issue=False)

        payload = candidate_payload(snapshot)
        previous_payload = previous.payload if previous is not None else {}

        interval_exceeded = previous is None or (
            (now - previous.timestamp).total_seconds() * 1000.0 >= self.backoff.interval_ms
        )
        reasons = QueryReasons(
            first_time_query=previous is None or not previous.payload,
            interval_exceeded=interval_exceeded,
            more_info=more_info(payload, previous_payload),
            new_cells=new_cells(payload, previous_payload),
        )

        if not reasons.eligible:
            logger.debug("no trigger condition holds for an online lookup")
            return QueryDecision(issue=False, reasons=reasons)

        self.backoff.adjust(self.history.minutes_per_query())

        if self.backoff.factor != BACKOFF_MIN_FACTOR and not reasons.interval_exceeded:
            logger.debug(
                "locally throttling online lookup factor=%s interval_ms=%s",
                self.backoff.factor,
                self.backoff.interval_ms,
            )
            return QueryDecision(issue=False, reasons=reasons)

        logger.info(
            "issuing online lookup first=%s interval=%s info=%s cells=%s",
            reasons.first_time_query,
            reasons.interval_exceeded,
            reasons.more_info,
            reasons.new_cells,
        )
        self.history.push(now)
        return QueryDecision(issue=True, payload=payload, timestamp=now, reasons=reasons)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
