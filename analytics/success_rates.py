"""Track per-test success rates across repeated suite executions."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Union

from .models import (
    DEFAULT_HISTORY_CAPACITY,
    ProjectSuccessSnapshot,
    RunBatch,
    RunObservation,
    TestSeries,
    TimeWindow,
    Trend,
    ensure_utc,
    success_rate_of,
    utc_now,
)
from .storage import SUCCESS_RATES_RESOURCE, PersistenceError, SnapshotStore

logger = logging.getLogger(__name__)

TREND_THRESHOLD = 5.0
EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def window_start(now: datetime, days: float) -> datetime:
    """Start of a trailing window of ``days``, clamped to the earliest UTC instant."""

    try:
        return max(EARLIEST, now - timedelta(days=days))
    except OverflowError:
        return EARLIEST


def classify_trend(older_rate: float, newer_rate: float) -> Trend:
    """Compare the success rate of two halves of a history."""

    delta = newer_rate - older_rate
    if abs(delta) < TREND_THRESHOLD:
        return Trend.STABLE
    if delta >= TREND_THRESHOLD:
        return Trend.IMPROVING
    return Trend.DECLINING


def trend_for_series(series: TestSeries, since: datetime) -> Trend:
    recent = sorted(
        (observation for observation in series.history if observation.timestamp >= since),
        key=lambda observation: observation.timestamp,
    )
    if len(recent) < 2:
        return Trend.UNKNOWN

    midpoint = len(recent) // 2
    older_rate = success_rate_of(observation.status for observation in recent[:midpoint])
    newer_rate = success_rate_of(observation.status for observation in recent[midpoint:])
    return classify_trend(older_rate, newer_rate)


class SuccessRateTracker:
    """Maintain bounded per-test histories and their success rates.

    The tracker owns the live :class:`ProjectSuccessSnapshot`. It is loaded
    from ``store`` on construction and written back after every ingest.
    Callers only ever receive copies, so nothing outside the tracker can
    mutate the live state.
    """

    def __init__(
        self,
        store: SnapshotStore,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.store = store
        self.capacity = capacity
        self.clock = clock
        self._snapshot = self.load()

    def ingest(self, batch: Union[RunBatch, Mapping[str, Any]]) -> ProjectSuccessSnapshot:
        """Apply every outcome of ``batch`` and persist the result.

        Raw mappings are validated first; an invalid batch raises
        :class:`~analytics.models.InvalidBatchError` before anything changes.
        """

        if not isinstance(batch, RunBatch):
            batch = RunBatch.from_dict(batch)

        with self.store.lock(SUCCESS_RATES_RESOURCE):
            snapshot = self._snapshot
            for outcome in batch.outcomes:
                series = snapshot.series.get(outcome.test_id)
                if series is None:
                    series = TestSeries(
                        test_id=outcome.test_id,
                        test_name=outcome.test_name,
                        capacity=self.capacity,
                    )
                    snapshot.series[outcome.test_id] = series
                series.record(
                    RunObservation(
                        timestamp=batch.timestamp,
                        status=outcome.status,
                        duration_ms=outcome.duration_ms,
                        batch_id=batch.batch_id,
                    )
                )

            start, end = snapshot.time_range
            snapshot.time_range = (min(start, batch.timestamp), max(end, batch.timestamp))
            snapshot.last_updated = self.clock()
            logger.info(
                "Ingested batch %s with %d outcomes (%d tests tracked)",
                batch.batch_id,
                len(batch.outcomes),
                snapshot.total_tests,
            )
            self.save(snapshot)
            return snapshot.copy()

    def query(self, window: Optional[TimeWindow] = None) -> ProjectSuccessSnapshot:
        """Return the live snapshot, or a projection onto ``window``."""

        with self.store.lock(SUCCESS_RATES_RESOURCE):
            snapshot = self._snapshot.copy()
        if window is None:
            return snapshot

        start, end = (ensure_utc(value) for value in window)
        if start > end:
            raise ValueError("Window start must not be after its end")
        snapshot.series = {
            test_id: series.projected(start, end) for test_id, series in snapshot.series.items()
        }
        snapshot.time_range = (start, end)
        return snapshot

    def query_days(self, days: float) -> ProjectSuccessSnapshot:
        now = self.clock()
        return self.query((window_start(now, days), now))

    def classify_trends(self, window_days: float = 7) -> ProjectSuccessSnapshot:
        """Return a copy of the snapshot with ``trend`` set on every series."""

        snapshot = self.query()
        since = window_start(self.clock(), window_days)
        for series in snapshot.series.values():
            series.trend = trend_for_series(series, since)
        return snapshot

    def load(self) -> ProjectSuccessSnapshot:
        """Read the persisted snapshot, falling back to an empty one."""

        try:
            payload = self.store.read(SUCCESS_RATES_RESOURCE)
            if payload is not None:
                return ProjectSuccessSnapshot.from_dict(payload, capacity=self.capacity)
        except (PersistenceError, KeyError, TypeError, ValueError) as exc:
            logger.error("Could not load success rates, starting empty: %s", exc)
        return ProjectSuccessSnapshot.empty(self.clock())

    def save(self, snapshot: ProjectSuccessSnapshot) -> bool:
        try:
            with self.store.lock(SUCCESS_RATES_RESOURCE):
                self.store.write(SUCCESS_RATES_RESOURCE, snapshot.to_dict())
        except (PersistenceError, TypeError, ValueError) as exc:
            logger.error("Could not save success rates: %s", exc)
            return False
        return True

    def reload(self) -> ProjectSuccessSnapshot:
        with self.store.lock(SUCCESS_RATES_RESOURCE):
            self._snapshot = self.load()
            return self._snapshot.copy()
