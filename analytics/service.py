"""Composition root exposing the read and write operations of the metrics API."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Union

from .config import MetricsConfig
from .flakiness import FlakinessAnalyzer, count_flaky
from .models import (
    FlakinessMeasure,
    ProjectFlakinessReport,
    ProjectSuccessSnapshot,
    RunBatch,
    TimeWindow,
    utc_now,
)
from .storage import (
    FLAKINESS_REPORT_RESOURCE,
    SUCCESS_RATES_RESOURCE,
    JsonFileStore,
    SnapshotStore,
    locked,
)
from .success_rates import SuccessRateTracker

logger = logging.getLogger(__name__)


@dataclass
class RecordResult:
    """Outcome of :meth:`MetricsService.record_run_result`."""

    success_rates: ProjectSuccessSnapshot
    flakiness: ProjectFlakinessReport


class MetricsService:
    """Own one store, tracker and analyzer and serve them to callers."""

    def __init__(
        self,
        config: Optional[MetricsConfig] = None,
        store: Optional[SnapshotStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or MetricsConfig()
        self.store = store if store is not None else JsonFileStore(self.config.results_dir)
        self.tracker = SuccessRateTracker(
            self.store, capacity=self.config.history_capacity, clock=clock
        )
        self.analyzer = FlakinessAnalyzer(
            self.tracker,
            self.store,
            threshold=self.config.flakiness_threshold,
            min_runs=self.config.min_runs,
            clock=clock,
        )

    @classmethod
    def from_env(cls) -> "MetricsService":
        return cls(MetricsConfig.from_env())

    def get_success_rates(self, window: Optional[TimeWindow] = None) -> ProjectSuccessSnapshot:
        return self.tracker.query(window)

    def get_trends(self, days: Optional[float] = None) -> ProjectSuccessSnapshot:
        return self.tracker.classify_trends(self.config.trend_days if days is None else days)

    def get_flakiness_report(
        self, days: Optional[float] = None, threshold: Optional[float] = None
    ) -> ProjectFlakinessReport:
        """Re-analyze and return the report.

        A ``threshold`` only changes how the returned report counts flaky
        tests; the persisted report keeps the configured threshold.
        """

        report = self.analyzer.analyze(self.config.flakiness_days if days is None else days)
        if threshold is None or threshold == report.threshold:
            return report
        if not 0 <= threshold <= 100:
            raise ValueError("threshold must be between 0 and 100")
        recounted = copy.deepcopy(report)
        recounted.threshold = threshold
        recounted.flaky_tests_count = count_flaky(recounted.measures, threshold)
        return recounted

    def get_most_flaky_tests(self, limit: int = 10) -> List[FlakinessMeasure]:
        return self.analyzer.most_flaky(limit)

    def record_run_result(self, batch: Union[RunBatch, Mapping[str, Any]]) -> RecordResult:
        """Ingest ``batch`` and re-analyze flakiness before returning.

        Both resources stay locked for the whole update, so no reader in this
        process sees new success rates next to a stale flakiness report.
        """

        if not isinstance(batch, RunBatch):
            batch = RunBatch.from_dict(batch)
        with locked(self.store, SUCCESS_RATES_RESOURCE, FLAKINESS_REPORT_RESOURCE):
            rates = self.tracker.ingest(batch)
            report = self.analyzer.analyze(self.config.flakiness_days)
        logger.info(
            "Recorded batch %s: overall success %.1f%%, %d flaky tests",
            batch.batch_id,
            rates.overall_success_rate,
            report.flaky_tests_count,
        )
        return RecordResult(success_rates=rates, flakiness=report)
