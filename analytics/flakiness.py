"""Score test instability from recorded run histories.

A flakiness score is a weighted blend of four factors computed over a
test's chronological history:

* status changes between adjacent runs (40%),
* the share of runs that timed out (20%),
* run-time spread, as half the coefficient of variation in percent (20%),
* a strict alternating pass/fail pattern (20%).

Scores range from 0 (stable) to 100 (maximally unstable). Each score comes
with a confidence value that ramps linearly up to 100 at ten observations
and weights the project-wide average.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

from .models import (
    FlakinessMeasure,
    ProjectFlakinessReport,
    RunBatch,
    TestSeries,
    TestStatus,
    utc_now,
)
from .storage import FLAKINESS_REPORT_RESOURCE, PersistenceError, SnapshotStore
from .success_rates import SuccessRateTracker

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 30.0
DEFAULT_MIN_RUNS = 3
DEFAULT_DAYS = 14

STATUS_CHANGE_WEIGHT = 0.4
TIMEOUT_WEIGHT = 0.2
DURATION_WEIGHT = 0.2
ALTERNATING_WEIGHT = 0.2

ALTERNATING_MIN_RUNS = 4
ALTERNATING_RATIO = 0.6
HIGH_VARIANCE_PERCENT = 50.0
HIGH_STATUS_CHANGE_FACTOR = 70.0
FULL_CONFIDENCE_RUNS = 10

PATTERN_ALTERNATING = "alternating"
PATTERN_TIMEOUT = "timeout"
PATTERN_HIGH_VARIANCE = "high duration variance"

RECOMMENDATIONS_ALTERNATING = (
    "Check for dependencies on other tests or on shared external state.",
    "Run the test in isolation from the rest of the suite.",
)
RECOMMENDATIONS_TIMEOUT = (
    "Raise the timeout limit or speed up the test execution.",
    "Look for slow network requests or slow UI rendering.",
)
RECOMMENDATIONS_HIGH_VARIANCE = (
    "Investigate variable performance factors such as network latency or CPU load.",
    "Replace implicit timeouts with explicit waits.",
)
RECOMMENDATIONS_STATUS_CHANGES = (
    "Check for race conditions or asynchronous timing issues.",
    "Add a retry mechanism around actions that can fail intermittently.",
)
RECOMMENDATION_MANUAL_REVIEW = (
    "Review the test manually to determine the cause of the instability."
)


def count_transitions(statuses: Sequence[TestStatus]) -> int:
    return sum(1 for previous, current in zip(statuses, statuses[1:]) if previous != current)


def detect_alternating(statuses: Sequence[TestStatus]) -> bool:
    """Whether more than 60% of adjacent runs flip status (needs 4+ runs)."""

    if len(statuses) < ALTERNATING_MIN_RUNS:
        return False
    return count_transitions(statuses) / (len(statuses) - 1) > ALTERNATING_RATIO


def duration_variance_percent(durations: Sequence[int]) -> float:
    """Population coefficient of variation of ``durations`` in percent."""

    if not durations:
        return 0.0
    mean = sum(durations) / len(durations)
    if mean <= 0:
        return 0.0
    variance = sum((value - mean) ** 2 for value in durations) / len(durations)
    return math.sqrt(variance) / mean * 100


def build_recommendations(
    alternating: bool,
    timeout: bool,
    duration_variance: float,
    status_change_factor: float,
) -> List[str]:
    recommendations: List[str] = []
    if alternating:
        recommendations.extend(RECOMMENDATIONS_ALTERNATING)
    if timeout:
        recommendations.extend(RECOMMENDATIONS_TIMEOUT)
    if duration_variance > HIGH_VARIANCE_PERCENT:
        recommendations.extend(RECOMMENDATIONS_HIGH_VARIANCE)
    if status_change_factor > HIGH_STATUS_CHANGE_FACTOR:
        recommendations.extend(RECOMMENDATIONS_STATUS_CHANGES)
    if not recommendations:
        recommendations.append(RECOMMENDATION_MANUAL_REVIEW)
    return recommendations


def score_series(series: TestSeries, min_runs: int = DEFAULT_MIN_RUNS) -> Optional[FlakinessMeasure]:
    """Compute the flakiness measure of one series.

    Returns ``None`` when the history holds fewer than ``min_runs`` (or two)
    observations, since there is nothing to compare.
    """

    history = sorted(series.history, key=lambda observation: observation.timestamp)
    run_count = len(history)
    if run_count < max(min_runs, 2):
        return None

    statuses = [observation.status for observation in history]
    transitions = count_transitions(statuses)
    timeouts = sum(1 for status in statuses if status is TestStatus.TIMED_OUT)
    variance = duration_variance_percent([observation.duration_ms for observation in history])
    alternating = detect_alternating(statuses)

    status_change_factor = min(100.0, transitions / (run_count - 1) * 100)
    timeout_factor = min(100.0, timeouts / run_count * 100)
    duration_factor = min(100.0, variance / 2)
    alternating_factor = 100.0 if alternating else 0.0

    score = min(
        100.0,
        STATUS_CHANGE_WEIGHT * status_change_factor
        + TIMEOUT_WEIGHT * timeout_factor
        + DURATION_WEIGHT * duration_factor
        + ALTERNATING_WEIGHT * alternating_factor,
    )
    confidence = min(100.0, run_count / FULL_CONFIDENCE_RUNS * 100)

    patterns: List[str] = []
    if alternating:
        patterns.append(PATTERN_ALTERNATING)
    if timeouts > 0:
        patterns.append(PATTERN_TIMEOUT)
    if variance > HIGH_VARIANCE_PERCENT:
        patterns.append(PATTERN_HIGH_VARIANCE)

    return FlakinessMeasure(
        test_id=series.test_id,
        test_name=series.test_name,
        score=score,
        confidence=confidence,
        last_changed=history[-1].timestamp,
        status_changes=transitions,
        run_count=run_count,
        timeouts=timeouts,
        duration_variance=variance,
        alternating_pattern=alternating,
        timeout_pattern=timeouts > 0,
        detected_patterns=patterns,
        recommendations=build_recommendations(
            alternating, timeouts > 0, variance, status_change_factor
        ),
    )


def overall_score(measures: Iterable[FlakinessMeasure]) -> float:
    """Confidence-weighted mean of the measure scores."""

    weighted = 0.0
    total_weight = 0.0
    for measure in measures:
        weight = measure.confidence / 100
        weighted += measure.score * weight
        total_weight += weight
    return weighted / total_weight if total_weight > 0 else 0.0


def count_flaky(measures: Iterable[FlakinessMeasure], threshold: float) -> int:
    return sum(1 for measure in measures if measure.score >= threshold)


class FlakinessAnalyzer:
    """Derive flakiness reports from the histories held by a tracker.

    The analyzer reads from ``tracker`` but never writes to it, except
    through :meth:`update_with_new_result` which forwards a new batch.
    """

    def __init__(
        self,
        tracker: SuccessRateTracker,
        store: SnapshotStore,
        threshold: float = DEFAULT_THRESHOLD,
        min_runs: int = DEFAULT_MIN_RUNS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not 0 <= threshold <= 100:
            raise ValueError("Flakiness threshold must be between 0 and 100")
        if min_runs < 1:
            raise ValueError("min_runs must be at least 1")
        self.tracker = tracker
        self.store = store
        self.threshold = threshold
        self.min_runs = min_runs
        self.clock = clock or tracker.clock

    def analyze(self, days: float = DEFAULT_DAYS, min_runs: Optional[int] = None) -> ProjectFlakinessReport:
        """Regenerate, persist and return the project flakiness report."""

        min_runs = self.min_runs if min_runs is None else min_runs
        with self.store.lock(FLAKINESS_REPORT_RESOURCE):
            snapshot = self.tracker.query_days(days)
            measures: List[FlakinessMeasure] = []
            for series in snapshot.series.values():
                if series.total_runs < min_runs:
                    continue
                measure = score_series(series, min_runs)
                if measure is not None:
                    measures.append(measure)

            report = ProjectFlakinessReport(
                threshold=self.threshold,
                time_period=snapshot.time_range,
                measures=measures,
                overall_score=overall_score(measures),
                flaky_tests_count=count_flaky(measures, self.threshold),
                last_updated=self.clock(),
            )
            logger.info(
                "Analyzed %d tests over %s days: %d flaky, overall score %.1f",
                report.total_tests_analyzed,
                days,
                report.flaky_tests_count,
                report.overall_score,
            )
            self.save_report(report)
            return report

    def most_flaky(self, limit: int = 10) -> List[FlakinessMeasure]:
        """Highest scoring measures of the last persisted report."""

        if limit < 0:
            raise ValueError("limit must not be negative")
        report = self.load_report()
        # sorted() is stable, so equal scores keep their report order
        ranked = sorted(report.measures, key=lambda measure: measure.score, reverse=True)
        return ranked[:limit]

    def update_with_new_result(self, batch: Union[RunBatch, Mapping[str, Any]]) -> ProjectFlakinessReport:
        self.tracker.ingest(batch)
        return self.analyze()

    def empty_report(self) -> ProjectFlakinessReport:
        now = self.clock()
        return ProjectFlakinessReport(
            threshold=self.threshold,
            time_period=(now - timedelta(days=DEFAULT_DAYS), now),
            last_updated=now,
        )

    def load_report(self) -> ProjectFlakinessReport:
        try:
            payload = self.store.read(FLAKINESS_REPORT_RESOURCE)
            if payload is not None:
                return ProjectFlakinessReport.from_dict(payload)
        except (PersistenceError, KeyError, TypeError, ValueError) as exc:
            logger.error("Could not load flakiness report, starting empty: %s", exc)
        return self.empty_report()

    def save_report(self, report: ProjectFlakinessReport) -> bool:
        try:
            with self.store.lock(FLAKINESS_REPORT_RESOURCE):
                self.store.write(FLAKINESS_REPORT_RESOURCE, report.to_dict())
        except (PersistenceError, TypeError, ValueError) as exc:
            logger.error("Could not save flakiness report: %s", exc)
            return False
        return True
