"""Success-rate tracking and flakiness analytics for automated test runs."""

from .flakiness import FlakinessAnalyzer, score_series
from .models import (
    FlakinessMeasure,
    InvalidBatchError,
    ProjectFlakinessReport,
    ProjectSuccessSnapshot,
    RunBatch,
    RunObservation,
    TestOutcome,
    TestSeries,
    TestStatus,
    Trend,
)
from .service import MetricsService
from .storage import InMemoryStore, JsonFileStore, PersistenceError
from .success_rates import SuccessRateTracker

__all__ = [
    "FlakinessAnalyzer",
    "FlakinessMeasure",
    "InMemoryStore",
    "InvalidBatchError",
    "JsonFileStore",
    "MetricsService",
    "PersistenceError",
    "ProjectFlakinessReport",
    "ProjectSuccessSnapshot",
    "RunBatch",
    "RunObservation",
    "SuccessRateTracker",
    "TestOutcome",
    "TestSeries",
    "TestStatus",
    "Trend",
    "score_series",
]
