"""Data model for success-rate and flakiness analytics.

Everything that crosses a persistence or API boundary lives here together
with its JSON representation. Values derived from stored counters (success
rates, the last run, project-wide averages) are exposed as properties so
they can never drift from the raw data.
"""
from __future__ import annotations

import copy
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

DEFAULT_HISTORY_CAPACITY = 10

TimeWindow = Tuple[datetime, datetime]


class TestStatus(str, Enum):
    """Outcome of a single test within one batch."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    UNKNOWN = "unknown"


class InvalidBatchError(ValueError):
    """Raised when a run batch fails validation at the ingestion boundary."""

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid run batch: " + "; ".join(self.problems))


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Coerce ISO strings, epoch numbers and datetimes into aware UTC datetimes.

    Epoch numbers above ``1e11`` are treated as milliseconds, which is what
    JavaScript based reporters emit.
    """

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def format_timestamp(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def derive_test_id(path: str) -> str:
    """Derive the stable test identifier from a test file path."""

    name = PurePosixPath(str(path).replace("\\", "/")).name
    return name or str(path)


def success_rate_of(statuses: Iterable[TestStatus]) -> float:
    """Percentage of ``passed`` entries, 0 for an empty iterable."""

    total = 0
    passed = 0
    for status in statuses:
        total += 1
        if status is TestStatus.PASSED:
            passed += 1
    return passed / total * 100 if total else 0.0


@dataclass(frozen=True)
class RunObservation:
    """One test's outcome within one execution batch."""

    timestamp: datetime
    status: TestStatus
    duration_ms: int
    batch_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RunObservation":
        return cls(
            timestamp=parse_timestamp(payload["timestamp"]),
            status=TestStatus(payload["status"]),
            duration_ms=int(payload["duration_ms"]),
            batch_id=str(payload["batch_id"]),
        )


@dataclass
class TestSeries:
    """Bounded run history and lifetime counters for a single test."""

    __test__ = False

    test_id: str
    test_name: str = ""
    capacity: int = DEFAULT_HISTORY_CAPACITY
    history: Deque[RunObservation] = field(default_factory=deque)
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    trend: Trend = Trend.UNKNOWN

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("History capacity must be at least 1")
        if not self.test_name:
            self.test_name = self.test_id
        self.history = deque(self.history, maxlen=self.capacity)

    @property
    def success_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return self.successful_runs / self.total_runs * 100

    @property
    def last_run(self) -> Optional[RunObservation]:
        return self.history[-1] if self.history else None

    def record(self, observation: RunObservation) -> None:
        # deque(maxlen=capacity) drops the oldest entry on overflow
        self.history.append(observation)
        self.total_runs += 1
        if observation.status is TestStatus.PASSED:
            self.successful_runs += 1
        elif observation.status is TestStatus.SKIPPED:
            self.skipped_runs += 1
        else:
            self.failed_runs += 1

    def projected(self, start: datetime, end: datetime) -> "TestSeries":
        """Copy restricted to observations inside ``[start, end]``."""

        projection = TestSeries(
            test_id=self.test_id,
            test_name=self.test_name,
            capacity=self.capacity,
            trend=self.trend,
        )
        for observation in self.history:
            if start <= observation.timestamp <= end:
                projection.record(observation)
        return projection

    def to_dict(self) -> Dict[str, Any]:
        last_run = self.last_run
        return {
            "test_id": self.test_id,
            "test_name": self.test_name,
            "success_rate": self.success_rate,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "skipped_runs": self.skipped_runs,
            "last_run": None if last_run is None else last_run.to_dict(),
            "history": [observation.to_dict() for observation in self.history],
            "trend": self.trend.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], capacity: int) -> "TestSeries":
        series = cls(
            test_id=str(payload["test_id"]),
            test_name=str(payload.get("test_name") or ""),
            capacity=capacity,
            history=deque(RunObservation.from_dict(item) for item in payload.get("history", ())),
            total_runs=int(payload["total_runs"]),
            successful_runs=int(payload["successful_runs"]),
            failed_runs=int(payload["failed_runs"]),
            skipped_runs=int(payload["skipped_runs"]),
            trend=Trend(payload.get("trend", Trend.UNKNOWN.value)),
        )
        if series.total_runs != series.successful_runs + series.failed_runs + series.skipped_runs:
            raise ValueError(f"Inconsistent run counters for test {series.test_id!r}")
        return series


@dataclass
class ProjectSuccessSnapshot:
    """All tracked series of a project plus the window they cover."""

    series: Dict[str, TestSeries] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utc_now)
    time_range: TimeWindow = field(default_factory=lambda: (utc_now(), utc_now()))

    @classmethod
    def empty(cls, now: Optional[datetime] = None) -> "ProjectSuccessSnapshot":
        now = now or utc_now()
        return cls(series={}, last_updated=now, time_range=(now, now))

    @property
    def total_tests(self) -> int:
        return len(self.series)

    @property
    def overall_success_rate(self) -> float:
        # unweighted: every test counts the same regardless of its run count
        if not self.series:
            return 0.0
        return sum(item.success_rate for item in self.series.values()) / len(self.series)

    def copy(self) -> "ProjectSuccessSnapshot":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        start, end = self.time_range
        return {
            "overall_success_rate": self.overall_success_rate,
            "total_tests": self.total_tests,
            "last_updated": format_timestamp(self.last_updated),
            "time_range": {"start": format_timestamp(start), "end": format_timestamp(end)},
            "tests": [item.to_dict() for item in self.series.values()],
        }

    @classmethod
    def from_dict(
        cls, payload: Mapping[str, Any], capacity: int = DEFAULT_HISTORY_CAPACITY
    ) -> "ProjectSuccessSnapshot":
        series: Dict[str, TestSeries] = {}
        for item in payload.get("tests", ()):
            entry = TestSeries.from_dict(item, capacity)
            if entry.test_id in series:
                raise ValueError(f"Duplicate test id in snapshot: {entry.test_id!r}")
            series[entry.test_id] = entry
        time_range = payload["time_range"]
        return cls(
            series=series,
            last_updated=parse_timestamp(payload["last_updated"]),
            time_range=(parse_timestamp(time_range["start"]), parse_timestamp(time_range["end"])),
        )


@dataclass
class FlakinessMeasure:
    """Derived instability metrics for a single test."""

    test_id: str
    test_name: str
    score: float
    confidence: float
    last_changed: datetime
    status_changes: int
    run_count: int
    timeouts: int
    duration_variance: float
    alternating_pattern: bool
    timeout_pattern: bool
    detected_patterns: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "test_name": self.test_name,
            "score": self.score,
            "confidence": self.confidence,
            "last_changed": format_timestamp(self.last_changed),
            "status_changes": self.status_changes,
            "run_count": self.run_count,
            "timeouts": self.timeouts,
            "duration_variance": self.duration_variance,
            "alternating_pattern": self.alternating_pattern,
            "timeout_pattern": self.timeout_pattern,
            "detected_patterns": list(self.detected_patterns),
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FlakinessMeasure":
        return cls(
            test_id=str(payload["test_id"]),
            test_name=str(payload.get("test_name") or payload["test_id"]),
            score=float(payload["score"]),
            confidence=float(payload["confidence"]),
            last_changed=parse_timestamp(payload["last_changed"]),
            status_changes=int(payload["status_changes"]),
            run_count=int(payload["run_count"]),
            timeouts=int(payload.get("timeouts", 0)),
            duration_variance=float(payload["duration_variance"]),
            alternating_pattern=bool(payload["alternating_pattern"]),
            timeout_pattern=bool(payload["timeout_pattern"]),
            detected_patterns=list(payload.get("detected_patterns", ())),
            recommendations=list(payload.get("recommendations", ())),
        )


@dataclass
class ProjectFlakinessReport:
    """Wholesale-regenerated view over every scorable test."""

    threshold: float
    time_period: TimeWindow
    measures: List[FlakinessMeasure] = field(default_factory=list)
    overall_score: float = 0.0
    flaky_tests_count: int = 0
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def total_tests_analyzed(self) -> int:
        return len(self.measures)

    def to_dict(self) -> Dict[str, Any]:
        start, end = self.time_period
        return {
            "overall_flakiness_score": self.overall_score,
            "total_tests_analyzed": self.total_tests_analyzed,
            "flaky_tests_count": self.flaky_tests_count,
            "threshold": self.threshold,
            "measures": [measure.to_dict() for measure in self.measures],
            "last_updated": format_timestamp(self.last_updated),
            "time_period": {"start": format_timestamp(start), "end": format_timestamp(end)},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ProjectFlakinessReport":
        period = payload["time_period"]
        return cls(
            threshold=float(payload["threshold"]),
            time_period=(parse_timestamp(period["start"]), parse_timestamp(period["end"])),
            measures=[FlakinessMeasure.from_dict(item) for item in payload.get("measures", ())],
            overall_score=float(payload["overall_flakiness_score"]),
            flaky_tests_count=int(payload["flaky_tests_count"]),
            last_updated=parse_timestamp(payload["last_updated"]),
        )


@dataclass(frozen=True)
class TestOutcome:
    """A single test's result as reported by the execution collaborator."""

    __test__ = False

    test_id: str
    status: TestStatus
    duration_ms: int
    test_name: str = ""


@dataclass(frozen=True)
class RunBatch:
    """One execution of a suite: every outcome shares the batch timestamp."""

    batch_id: str
    timestamp: datetime
    outcomes: Tuple[TestOutcome, ...]

    @classmethod
    def from_dict(cls, payload: Any) -> "RunBatch":
        """Validate a decoded JSON payload and build a batch.

        All problems are collected before raising so that callers get a
        single descriptive :class:`InvalidBatchError`.
        """

        if not isinstance(payload, Mapping):
            raise InvalidBatchError(["batch must be a mapping"])

        problems: List[str] = []
        batch_id = payload.get("batch_id")
        if not isinstance(batch_id, str) or not batch_id.strip():
            problems.append("batch_id must be a non-empty string")

        timestamp: Optional[datetime] = None
        if payload.get("timestamp") is None:
            problems.append("timestamp is required")
        else:
            try:
                timestamp = parse_timestamp(payload["timestamp"])
            except (TypeError, ValueError, OverflowError, OSError):
                problems.append(f"timestamp {payload['timestamp']!r} is not a valid instant")

        raw_outcomes = payload.get("outcomes")
        outcomes: List[TestOutcome] = []
        if not isinstance(raw_outcomes, Sequence) or isinstance(raw_outcomes, (str, bytes)):
            problems.append("outcomes must be a list")
        elif not raw_outcomes:
            problems.append("outcomes must not be empty")
        else:
            for index, raw in enumerate(raw_outcomes):
                outcome = _validate_outcome(index, raw, problems)
                if outcome is not None:
                    outcomes.append(outcome)

        if problems or timestamp is None:
            raise InvalidBatchError(problems or ["timestamp is required"])
        return cls(batch_id=str(batch_id).strip(), timestamp=timestamp, outcomes=tuple(outcomes))


def _validate_outcome(index: int, raw: Any, problems: List[str]) -> Optional[TestOutcome]:
    prefix = f"outcomes[{index}]"
    if not isinstance(raw, Mapping):
        problems.append(f"{prefix} must be a mapping")
        return None

    found = len(problems)
    test_id = raw.get("test_id")
    if (test_id is None or test_id == "") and raw.get("path"):
        test_id = derive_test_id(raw["path"])
    if not isinstance(test_id, str) or not test_id.strip():
        problems.append(f"{prefix}.test_id must be a non-empty string")

    status: Optional[TestStatus] = None
    try:
        status = TestStatus(raw.get("status"))
    except ValueError:
        allowed = ", ".join(item.value for item in TestStatus)
        problems.append(f"{prefix}.status {raw.get('status')!r} is not one of: {allowed}")

    duration = raw.get("duration_ms")
    if (
        isinstance(duration, bool)
        or not isinstance(duration, (int, float))
        or not math.isfinite(duration)
        or duration < 0
    ):
        problems.append(f"{prefix}.duration_ms must be a non-negative number")
    elif isinstance(duration, float):
        duration = int(round(duration))

    if len(problems) != found or status is None:
        return None
    return TestOutcome(
        test_id=str(test_id).strip(),
        status=status,
        duration_ms=int(duration),
        test_name=str(raw.get("test_name") or ""),
    )
