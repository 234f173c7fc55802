import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from analytics.models import InvalidBatchError, RunBatch, TestStatus, Trend
from analytics.storage import (
    SUCCESS_RATES_RESOURCE,
    InMemoryStore,
    JsonFileStore,
    PersistenceError,
)
from analytics.success_rates import SuccessRateTracker, classify_trend

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def _clock() -> datetime:
    return NOW


def _batch(batch_id, day, outcomes):
    return RunBatch.from_dict(
        {
            "batch_id": batch_id,
            "timestamp": datetime(2024, 1, day, 9, 0, tzinfo=timezone.utc),
            "outcomes": [
                {"test_id": test_id, "status": status, "duration_ms": duration}
                for test_id, status, duration in outcomes
            ],
        }
    )


def _tracker(store=None, capacity=10):
    return SuccessRateTracker(store or InMemoryStore(), capacity=capacity, clock=_clock)


def _ingest_statuses(tracker, test_id, statuses, first_day=1):
    for offset, status in enumerate(statuses):
        tracker.ingest(_batch(f"run-{first_day + offset}", first_day + offset, [(test_id, status, 1000)]))


def test_ingest_keeps_counters_consistent():
    tracker = _tracker()
    tracker.ingest(
        _batch(
            "run-1",
            1,
            [
                ("login.spec.ts", "passed", 1200),
                ("checkout.spec.ts", "failed", 3400),
                ("search.spec.ts", "skipped", 0),
            ],
        )
    )
    snapshot = tracker.ingest(
        _batch(
            "run-2",
            2,
            [
                ("login.spec.ts", "timed_out", 30000),
                ("checkout.spec.ts", "passed", 3100),
            ],
        )
    )

    for series in snapshot.series.values():
        assert series.total_runs == series.successful_runs + series.failed_runs + series.skipped_runs
        assert series.success_rate == pytest.approx(series.successful_runs / series.total_runs * 100)

    login = snapshot.series["login.spec.ts"]
    assert login.total_runs == 2
    assert login.failed_runs == 1
    assert login.success_rate == pytest.approx(50.0)
    assert login.last_run.status is TestStatus.TIMED_OUT
    assert login.last_run.batch_id == "run-2"
    assert snapshot.total_tests == 3
    assert snapshot.last_updated == NOW


def test_history_is_bounded_and_evicts_oldest_first():
    tracker = _tracker(capacity=3)
    _ingest_statuses(tracker, "login.spec.ts", ["passed", "failed", "passed", "passed", "failed"])

    series = tracker.query().series["login.spec.ts"]
    assert len(series.history) == 3
    assert [observation.batch_id for observation in series.history] == ["run-3", "run-4", "run-5"]
    # lifetime counters are not truncated with the history
    assert series.total_runs == 5
    assert series.successful_runs == 3
    assert series.success_rate == pytest.approx(60.0)


def test_overall_success_rate_is_unweighted_mean():
    tracker = _tracker()
    _ingest_statuses(tracker, "stable.spec.ts", ["passed", "passed"])
    _ingest_statuses(tracker, "broken.spec.ts", ["passed", "failed", "failed", "failed"], first_day=3)

    snapshot = tracker.query()
    assert snapshot.series["stable.spec.ts"].success_rate == pytest.approx(100.0)
    assert snapshot.series["broken.spec.ts"].success_rate == pytest.approx(25.0)
    assert snapshot.overall_success_rate == pytest.approx(62.5)


def test_query_without_window_is_idempotent():
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", ["passed", "failed", "passed"])

    first = tracker.query()
    second = tracker.query()
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_query_returns_copies():
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", ["passed"])

    snapshot = tracker.query()
    snapshot.series.clear()

    assert "login.spec.ts" in tracker.query().series


def test_query_window_projects_history_without_mutating_state():
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", ["failed", "failed", "passed", "passed"])
    _ingest_statuses(tracker, "legacy.spec.ts", ["passed"])

    window = (
        datetime(2024, 1, 3, tzinfo=timezone.utc),
        datetime(2024, 1, 4, 23, 59, tzinfo=timezone.utc),
    )
    projected = tracker.query(window)

    login = projected.series["login.spec.ts"]
    assert [observation.batch_id for observation in login.history] == ["run-3", "run-4"]
    assert login.total_runs == 2
    assert login.success_rate == pytest.approx(100.0)

    legacy = projected.series["legacy.spec.ts"]
    assert legacy.total_runs == 0
    assert legacy.success_rate == 0
    assert projected.overall_success_rate == pytest.approx(50.0)
    assert projected.time_range == window

    live = tracker.query()
    assert live.series["login.spec.ts"].total_runs == 4
    assert live.series["login.spec.ts"].success_rate == pytest.approx(50.0)


def test_query_rejects_inverted_window():
    tracker = _tracker()
    with pytest.raises(ValueError):
        tracker.query((NOW, NOW - timedelta(days=1)))


@pytest.mark.parametrize(
    "statuses, expected",
    [
        (["failed", "failed", "passed", "passed"], Trend.IMPROVING),
        (["passed", "passed", "failed", "failed"], Trend.DECLINING),
        (["passed", "failed", "passed", "failed"], Trend.STABLE),
        (["passed"], Trend.UNKNOWN),
    ],
)
def test_classify_trends(statuses, expected):
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", statuses, first_day=5)

    trends = tracker.classify_trends(7)
    assert trends.series["login.spec.ts"].trend is expected
    # the live snapshot keeps no cached trend
    assert tracker.query().series["login.spec.ts"].trend is Trend.UNKNOWN


def test_classify_trends_ignores_runs_outside_window():
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", ["failed", "failed", "failed"])
    _ingest_statuses(tracker, "login.spec.ts", ["passed"], first_day=8)

    trends = tracker.classify_trends(7)
    assert trends.series["login.spec.ts"].trend is Trend.UNKNOWN


def test_classify_trend_threshold_is_five_points():
    assert classify_trend(50.0, 54.9) is Trend.STABLE
    assert classify_trend(50.0, 55.0) is Trend.IMPROVING
    assert classify_trend(50.0, 45.0) is Trend.DECLINING
    assert classify_trend(50.0, 45.1) is Trend.STABLE


def test_invalid_batch_is_rejected_without_changes():
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", ["passed"])

    with pytest.raises(InvalidBatchError) as excinfo:
        tracker.ingest(
            {
                "batch_id": "run-9",
                "timestamp": "2024-01-09T00:00:00Z",
                "outcomes": [
                    {"test_id": "login.spec.ts", "status": "passed", "duration_ms": 10},
                    {"test_id": "login.spec.ts", "status": "exploded", "duration_ms": 10},
                ],
            }
        )

    assert "outcomes[1].status" in str(excinfo.value)
    assert tracker.query().series["login.spec.ts"].total_runs == 1


def test_load_falls_back_to_empty_snapshot_on_corrupt_file(tmp_path, caplog):
    (tmp_path / "success-rates.json").write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.ERROR):
        tracker = _tracker(JsonFileStore(tmp_path))

    snapshot = tracker.query()
    assert snapshot.total_tests == 0
    assert snapshot.overall_success_rate == 0
    assert "Could not load success rates" in caplog.text


def test_snapshot_survives_reload_from_disk(tmp_path):
    tracker = _tracker(JsonFileStore(tmp_path))
    _ingest_statuses(tracker, "login.spec.ts", ["passed", "failed"])

    reloaded = _tracker(JsonFileStore(tmp_path))
    assert reloaded.query() == tracker.query()


def test_save_of_loaded_snapshot_is_a_no_op(tmp_path):
    store = JsonFileStore(tmp_path)
    tracker = _tracker(store)
    _ingest_statuses(tracker, "login.spec.ts", ["passed", "failed", "timed_out"])
    path = store.path_for(SUCCESS_RATES_RESOURCE)
    before = path.read_bytes()

    assert tracker.save(tracker.load())
    assert path.read_bytes() == before
    payload = json.loads(before)
    assert payload["tests"][0]["test_id"] == "login.spec.ts"
    assert payload["total_tests"] == 1


class _FailingStore(InMemoryStore):
    def write(self, name, payload):
        raise PersistenceError("disk full")


def test_ingest_keeps_in_memory_update_when_persist_fails(caplog):
    tracker = _tracker(_FailingStore())

    with caplog.at_level(logging.ERROR):
        snapshot = tracker.ingest(_batch("run-1", 1, [("login.spec.ts", "passed", 10)]))

    assert snapshot.series["login.spec.ts"].total_runs == 1
    assert tracker.query().series["login.spec.ts"].total_runs == 1
    assert "disk full" in caplog.text


def test_reload_picks_up_snapshot_written_by_another_tracker(tmp_path):
    tracker = _tracker(JsonFileStore(tmp_path))
    other = _tracker(JsonFileStore(tmp_path))
    _ingest_statuses(other, "login.spec.ts", ["passed", "failed"])

    assert tracker.query().total_tests == 0

    reloaded = tracker.reload()

    assert reloaded.series["login.spec.ts"].total_runs == 2
    assert tracker.query() == other.query()


def test_reload_keeps_live_state_private():
    store = InMemoryStore()
    tracker = _tracker(store)
    _ingest_statuses(tracker, "login.spec.ts", ["passed"])

    reloaded = tracker.reload()
    reloaded.series.clear()

    assert tracker.query().total_tests == 1


def test_huge_day_windows_are_clamped_to_the_earliest_instant():
    tracker = _tracker()
    _ingest_statuses(tracker, "login.spec.ts", ["passed", "failed", "passed", "failed"])

    snapshot = tracker.query_days(1_000_000)
    trends = tracker.classify_trends(1_000_000)

    assert snapshot.series["login.spec.ts"].total_runs == 4
    assert snapshot.time_range[0] == datetime.min.replace(tzinfo=timezone.utc)
    assert trends.series["login.spec.ts"].trend is Trend.STABLE
