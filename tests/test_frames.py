import pytest

pd = pytest.importorskip("pandas")

from datetime import datetime, timedelta, timezone

from analytics.flakiness import FlakinessAnalyzer
from analytics.frames import (
    flakiness_frame,
    load_runs_dataframe,
    observations_frame,
    success_rates_frame,
)
from analytics.models import RunBatch
from analytics.storage import InMemoryStore
from analytics.success_rates import SuccessRateTracker

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def _sample_tracker() -> SuccessRateTracker:
    tracker = SuccessRateTracker(InMemoryStore(), clock=lambda: NOW)
    statuses = [
        ("passed", "failed"),
        ("failed", "passed"),
        ("passed", "timed_out"),
        ("failed", "passed"),
    ]
    for index, (checkout, login) in enumerate(statuses):
        tracker.ingest(
            RunBatch.from_dict(
                {
                    "batch_id": f"run-{index + 1}",
                    "timestamp": NOW - timedelta(days=len(statuses) - index),
                    "outcomes": [
                        {"test_id": "checkout.spec.ts", "status": checkout, "duration_ms": 2000},
                        {"test_id": "login.spec.ts", "status": login, "duration_ms": 500 * (index + 1)},
                    ],
                }
            )
        )
    return tracker


def test_observations_frame_has_one_row_per_run():
    frame = observations_frame(_sample_tracker().query())

    assert len(frame) == 8
    checkout = frame[frame["test_id"] == "checkout.spec.ts"]
    assert list(checkout["batch_id"]) == ["run-1", "run-2", "run-3", "run-4"]
    assert str(frame["timestamp"].dt.tz) == "UTC"


def test_success_rates_frame_lists_worst_first():
    frame = success_rates_frame(_sample_tracker().query())

    assert list(frame["test_id"]) == ["checkout.spec.ts", "login.spec.ts"]
    checkout = frame.iloc[0]
    assert checkout["success_rate"] == pytest.approx(50.0)
    assert checkout["total_runs"] == 4
    assert checkout["last_status"] == "failed"


def test_flakiness_frame_sorts_by_score_and_flags_flaky_tests():
    tracker = _sample_tracker()
    analyzer = FlakinessAnalyzer(tracker, tracker.store)
    report = analyzer.analyze(days=14)

    frame = flakiness_frame(report)

    assert list(frame["score"]) == sorted(frame["score"], reverse=True)
    assert set(frame["test_id"]) == {"checkout.spec.ts", "login.spec.ts"}
    login = frame.set_index("test_id").loc["login.spec.ts"]
    assert "timeout" in login["detected_patterns"]
    assert bool(login["is_flaky"]) is True


def test_empty_frames_keep_their_columns():
    tracker = SuccessRateTracker(InMemoryStore(), clock=lambda: NOW)
    analyzer = FlakinessAnalyzer(tracker, tracker.store)

    assert observations_frame(tracker.query()).empty
    assert "success_rate" in success_rates_frame(tracker.query()).columns
    frame = flakiness_frame(analyzer.load_report())
    assert frame.empty
    assert "is_flaky" in frame.columns


def test_load_runs_dataframe_normalises_timestamp_column(tmp_path):
    path = tmp_path / "runs.csv"
    path.write_text(
        "Run ID,Executed At,Test ID,Status,Duration\n"
        "1,2024-01-01T00:00:00Z,login.spec.ts,passed,1200\n",
        encoding="utf-8",
    )

    df = load_runs_dataframe(path)

    assert "timestamp" in df.columns
    assert "run_id" in df.columns
    assert df["timestamp"].iloc[0] == pd.Timestamp("2024-01-01T00:00:00Z")


def test_load_runs_dataframe_rejects_unknown_formats(tmp_path):
    path = tmp_path / "runs.txt"
    path.write_text("nothing", encoding="utf-8")

    with pytest.raises(ValueError):
        load_runs_dataframe(path)
    with pytest.raises(FileNotFoundError):
        load_runs_dataframe(tmp_path / "missing.csv")
