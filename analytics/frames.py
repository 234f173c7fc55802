"""Tabular (pandas) views over success-rate snapshots and flakiness reports."""
from __future__ import annotations

from pathlib import Path

import pandas as pd

from .models import ProjectFlakinessReport, ProjectSuccessSnapshot

OBSERVATION_COLUMNS = (
    "test_id",
    "test_name",
    "batch_id",
    "timestamp",
    "status",
    "duration_ms",
)

SUCCESS_RATE_COLUMNS = (
    "test_id",
    "test_name",
    "success_rate",
    "total_runs",
    "successful_runs",
    "failed_runs",
    "skipped_runs",
    "trend",
    "last_run_at",
    "last_status",
)

FLAKINESS_COLUMNS = (
    "test_id",
    "test_name",
    "score",
    "confidence",
    "run_count",
    "status_changes",
    "timeouts",
    "duration_variance",
    "alternating_pattern",
    "timeout_pattern",
    "last_changed",
    "detected_patterns",
)


def load_runs_dataframe(path: Path) -> pd.DataFrame:
    """Load run records from the given file path.

    The loader detects CSV, Parquet, JSON and NDJSON files from the file
    extension. The resulting DataFrame always contains a timezone-aware
    ``timestamp`` column converted to UTC.
    """

    if not path.exists():
        raise FileNotFoundError(f"Run history file not found: {path}")

    if path.suffix == ".parquet":
        df = pd.read_parquet(path)
    elif path.suffix == ".csv":
        df = pd.read_csv(path)
    elif path.suffix in {".json", ".ndjson"}:
        df = pd.read_json(path, lines=path.suffix == ".ndjson", convert_dates=False)
    else:
        raise ValueError(
            "Unsupported input format. Expected .parquet, .csv, .json or .ndjson files."
        )

    df = df.copy()
    df.columns = [str(column).strip().lower().replace(" ", "_").replace("-", "_") for column in df.columns]
    if "timestamp" not in df.columns:
        for alias in ("executed_at", "run_timestamp"):
            if alias in df.columns:
                df = df.rename(columns={alias: "timestamp"})
                break
        else:
            raise KeyError("Input data must include a 'timestamp' column")

    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df


def observations_frame(snapshot: ProjectSuccessSnapshot) -> pd.DataFrame:
    """One row per stored observation, oldest first within each test."""

    rows = [
        {
            "test_id": series.test_id,
            "test_name": series.test_name,
            "batch_id": observation.batch_id,
            "timestamp": observation.timestamp,
            "status": observation.status.value,
            "duration_ms": observation.duration_ms,
        }
        for series in snapshot.series.values()
        for observation in series.history
    ]
    frame = pd.DataFrame(rows, columns=list(OBSERVATION_COLUMNS))
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return frame


def success_rates_frame(snapshot: ProjectSuccessSnapshot) -> pd.DataFrame:
    """Summarise each test's success rate, worst first."""

    rows = []
    for series in snapshot.series.values():
        last_run = series.last_run
        rows.append(
            {
                "test_id": series.test_id,
                "test_name": series.test_name,
                "success_rate": series.success_rate,
                "total_runs": series.total_runs,
                "successful_runs": series.successful_runs,
                "failed_runs": series.failed_runs,
                "skipped_runs": series.skipped_runs,
                "trend": series.trend.value,
                "last_run_at": None if last_run is None else last_run.timestamp,
                "last_status": None if last_run is None else last_run.status.value,
            }
        )
    frame = pd.DataFrame(rows, columns=list(SUCCESS_RATE_COLUMNS))
    frame["last_run_at"] = pd.to_datetime(frame["last_run_at"], utc=True)
    return frame.sort_values(["success_rate", "test_id"], kind="stable").reset_index(drop=True)


def flakiness_frame(report: ProjectFlakinessReport) -> pd.DataFrame:
    """Flatten a report into one row per measure, most flaky first."""

    rows = []
    for measure in report.measures:
        row = {column: getattr(measure, column) for column in FLAKINESS_COLUMNS}
        row["detected_patterns"] = ", ".join(measure.detected_patterns)
        rows.append(row)
    frame = pd.DataFrame(rows, columns=list(FLAKINESS_COLUMNS))
    frame["last_changed"] = pd.to_datetime(frame["last_changed"], utc=True)
    frame["is_flaky"] = frame["score"] >= report.threshold
    return frame.sort_values("score", ascending=False, kind="stable").reset_index(drop=True)
