"""Ingestion entry point feeding run-history files into the analytics core.

Run records arrive as rows of CSV, JSON, NDJSON or Parquet files, one row per
test outcome. Rows are normalised into a consistent schema, grouped into
batches by ``batch_id`` and recorded in timestamp order. Execution is
controlled via a small CLI that also exposes the analysis knobs.
"""
from __future__ import annotations

import argparse
import json
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from analytics.config import MetricsConfig
from analytics.frames import load_runs_dataframe
from analytics.models import InvalidBatchError, ProjectFlakinessReport, RunBatch, derive_test_id
from analytics.service import MetricsService

SCHEMA_FIELDS: Sequence[str] = (
    "batch_id",
    "timestamp",
    "test_id",
    "test_name",
    "path",
    "status",
    "duration_ms",
)

# Statuses emitted by common reporters mapped onto the four tracked outcomes.
STATUS_ALIASES: Mapping[str, str] = {
    "pass": "passed",
    "ok": "passed",
    "success": "passed",
    "fail": "failed",
    "failure": "failed",
    "error": "failed",
    "interrupted": "failed",
    "skip": "skipped",
    "pending": "skipped",
    "timed-out": "timed_out",
    "timedout": "timed_out",
    "timeout": "timed_out",
}

FIELD_ALIASES: Mapping[str, Sequence[str]] = {
    "batch_id": ("run_id", "build_id", "runid"),
    "timestamp": ("executed_at", "run_timestamp"),
    "test_id": ("test_case_id", "testid"),
    "test_name": ("filename", "name"),
    "duration_ms": ("duration",),
}


@dataclass
class IngestionConfig:
    """Configuration derived from CLI arguments."""

    input_path: Path
    metrics: MetricsConfig
    days: float
    report_limit: int


def parse_args(argv: Optional[Sequence[str]] = None) -> IngestionConfig:
    parser = argparse.ArgumentParser(
        description="Record test run history and compute success rates and flakiness",
    )
    parser.add_argument(
        "input",
        type=Path,
        help="Path to the run history dataset (.parquet, .csv, .json or .ndjson)",
    )
    parser.add_argument(
        "--results-dir",
        dest="results_dir",
        type=Path,
        help="Directory holding the persisted snapshots (default: $ANALYTICS_RESULTS_DIR or data/results)",
    )
    parser.add_argument(
        "--days",
        type=float,
        help="Look-back window in days for the flakiness analysis",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        help="Score at or above which a test counts as flaky (0-100)",
    )
    parser.add_argument(
        "--min-runs",
        dest="min_runs",
        type=int,
        help="Minimum number of runs before a test is scored",
    )
    parser.add_argument(
        "--capacity",
        type=int,
        help="Number of runs kept per test",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Number of flaky tests to list in the summary (default: 10)",
    )

    args = parser.parse_args(argv)

    overrides: Dict[str, Any] = {}
    if args.results_dir is not None:
        overrides["results_dir"] = args.results_dir
    if args.days is not None:
        overrides["flakiness_days"] = args.days
    if args.threshold is not None:
        overrides["flakiness_threshold"] = args.threshold
    if args.min_runs is not None:
        overrides["min_runs"] = args.min_runs
    if args.capacity is not None:
        overrides["history_capacity"] = args.capacity
    try:
        metrics = replace(MetricsConfig.from_env(), **overrides)
    except ValueError as exc:
        parser.error(str(exc))

    return IngestionConfig(
        input_path=args.input,
        metrics=metrics,
        days=metrics.flakiness_days,
        report_limit=args.limit,
    )


def canonicalise_key(value: str) -> str:
    """Convert arbitrary headings to snake_case used by the schema."""

    cleaned = str(value).strip().lower().replace(" ", "_")
    cleaned = cleaned.replace("-", "_")
    return cleaned


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def normalise_status(value: Any) -> Any:
    if _is_missing(value):
        return None
    status = str(value).strip().lower()
    return STATUS_ALIASES.get(status, status)


def normalise_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Ensure each record conforms to the shared schema."""

    canonical = {canonicalise_key(key): value for key, value in record.items()}
    normalised: Dict[str, Any] = {}
    for field in SCHEMA_FIELDS:
        value = canonical.get(field)
        if _is_missing(value):
            # Try alternative names used by other reporters
            for alias in FIELD_ALIASES.get(field, ()):
                if not _is_missing(canonical.get(alias)):
                    value = canonical[alias]
                    break
        normalised[field] = None if _is_missing(value) else value

    if normalised["test_id"] is None and normalised["path"] is not None:
        normalised["test_id"] = derive_test_id(normalised["path"])
    if normalised["timestamp"] is not None:
        normalised["timestamp"] = ensure_iso_timestamp(normalised["timestamp"])
    if normalised["batch_id"] is not None:
        normalised["batch_id"] = str(normalised["batch_id"])
    if normalised["test_id"] is not None:
        normalised["test_id"] = str(normalised["test_id"])
    normalised["status"] = normalise_status(normalised["status"])
    return normalised


def ensure_iso_timestamp(value: Any) -> str:
    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).isoformat()
    return str(value)


def build_batches(records: Sequence[Mapping[str, Any]]) -> List[RunBatch]:
    """Group normalised records into validated batches ordered by timestamp.

    A batch takes the earliest timestamp found among its rows.
    """

    grouped: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for record in records:
        payload = grouped.setdefault(
            record.get("batch_id"),
            {"batch_id": record.get("batch_id"), "timestamp": record.get("timestamp"), "outcomes": []},
        )
        if record.get("timestamp") is not None and (
            payload["timestamp"] is None or record["timestamp"] < payload["timestamp"]
        ):
            payload["timestamp"] = record["timestamp"]
        payload["outcomes"].append(
            {
                "test_id": record.get("test_id"),
                "test_name": record.get("test_name"),
                "status": record.get("status"),
                "duration_ms": record.get("duration_ms"),
            }
        )

    batches = [RunBatch.from_dict(payload) for payload in grouped.values()]
    return sorted(batches, key=lambda batch: batch.timestamp)


def load_batches(path: Path) -> List[RunBatch]:
    df = load_runs_dataframe(path)
    records = [normalise_record(row) for row in df.to_dict(orient="records")]
    if not records:
        raise ValueError(f"No run records found in {path}")
    return build_batches(records)


def ingest(config: IngestionConfig, service: Optional[MetricsService] = None) -> ProjectFlakinessReport:
    """Record every batch of the input file and re-analyze flakiness once."""

    service = service or MetricsService(config.metrics)
    batches = load_batches(config.input_path)
    logging.info("Recording %d batches from %s", len(batches), config.input_path)
    for batch in batches:
        service.tracker.ingest(batch)
    return service.analyzer.analyze(config.days)


def format_summary(report: ProjectFlakinessReport, service: MetricsService, limit: int) -> str:
    rates = service.get_success_rates()
    summary = {
        "overall_success_rate": round(rates.overall_success_rate, 2),
        "total_tests": rates.total_tests,
        "overall_flakiness_score": round(report.overall_score, 2),
        "flaky_tests_count": report.flaky_tests_count,
        "total_tests_analyzed": report.total_tests_analyzed,
        "most_flaky": [
            {"test_id": measure.test_id, "score": round(measure.score, 2)}
            for measure in service.get_most_flaky_tests(limit)
        ],
    }
    return json.dumps(summary, indent=2)


def main(argv: Optional[Sequence[str]] = None) -> ProjectFlakinessReport:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    config = parse_args(argv)
    service = MetricsService(config.metrics)
    try:
        report = ingest(config, service)
    except (InvalidBatchError, ValueError, OSError) as exc:
        logging.error("Ingestion of %s failed: %s", config.input_path, exc)
        raise SystemExit(2) from exc
    logging.info("Ingestion completed; snapshots written to %s", config.metrics.results_dir)
    print(format_summary(report, service, config.report_limit))
    return report


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
