"""Settings for the analytics core, overridable through environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .flakiness import DEFAULT_DAYS, DEFAULT_MIN_RUNS, DEFAULT_THRESHOLD
from .models import DEFAULT_HISTORY_CAPACITY

DEFAULT_RESULTS_DIR = Path("data/results")
DEFAULT_TREND_DAYS = 7


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration shared by the service, CLI and HTTP adapter."""

    results_dir: Path = DEFAULT_RESULTS_DIR
    history_capacity: int = DEFAULT_HISTORY_CAPACITY
    flakiness_threshold: float = DEFAULT_THRESHOLD
    min_runs: int = DEFAULT_MIN_RUNS
    flakiness_days: float = DEFAULT_DAYS
    trend_days: float = DEFAULT_TREND_DAYS

    def __post_init__(self) -> None:
        if self.history_capacity < 1:
            raise ValueError("history_capacity must be at least 1")
        if not 0 <= self.flakiness_threshold <= 100:
            raise ValueError("flakiness_threshold must be between 0 and 100")
        if self.min_runs < 1:
            raise ValueError("min_runs must be at least 1")
        if self.flakiness_days <= 0 or self.trend_days <= 0:
            raise ValueError("Analysis windows must be positive numbers of days")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MetricsConfig":
        """Build a config from ``ANALYTICS_*`` variables, keeping defaults for the rest."""

        env = os.environ if environ is None else environ
        return cls(
            results_dir=Path(env.get("ANALYTICS_RESULTS_DIR") or DEFAULT_RESULTS_DIR),
            history_capacity=_number(env, "ANALYTICS_HISTORY_CAPACITY", DEFAULT_HISTORY_CAPACITY, int),
            flakiness_threshold=_number(env, "ANALYTICS_FLAKINESS_THRESHOLD", DEFAULT_THRESHOLD, float),
            min_runs=_number(env, "ANALYTICS_MIN_RUNS", DEFAULT_MIN_RUNS, int),
            flakiness_days=_number(env, "ANALYTICS_FLAKINESS_DAYS", DEFAULT_DAYS, float),
            trend_days=_number(env, "ANALYTICS_TREND_DAYS", DEFAULT_TREND_DAYS, float),
        )


def _number(env: Mapping[str, str], key: str, default, caster):
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return caster(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc
