"""HTTP endpoints and exports for test metrics.

The routes are a thin adapter: they parse query parameters, delegate to a
:class:`~analytics.service.MetricsService` and serialise the result.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse

from analytics.frames import flakiness_frame, success_rates_frame
from analytics.models import InvalidBatchError, ensure_utc, format_timestamp, utc_now
from analytics.service import MetricsService
from analytics.success_rates import EARLIEST


def _envelope(**content: Any) -> Dict[str, Any]:
    return {"success": True, **content, "timestamp": format_timestamp(utc_now())}


def resolve_window(
    start: Optional[datetime],
    end: Optional[datetime],
    now: Optional[datetime] = None,
):
    """Turn optional query bounds into a closed window, or ``None`` for all data."""

    if start is None and end is None:
        return None
    now = now or utc_now()
    resolved_end = ensure_utc(end or now)
    resolved_start = ensure_utc(start) if start is not None else EARLIEST
    if resolved_start > resolved_end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return resolved_start, resolved_end


def create_app(service_provider: Callable[[], MetricsService] = MetricsService.from_env) -> FastAPI:
    service = service_provider()
    app = FastAPI(title="Test metrics")

    @app.get("/api/test-metrics/success-rates")
    def success_rates(start: Optional[datetime] = None, end: Optional[datetime] = None):
        window = resolve_window(start, end)
        rates = service.get_success_rates(window)
        return _envelope(rates=rates.to_dict())

    @app.get("/api/test-metrics/success-trends")
    def success_trends(days: float = Query(7, gt=0)):
        trends = service.get_trends(days)
        return _envelope(trends=trends.to_dict(), period_days=days)

    @app.get("/api/test-metrics/flakiness")
    def flakiness(
        days: float = Query(14, gt=0),
        threshold: Optional[float] = Query(None, ge=0, le=100),
    ):
        report = service.get_flakiness_report(days, threshold)
        return _envelope(flakiness_report=report.to_dict())

    @app.get("/api/test-metrics/flaky-tests")
    def flaky_tests(limit: int = Query(10, ge=0)):
        measures = service.get_most_flaky_tests(limit)
        return _envelope(flaky_tests=[measure.to_dict() for measure in measures])

    @app.post("/api/test-metrics/update")
    def update(batch: Dict[str, Any] = Body(...)):
        try:
            result = service.record_run_result(batch)
        except InvalidBatchError as exc:
            raise HTTPException(status_code=400, detail=exc.problems) from exc
        return _envelope(
            success_rates_updated=True,
            flakiness_updated=True,
            overall_success_rate=result.success_rates.overall_success_rate,
            overall_flakiness_score=result.flakiness.overall_score,
        )

    @app.get("/exports/success-rates.csv")
    def success_rates_csv():
        frame = success_rates_frame(service.get_success_rates())
        return PlainTextResponse(frame.to_csv(index=False), media_type="text/csv")

    @app.get("/exports/flakiness.csv")
    def flakiness_csv():
        frame = flakiness_frame(service.analyzer.load_report())
        return PlainTextResponse(frame.to_csv(index=False), media_type="text/csv")

    return app
