"""
HTTP trigger for snapshot collection.

Run:
    uvicorn snapshot_collector.api:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from snapshot_collector.application.snapshot_collector import SnapshotCollector
from snapshot_collector.config import Settings, load_settings
from snapshot_collector.domain.exceptions import CollectorException, ConfigurationException
from snapshot_collector.domain.models import RunOutcome, RunSummary

logger = logging.getLogger(__name__)


def summary_payload(summary: RunSummary) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": summary.success,
        "outcome": summary.outcome.value,
        "timestamp": (summary.finished_at or summary.started_at).isoformat(),
        "stats": {
            "repos_checked": summary.candidates_selected,
            "resolved": summary.resolved,
            "not_found": summary.not_found,
            "failed": summary.transient_failed,
            "promoted": summary.promoted,
            "snapshots_taken": summary.snapshots_written,
            "write_errors": summary.write_errors,
            "api_calls_made": summary.api_calls_made,
        },
        "rate_limit": {
            "remaining_after": summary.budget_remaining,
            "total": summary.budget_total,
            "reset_time": summary.reset_at.isoformat() if summary.reset_at else None,
        },
    }
    if summary.reason:
        key = "error" if summary.outcome is RunOutcome.LOW_BUDGET else "message"
        payload[key] = summary.reason
    return payload


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app(
    settings_loader: Callable[[], Settings] = load_settings,
    collector_factory: Callable[[Settings], SnapshotCollector] = SnapshotCollector.from_settings,
) -> FastAPI:
    app = FastAPI(
        title="Repository Snapshot Collector",
        description="Triggers prioritized, batched snapshot collection runs.",
        version="1.0.0",
    )

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/collect")
    async def collect(limit: Optional[int] = Query(None, ge=1)) -> JSONResponse:
        try:
            settings = settings_loader()
        except ConfigurationException as e:
            logger.error(f"Snapshot collector misconfigured: {e}")
            return _error_response(500, str(e))

        collector = collector_factory(settings)
        try:
            summary = await collector.run(limit or settings.snapshot_limit)
        except CollectorException as e:
            logger.error(f"Snapshot collector error: {e}")
            return _error_response(500, str(e))
        finally:
            await collector.close()

        # 429 tells the scheduler to try again after the reset
        status_code = 429 if summary.outcome is RunOutcome.LOW_BUDGET else 200
        return JSONResponse(status_code=status_code, content=summary_payload(summary))

    return app


app = create_app()
