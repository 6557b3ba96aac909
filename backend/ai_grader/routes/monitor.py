"""Drain trigger and monitoring endpoints.

The trigger is what a scheduler or the auto-drain poller calls; the monitor
endpoints tell it whether to keep calling.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ai_grader.schemas.grading import (
    ApiKeyStatsResponse,
    DrainSummaryResponse,
    GradesByKeyResponse,
    WorkerStatusResponse,
)
from ai_grader.services.grading_runtime import GradingRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["monitor"])


@router.post("/trigger-ai-worker", response_model=DrainSummaryResponse)
async def trigger_ai_worker(
    limit: Optional[int] = Query(None, ge=1, le=50),
    rounds: Optional[int] = Query(None, ge=1, le=10),
    runtime: GradingRuntime = Depends(get_runtime),
):
    """Run one bounded drain: up to `rounds` rounds of up to `limit` jobs."""
    summary = await runtime.drain_controller.drain(limit=limit, rounds=rounds)
    return DrainSummaryResponse(
        **summary.to_dict(),
        message=f"Processed {summary.processed} job(s)",
    )


@router.get("/monitor/ai-worker", response_model=WorkerStatusResponse)
async def ai_worker_status(runtime: GradingRuntime = Depends(get_runtime)):
    """Queue counts per status."""
    counts = await runtime.monitor.queue_stats()
    return WorkerStatusResponse(
        timestamp=datetime.now(timezone.utc),
        ai_worker_queue=counts,
        configuration=runtime.monitor.configuration(),
    )


@router.get("/monitor/api-keys", response_model=ApiKeyStatsResponse)
async def api_key_stats(runtime: GradingRuntime = Depends(get_runtime)):
    """Per-credential window usage, penalties and remaining backoff."""
    stats = await runtime.monitor.credential_stats()
    return ApiKeyStatsResponse(
        timestamp=datetime.now(timezone.utc),
        configuration=runtime.monitor.configuration(),
        key_utilization=stats,
    )


@router.get("/monitor/ai-grades-by-key", response_model=GradesByKeyResponse)
async def grades_by_key(runtime: GradingRuntime = Depends(get_runtime)):
    """Completed grades and mean score per credential."""
    rows = await runtime.monitor.grades_by_credential()
    return GradesByKeyResponse(timestamp=datetime.now(timezone.utc), data=rows)
