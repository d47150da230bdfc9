"""
Reconciliation service control endpoints (manual trigger, timer lifecycle, history).
"""
import time
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from bl_reconciliation.api.deps import get_audit, get_request_id, get_runner, get_scheduler
from bl_reconciliation.jobs.reconciliation_runner import ReconciliationRunner
from bl_reconciliation.jobs.scheduler import ReconciliationScheduler
from bl_reconciliation.models.schemas.base import ResponseBase
from bl_reconciliation.models.schemas.reconciliation import (
    ReconciliationRunOut,
    ReconciliationTriggerResult,
    SchedulerStatus,
)
from bl_reconciliation.utils import AuditLogger, get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


def _status(scheduler: ReconciliationScheduler) -> SchedulerStatus:
    return SchedulerStatus(
        active=scheduler.active,
        next_run=scheduler.next_run(),
        interval_minutes=scheduler.interval_minutes,
    )


@router.post(
    "/trigger",
    response_model=ReconciliationTriggerResult,
    summary="Run a reconciliation now"
)
async def trigger_reconciliation(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
    request_id: str = Depends(get_request_id),
) -> ReconciliationTriggerResult:
    """Run one reconciliation pass on a worker thread and return its summary.

    Individual delivery failures are reported in ``errors``; the call itself
    only fails (409) when another run is already in progress.
    """
    start_time = time.time()
    logger.info("Manual reconciliation requested", request_id=request_id)

    run = await scheduler.trigger_manual()
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A reconciliation run is already in progress"
        )

    log_business_event(
        "manual_reconciliation_triggered",
        {"run_id": run.id, "processed": run.processed_count, "reconciled": run.reconciled_count, "errors": run.error_count},
        request_id=request_id,
    )
    log_performance(
        "manual_reconciliation",
        (time.time() - start_time) * 1000,
        {"run_id": run.id, "status": run.status},
    )
    return ReconciliationTriggerResult.from_run(run)


@router.get(
    "/status",
    response_model=SchedulerStatus,
    summary="Scheduler status"
)
async def get_status(scheduler: ReconciliationScheduler = Depends(get_scheduler)) -> SchedulerStatus:
    return _status(scheduler)


@router.post(
    "/start",
    response_model=ResponseBase,
    summary="Start the periodic reconciliation timer"
)
async def start_scheduler(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    started = scheduler.start()
    log_business_event("reconciliation_scheduler_start", {"changed": started}, request_id=request_id)
    return ResponseBase(
        message="Reconciliation service started" if started else "Reconciliation service already running",
        data=_status(scheduler).model_dump(by_alias=True, mode="json"),
    )


@router.post(
    "/stop",
    response_model=ResponseBase,
    summary="Stop the periodic reconciliation timer"
)
async def stop_scheduler(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    stopped = scheduler.stop()
    log_business_event("reconciliation_scheduler_stop", {"changed": stopped}, request_id=request_id)
    return ResponseBase(
        message="Reconciliation service stopped" if stopped else "Reconciliation service already stopped",
        data=_status(scheduler).model_dump(by_alias=True, mode="json"),
    )


@router.get(
    "/runs",
    response_model=List[ReconciliationRunOut],
    summary="Recent reconciliation runs"
)
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    runner: ReconciliationRunner = Depends(get_runner),
) -> List[ReconciliationRunOut]:
    return [ReconciliationRunOut.from_run(r) for r in runner.recent_runs(limit)]


@router.get(
    "/audit",
    summary="Recent audit log entries"
)
async def recent_audit(
    limit: int = Query(100, ge=1, le=1000),
    level: Optional[str] = Query(None, description="INFO, WARN, ERROR or DEBUG"),
    audit: AuditLogger = Depends(get_audit),
):
    entries = audit.recent(limit, level=level)
    return {"count": len(entries), "entries": entries}
