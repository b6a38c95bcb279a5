"""Operational endpoints: trigger, observe, cancel and resume sync runs."""

import asyncio
import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from jira_sync.auth import get_current_operator
from jira_sync.config import settings
from jira_sync.database import SessionLocal, get_db
from jira_sync.models.sync_log import SyncLogEntry
from jira_sync.models.sync_run import SyncRun
from jira_sync.models.types import utcnow
from jira_sync.schemas.auth import Operator
from jira_sync.schemas.sync import (
    PaginatedSyncRuns,
    ProgressEvent,
    ResumeAnalysis,
    StaleRunResponse,
    SyncLogResponse,
    SyncRequest,
    SyncRunResponse,
    SyncScope,
    ValidationResult,
)
from jira_sync.services.checkpoint_service import CheckpointService
from jira_sync.services.error_service import get_error_statistics
from jira_sync.services.maintenance import fail_stale_runs, find_stale_runs
from jira_sync.services.progress import ProgressReporter, broadcaster
from jira_sync.services.sync_service import create_sync_run, execute_sync_run

log = logging.getLogger(__name__)
router = APIRouter()

KEEPALIVE_SECONDS = 15.0


async def run_in_background(sync_run_id: int, scope: SyncScope):
    """Execute a run outside the request, with its own session."""
    db = SessionLocal()
    try:
        sync_run = db.get(SyncRun, sync_run_id)
        if sync_run is None:
            log.error(f"Background sync: run #{sync_run_id} disappeared before it started")
            return
        await execute_sync_run(db, sync_run, scope, broadcaster)
    except Exception as e:
        log.error(f"Background sync run #{sync_run_id} crashed: {e}", exc_info=True)
    finally:
        db.close()


def _get_run_or_404(db: Session, run_id: int) -> SyncRun:
    sync_run = db.get(SyncRun, run_id)
    if sync_run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Sync run {run_id} not found")
    return sync_run


@router.post("/run", response_model=SyncRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    request: SyncRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Create a pending run and start it in the background."""
    if request.sync_type == 'recovery' or request.resume_of_run_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use POST /sync/runs/{id}/resume to resume a run",
        )
    sync_run = create_sync_run(db, request, triggered_by=current_operator.username if current_operator else None)
    log.info(f"Sync run #{sync_run.id} requested for projects {request.project_keys or 'from settings'}")
    background_tasks.add_task(run_in_background, sync_run.id, SyncScope(**request.model_dump()))
    return sync_run


@router.get("/runs", response_model=PaginatedSyncRuns)
async def list_runs(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    query = db.query(SyncRun)
    if status_filter:
        query = query.filter(SyncRun.status == status_filter)
    total = query.count()
    runs = query.order_by(SyncRun.created_at.desc(), SyncRun.id.desc()).offset(skip).limit(limit).all()
    return PaginatedSyncRuns(data=[SyncRunResponse.model_validate(run) for run in runs], total=total)


@router.get("/runs/stale", response_model=List[StaleRunResponse])
async def list_stale_runs(
    minutes: int = Query(settings.stale_run_minutes, ge=1),
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Runs still pending or in progress with no recent checkpoint activity."""
    now = utcnow()
    return [
        StaleRunResponse(
            id=sync_run.id,
            status=sync_run.status,
            sync_type=sync_run.sync_type,
            current_operation=sync_run.current_operation,
            last_activity_at=last_activity,
            minutes_inactive=round((now - last_activity).total_seconds() / 60, 1) if last_activity else float(minutes),
        )
        for sync_run, last_activity in find_stale_runs(db, minutes)
    ]


@router.post("/runs/stale/cleanup")
async def cleanup_stale_runs(
    minutes: int = Query(settings.stale_run_minutes, ge=1),
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    failed = fail_stale_runs(db, minutes)
    return {"failed_runs": failed, "staleness_minutes": minutes}


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def get_run(
    run_id: int,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    return _get_run_or_404(db, run_id)


@router.post("/runs/{run_id}/cancel", response_model=SyncRunResponse)
async def cancel_run(
    run_id: int,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Request cancellation; the run stops before its next project."""
    sync_run = _get_run_or_404(db, run_id)
    if not sync_run.can_cancel:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync run {run_id} is already {sync_run.status}",
        )
    sync_run.cancel_requested = True
    db.commit()
    db.refresh(sync_run)
    log.warning(f"Cancellation requested for sync run #{run_id} by {current_operator.username if current_operator else 'unknown'}")
    return sync_run


@router.get("/runs/{run_id}/resume-analysis", response_model=ResumeAnalysis)
async def get_resume_analysis(
    run_id: int,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    _get_run_or_404(db, run_id)
    return CheckpointService(db).analyze_resume(run_id)


@router.post("/runs/{run_id}/resume", response_model=SyncRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def resume_run(
    run_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Start a recovery run that picks up where ``run_id`` stopped."""
    original = _get_run_or_404(db, run_id)
    if not original.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync run {run_id} is still {original.status}; cancel it or wait for it to become stale",
        )
    analysis = CheckpointService(db).analyze_resume(run_id)
    if not analysis.can_resume:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync run {run_id} cannot be resumed ({analysis.strategy}): {analysis.reason}",
        )

    scope = SyncScope(
        project_keys=original.project_keys,
        sync_type='recovery',
        resume_of_run_id=run_id,
    )
    recovery_run = create_sync_run(db, scope, triggered_by=current_operator.username if current_operator else None)
    log.info(f"Recovery run #{recovery_run.id} created for run #{run_id} ({analysis.strategy})")
    background_tasks.add_task(run_in_background, recovery_run.id, scope)
    return recovery_run


@router.get("/runs/{run_id}/logs", response_model=List[SyncLogResponse])
async def get_run_logs(
    run_id: int,
    level: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    _get_run_or_404(db, run_id)
    query = db.query(SyncLogEntry).filter(SyncLogEntry.sync_run_id == run_id)
    if level:
        query = query.filter(SyncLogEntry.level == level.lower())
    return query.order_by(SyncLogEntry.timestamp.asc(), SyncLogEntry.id.asc()).offset(skip).limit(limit).all()


@router.get("/runs/{run_id}/validation", response_model=ValidationResult)
async def get_run_validation(
    run_id: int,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    sync_run = _get_run_or_404(db, run_id)
    if not sync_run.validation_results:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Sync run {run_id} has no validation results")
    return ValidationResult.model_validate(sync_run.validation_results)


def _snapshot(sync_run: SyncRun) -> ProgressEvent:
    return ProgressEvent(
        run_id=sync_run.id,
        operation=sync_run.current_operation or sync_run.status,
        percentage=sync_run.progress_percentage or 0.0,
        counts=ProgressReporter.counts_for(sync_run),
        emitted_at=utcnow(),
    )


def _load_snapshot(run_id: int) -> Optional[ProgressEvent]:
    """Fresh snapshot of a finished run, or None while it is still going."""
    db = SessionLocal()
    try:
        sync_run = db.get(SyncRun, run_id)
        if sync_run is None or sync_run.is_terminal:
            return _snapshot(sync_run) if sync_run else None
        return None
    finally:
        db.close()


async def progress_stream(run_id: int, initial: ProgressEvent, finished: bool):
    """Server-sent events for one run, ending once it reaches a terminal state."""
    yield f"data: {initial.model_dump_json()}\n\n"
    if finished:
        return

    queue = broadcaster.subscribe(run_id)
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                final = _load_snapshot(run_id)
                if final is not None:
                    yield f"data: {final.model_dump_json()}\n\n"
                    return
                yield ": keepalive\n\n"
                continue
            yield f"data: {event.model_dump_json()}\n\n"
            if event.percentage >= 100.0 or event.operation.startswith("Sync failed"):
                return
    finally:
        broadcaster.unsubscribe(run_id, queue)


@router.get("/runs/{run_id}/events")
async def stream_run_events(
    run_id: int,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    sync_run = _get_run_or_404(db, run_id)
    return StreamingResponse(
        progress_stream(run_id, _snapshot(sync_run), sync_run.is_terminal),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/statistics")
async def get_statistics(
    days: int = Query(7, ge=1, le=365),
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Checkpoint success rate and error breakdown over the last ``days`` days."""
    return {
        "checkpoints": CheckpointService(db).get_statistics(days).model_dump(),
        "errors": get_error_statistics(db, days),
    }
