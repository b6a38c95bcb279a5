"""Schedule endpoints for periodic sync configuration."""

from typing import Annotated
from datetime import datetime
from zoneinfo import ZoneInfo
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from croniter import croniter

from jira_sync.auth import get_current_operator
from jira_sync.database import get_db
from jira_sync.models.schedule import Schedule
from jira_sync.schemas.auth import Operator
from jira_sync.schemas.schedule import ScheduleResponse, ScheduleUpdate

log = logging.getLogger(__name__)
router = APIRouter()

DEFAULT_CRON = "0 */6 * * *"


def compute_next_runs(cron: str, timezone: str, count: int = 3) -> list[str]:
    """Next ``count`` fire times as ISO strings; empty when the expression cannot be evaluated."""
    try:
        now = datetime.now(ZoneInfo(timezone))
        iter_obj = croniter(cron, now)
        return [iter_obj.get_next(datetime).isoformat() for _ in range(count)]
    except (ValueError, KeyError) as e:
        log.warning(f"Failed to compute next runs: {e}")
        return []


def _to_response(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=schedule.id,
        cron=schedule.cron,
        timezone=schedule.timezone,
        concurrency=schedule.concurrency,
        enabled=schedule.enabled,
        next_runs=compute_next_runs(schedule.cron, schedule.timezone) if schedule.enabled else [],
        updated_at=schedule.updated_at.isoformat(),
        created_at=schedule.created_at.isoformat(),
    )


@router.get("/", response_model=ScheduleResponse)
async def get_schedule(
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Current schedule; a disabled default is created on first access."""
    schedule = db.query(Schedule).first()
    if not schedule:
        schedule = Schedule(cron=DEFAULT_CRON, timezone="UTC", concurrency="skip", enabled=False)
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        log.info("Created default schedule configuration")
    return _to_response(schedule)


@router.put("/", response_model=ScheduleResponse)
async def update_schedule(
    update: ScheduleUpdate,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Update the schedule and reschedule the job."""
    schedule = db.query(Schedule).first()
    if not schedule:
        raise HTTPException(
            status_code=404,
            detail="Schedule not found. Use GET /api/v1/schedule first to initialize."
        )

    for field, value in update.model_dump(exclude_none=True).items():
        setattr(schedule, field, value)
    db.commit()
    db.refresh(schedule)

    from jira_sync.scheduler import reschedule_sync_job
    try:
        reschedule_sync_job(schedule.cron, schedule.enabled, schedule.timezone)
        log.info(f"Schedule updated and rescheduled: cron='{schedule.cron}', enabled={schedule.enabled}")
    except ValueError as e:
        # The schedule is saved; the job keeps its previous trigger
        log.error(f"Failed to reschedule sync job: {e}")

    return _to_response(schedule)
