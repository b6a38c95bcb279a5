"""Maintenance operations: checkpoint retention and stale run remediation."""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from jira_sync.models.sync_checkpoint import SyncCheckpoint
from jira_sync.models.sync_run import TERMINAL_STATUSES, SyncRun
from jira_sync.models.types import utcnow
from jira_sync.utils.sync_logger import create_sync_log

log = logging.getLogger(__name__)


def cleanup_old_checkpoints(db: Session, days_to_keep: int = 30) -> int:
    """
    Delete checkpoints of finished runs older than the retention window.

    Checkpoints of pending or in-progress runs are never deleted, since they
    are what a resume needs.

    Args:
        db: Database session
        days_to_keep: Number of days to retain checkpoints (default: 30)

    Returns:
        Number of checkpoints deleted

    Usage:
        scheduler.add_job(
            lambda: cleanup_old_checkpoints(SessionLocal()),
            CronTrigger.from_crontab("30 3 * * *"),
            id="checkpoint_cleanup_job"
        )
    """
    cutoff_date = utcnow() - timedelta(days=days_to_keep)

    finished_runs = db.query(SyncRun.id).filter(SyncRun.status.in_(TERMINAL_STATUSES))
    deleted = db.query(SyncCheckpoint).filter(
        SyncCheckpoint.created_at < cutoff_date,
        SyncCheckpoint.sync_run_id.in_(finished_runs),
    ).delete(synchronize_session=False)

    db.commit()

    log.info(f"Checkpoint cleanup: Deleted {deleted} checkpoints older than {days_to_keep} days (cutoff: {cutoff_date.isoformat()})")

    return deleted


def _last_activity(db: Session, sync_run: SyncRun) -> Optional[datetime]:
    """Latest checkpoint update, or the run's own timestamps when it has none."""
    last_checkpoint = db.query(func.max(SyncCheckpoint.updated_at)).filter(
        SyncCheckpoint.sync_run_id == sync_run.id
    ).scalar()
    if last_checkpoint is not None:
        return last_checkpoint
    if sync_run.status == 'in_progress':
        return sync_run.updated_at
    return sync_run.created_at


def find_stale_runs(db: Session, staleness_minutes: int = 15) -> List[Tuple[SyncRun, Optional[datetime]]]:
    """Non-terminal runs with no checkpoint (or run) activity inside the staleness window."""
    cutoff = utcnow() - timedelta(minutes=staleness_minutes)
    candidates = db.query(SyncRun).filter(
        SyncRun.status.in_(('pending', 'in_progress'))
    ).order_by(SyncRun.created_at.asc()).all()

    stale = []
    for sync_run in candidates:
        last_activity = _last_activity(db, sync_run)
        if last_activity is None or last_activity < cutoff:
            stale.append((sync_run, last_activity))
    return stale


def fail_stale_runs(db: Session, staleness_minutes: int = 15) -> int:
    """Mark stale runs as failed so they can be resumed; returns how many were changed."""
    stale = find_stale_runs(db, staleness_minutes)
    for sync_run, last_activity in stale:
        reason = f"Marked as failed: no activity for over {staleness_minutes} minutes"
        create_sync_log(
            db, sync_run.id, "warning", reason,
            context={"last_activity_at": last_activity.isoformat() if last_activity else None},
            operation="stale_cleanup", commit=False,
        )
        sync_run.mark_as_failed(reason, {"reason": "stale", "staleness_minutes": staleness_minutes})
    db.commit()

    if stale:
        log.warning(f"Stale run cleanup: failed {len(stale)} run(s) inactive for over {staleness_minutes} minutes")
    return len(stale)
