"""APScheduler integration for periodic sync and maintenance jobs."""

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from jira_sync.config import settings
from jira_sync.database import SessionLocal
from jira_sync.models.schedule import Schedule
from jira_sync.schemas.sync import SyncScope
from jira_sync.services.maintenance import cleanup_old_checkpoints, fail_stale_runs
from jira_sync.services.progress import broadcaster
from jira_sync.services.sync_service import create_sync_run, execute_sync_run

log = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync_job"
MAINTENANCE_JOB_ID = "maintenance_job"
MAINTENANCE_CRON = "30 3 * * *"
MAX_QUEUED_RUNS = 5

# Global scheduler instance
scheduler = AsyncIOScheduler()

# Concurrency management
_sync_running = False  # Guard for 'skip' mode
_sync_queue = []  # Queue for 'queue' mode


async def scheduled_sync_job():
    """Start an incremental run for all configured projects, honouring the concurrency policy."""
    global _sync_running

    started = False
    db = SessionLocal()
    try:
        schedule = db.query(Schedule).first()
        if not schedule or not schedule.enabled:
            log.info("Scheduled sync skipped: scheduler disabled")
            return

        if _sync_running:
            if schedule.concurrency == 'queue' and len(_sync_queue) < MAX_QUEUED_RUNS:
                _sync_queue.append(datetime.now())
                log.info(f"Scheduled sync queued (queue size: {len(_sync_queue)})")
            elif schedule.concurrency == 'queue':
                log.warning("Scheduled sync queue full, skipping")
            else:
                log.warning("Scheduled sync skipped: previous run still active")
            return

        _sync_running = started = True
        sync_run = create_sync_run(db, SyncScope(sync_type='scheduled'), triggered_by="scheduler")
        log.info(f"Starting scheduled sync run #{sync_run.id}")
        sync_run = await execute_sync_run(db, sync_run, SyncScope(sync_type='scheduled'), broadcaster)
        log.info(f"Scheduled sync #{sync_run.id} finished with status '{sync_run.status}'")
    except Exception as e:
        log.error(f"Scheduled sync failed: {e}", exc_info=True)
    finally:
        if started:
            _sync_running = False
        db.close()

    if started and _sync_queue:
        _sync_queue.pop(0)
        log.info("Processing queued sync job")
        await scheduled_sync_job()


def maintenance_job():
    """Fail stale runs and drop checkpoints past the retention window."""
    db = SessionLocal()
    try:
        failed = fail_stale_runs(db, settings.stale_run_minutes)
        deleted = cleanup_old_checkpoints(db, settings.checkpoint_retention_days)
        log.info(f"Maintenance finished: {failed} stale run(s) failed, {deleted} checkpoint(s) deleted")
    except Exception as e:
        log.error(f"Maintenance job failed: {e}", exc_info=True)
    finally:
        db.close()


def reschedule_sync_job(cron: str, enabled: bool, timezone: str = 'UTC'):
    """Dynamically reschedule the sync job without restarting the app."""
    if scheduler.get_job(SYNC_JOB_ID):
        scheduler.remove_job(SYNC_JOB_ID)
        log.info(f"Removed existing job: {SYNC_JOB_ID}")

    if not enabled:
        log.info("Scheduled sync job disabled")
        return

    try:
        trigger = CronTrigger.from_crontab(cron, timezone=timezone)
    except ValueError as e:
        log.error(f"Failed to schedule job with cron '{cron}': {e}")
        raise
    scheduler.add_job(scheduled_sync_job, trigger=trigger, id=SYNC_JOB_ID, replace_existing=True)
    log.info(f"Scheduled sync job updated: cron='{cron}' ({timezone})")


def start_scheduler():
    """Start the APScheduler and load the stored schedule."""
    db = SessionLocal()
    try:
        schedule = db.query(Schedule).first()
        if schedule and schedule.enabled:
            reschedule_sync_job(schedule.cron, True, schedule.timezone)
            log.info(f"Loaded schedule from database: cron='{schedule.cron}'")
        else:
            log.info("No active schedule found in database")
    except Exception as e:
        log.warning(f"Failed to load initial schedule: {e}")
    finally:
        db.close()

    scheduler.add_job(
        maintenance_job,
        trigger=CronTrigger.from_crontab(MAINTENANCE_CRON),
        id=MAINTENANCE_JOB_ID,
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        log.info("APScheduler started successfully")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=True)
        log.info("APScheduler shut down successfully")
