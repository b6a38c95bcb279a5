from unittest.mock import AsyncMock, patch

import pytest

from conftest import TestingSessionLocal
from jira_sync import scheduler as sync_scheduler
from jira_sync.models.schedule import Schedule
from jira_sync.models.sync_run import SyncRun


@pytest.fixture
def schedule(db):
    row = Schedule(cron="0 */6 * * *", timezone="UTC", concurrency="skip", enabled=True)
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def execute():
    with patch("jira_sync.scheduler.SessionLocal", TestingSessionLocal), \
            patch("jira_sync.scheduler.execute_sync_run", new_callable=AsyncMock) as execute:
        execute.side_effect = lambda db, sync_run, scope, publisher: sync_run
        yield execute
    sync_scheduler._sync_running = False
    sync_scheduler._sync_queue.clear()


@pytest.mark.asyncio
async def test_scheduled_job_creates_scheduled_run(schedule, execute, db):
    await sync_scheduler.scheduled_sync_job()

    execute.assert_awaited_once()
    sync_run = db.query(SyncRun).one()
    assert sync_run.sync_type == "scheduled"
    assert sync_run.triggered_by == "scheduler"
    assert sync_scheduler._sync_running is False


@pytest.mark.asyncio
async def test_disabled_schedule_does_nothing(schedule, execute, db):
    schedule.enabled = False
    db.commit()

    await sync_scheduler.scheduled_sync_job()

    execute.assert_not_awaited()
    assert db.query(SyncRun).count() == 0


@pytest.mark.asyncio
async def test_skip_mode_while_running(schedule, execute, db):
    sync_scheduler._sync_running = True

    await sync_scheduler.scheduled_sync_job()

    execute.assert_not_awaited()
    assert sync_scheduler._sync_running is True
    assert sync_scheduler._sync_queue == []


@pytest.mark.asyncio
async def test_queue_mode_defers_run(schedule, execute, db):
    schedule.concurrency = "queue"
    db.commit()
    sync_scheduler._sync_running = True

    await sync_scheduler.scheduled_sync_job()

    assert len(sync_scheduler._sync_queue) == 1
    execute.assert_not_awaited()


def test_reschedule_sync_job():
    try:
        sync_scheduler.reschedule_sync_job("*/15 * * * *", True, "Europe/Brussels")
        assert sync_scheduler.scheduler.get_job(sync_scheduler.SYNC_JOB_ID) is not None

        sync_scheduler.reschedule_sync_job("*/15 * * * *", False)
        assert sync_scheduler.scheduler.get_job(sync_scheduler.SYNC_JOB_ID) is None

        with pytest.raises(ValueError):
            sync_scheduler.reschedule_sync_job("every minute", True)
    finally:
        if sync_scheduler.scheduler.get_job(sync_scheduler.SYNC_JOB_ID):
            sync_scheduler.scheduler.remove_job(sync_scheduler.SYNC_JOB_ID)
