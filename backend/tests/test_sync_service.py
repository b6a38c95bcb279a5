import random
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import BASE_TIME, make_run
from jira_sync.config import settings
from jira_sync.exceptions import TransientAPIError
from jira_sync.models.jira_issue import JiraIssue
from jira_sync.models.jira_user import JiraUser
from jira_sync.models.jira_worklog import JiraWorklog
from jira_sync.models.project_sync_status import ProjectSyncStatus
from jira_sync.models.sync_checkpoint import RECOVERY_PROJECT_KEY, SyncCheckpoint
from jira_sync.schemas.sync import ResumePoint, SyncScope
from jira_sync.services.checkpoint_service import CheckpointService
from jira_sync.services.progress import ProgressPublisher, ProgressReporter
from jira_sync.services.repository import EntityRepository
from jira_sync.services.sync_service import SyncOrchestrator, execute_sync_run
from jira_sync.services.validation import ValidationService


class RecordingPublisher(ProgressPublisher):
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)


def make_orchestrator(fake_jira, db, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(client=fake_jira, db=db, **kwargs)


def checkpoints_for(db, run_id, project_key=None):
    query = db.query(SyncCheckpoint).filter(SyncCheckpoint.sync_run_id == run_id)
    if project_key:
        query = query.filter(SyncCheckpoint.project_key == project_key)
    return query.order_by(SyncCheckpoint.id).all()


def status_of(db, project_key) -> ProjectSyncStatus:
    return db.query(ProjectSyncStatus).filter(ProjectSyncStatus.project_key == project_key).first()


@pytest.mark.asyncio
async def test_sync_two_projects(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=3, worklogs_per_issue=2)
    fake_jira.add_project("BETA", issue_count=2, worklogs_per_issue=1)
    publisher = RecordingPublisher()
    orchestrator = make_orchestrator(fake_jira, db, progress_reporter=ProgressReporter(publisher))

    sync_run = await orchestrator.run(SyncScope(project_keys=["alpha", "BETA"]))

    assert sync_run.status == "completed"
    assert sync_run.project_keys == ["ALPHA", "BETA"]
    assert sync_run.total_projects == 2
    assert sync_run.processed_projects == 2
    assert sync_run.processed_issues == 5
    assert sync_run.processed_worklogs == 8
    assert sync_run.processed_users == 1
    assert sync_run.error_count == 0
    assert sync_run.progress_percentage == 100.0
    assert db.query(JiraIssue).count() == 5
    assert db.query(JiraWorklog).count() == 8
    assert db.query(JiraUser).count() == 1

    assert [c.status for c in checkpoints_for(db, sync_run.id)] == ["completed", "completed"]
    assert status_of(db, "ALPHA").last_sync_status == "completed"
    assert status_of(db, "ALPHA").issues_count == 3
    assert status_of(db, "BETA").worklogs_count == 2

    assert publisher.events[-1].percentage == 100.0
    assert publisher.events[-1].operation == "Sync completed"
    percentages = [event.percentage for event in publisher.events]
    assert percentages == sorted(percentages)


@pytest.mark.asyncio
async def test_failing_project_does_not_stop_the_run(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=2, worklogs_per_issue=1)

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["MISSING", "ALPHA"]))

    assert sync_run.status == "completed"
    assert sync_run.processed_projects == 1
    assert sync_run.error_count == 1
    assert sync_run.error_details[0]["context"]["project_key"] == "MISSING"
    assert checkpoints_for(db, sync_run.id, "MISSING")[0].status == "failed"
    assert checkpoints_for(db, sync_run.id, "ALPHA")[0].status == "completed"


def fail_run_during(fake_jira, db, sync_run, project_key):
    """Mark the run failed from outside while ``project_key`` is being fetched, like the stale run cleanup does."""
    original = fake_jira.fetch_detail

    async def fetch_and_fail(resource_type, identifier):
        record = await original(resource_type, identifier)
        if identifier == project_key:
            sync_run.mark_as_failed("Sync run exceeded the stale timeout")
            db.commit()
        return record

    fake_jira.fetch_detail = fetch_and_fail


@pytest.mark.asyncio
async def test_run_failed_elsewhere_stops_before_next_project(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1, worklogs_per_issue=1)
    fake_jira.add_project("BETA", issue_count=1, worklogs_per_issue=1)
    orchestrator = make_orchestrator(fake_jira, db)
    sync_run = orchestrator.create_run(SyncScope(project_keys=["ALPHA", "BETA"]))
    fail_run_during(fake_jira, db, sync_run, "ALPHA")

    result = await orchestrator.run(SyncScope(project_keys=["ALPHA", "BETA"]), sync_run)

    assert result.status == "failed"
    assert result.error_message == "Sync run exceeded the stale timeout"
    assert ("fetch_detail", "project", "BETA") not in fake_jira.calls
    assert checkpoints_for(db, sync_run.id, "BETA") == []


@pytest.mark.asyncio
async def test_run_failed_elsewhere_is_not_completed(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1, worklogs_per_issue=1)
    orchestrator = make_orchestrator(fake_jira, db)
    sync_run = orchestrator.create_run(SyncScope(project_keys=["ALPHA"]))
    fail_run_during(fake_jira, db, sync_run, "ALPHA")

    result = await orchestrator.run(SyncScope(project_keys=["ALPHA"]), sync_run)

    assert result.status == "failed"
    assert result.error_count == 1
    assert result.error_message == "Sync run exceeded the stale timeout"
    assert result.completed_at is not None

    assert status_of(db, "MISSING").last_sync_status == "failed"
    assert "not found" in status_of(db, "MISSING").last_error.lower()
    assert db.query(JiraIssue).count() == 2


@pytest.mark.asyncio
async def test_middle_project_failure_is_isolated(fake_jira, db):
    for key in ("ALPHA", "BETA", "GAMMA"):
        fake_jira.add_project(key, issue_count=2, worklogs_per_issue=1)
    fake_jira.fail("issue", "BETA", TransientAPIError("Jira server error 503", status_code=503))

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["ALPHA", "BETA", "GAMMA"]))

    assert sync_run.status == "completed"
    assert sync_run.error_count >= 1
    assert sync_run.processed_projects == 2
    assert status_of(db, "BETA").last_sync_status == "failed"
    assert status_of(db, "ALPHA").issues_count == 2
    assert status_of(db, "GAMMA").issues_count == 2
    assert checkpoints_for(db, sync_run.id, "BETA")[0].checkpoint_data["error"]["context"]["retryable"] is True


@pytest.mark.asyncio
async def test_rerun_is_idempotent(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=4, worklogs_per_issue=2)
    orchestrator = make_orchestrator(fake_jira, db)

    await orchestrator.run(SyncScope(project_keys=["ALPHA"]))
    counts = EntityRepository(db).count_all()
    second = await orchestrator.run(SyncScope(project_keys=["ALPHA"]))

    assert second.status == "completed"
    assert EntityRepository(db).count_all() == counts
    # Worklogs older than the previous sync are skipped on the incremental pass
    assert second.processed_worklogs == 0


@pytest.mark.asyncio
async def test_issue_pages_follow_page_size(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=73)

    sync_run = await make_orchestrator(fake_jira, db, issue_page_size=25).run(SyncScope(project_keys=["ALPHA"]))

    issue_calls = fake_jira.calls_for("fetch_page", "issue")
    assert [call[3] for call in issue_calls] == [0, 25, 50]
    assert sync_run.processed_issues == 73
    assert checkpoints_for(db, sync_run.id)[0].checkpoint_data["entities_processed"] == 73


@pytest.mark.asyncio
async def test_recovery_resumes_from_checkpoint_offset(fake_jira, db):
    fake_jira.add_project("PROJ", issue_count=100)
    EntityRepository(db).upsert(fake_jira.projects["PROJ"])
    interrupted = make_run(db, status="failed", project_keys=["PROJ"])
    service = CheckpointService(db)
    checkpoint = service.create_checkpoint(interrupted.id, "PROJ", {
        "project_stored": True,
        "entities_processed": 40,
        "entities_total": 100,
        "last_processed_entity_key": "PROJ-40",
    })
    service.fail_checkpoint(checkpoint, "Jira server error 503")

    sync_run = await make_orchestrator(fake_jira, db).run(
        SyncScope(sync_type="recovery", resume_of_run_id=interrupted.id)
    )

    assert sync_run.status == "completed"
    assert fake_jira.calls_for("fetch_detail", "project") == []
    assert [call[3] for call in fake_jira.calls_for("fetch_page", "issue")] == [40, 90]
    assert db.query(JiraIssue).count() == 60
    assert sync_run.total_issues == 60
    recovery = checkpoints_for(db, sync_run.id, RECOVERY_PROJECT_KEY)
    assert recovery[0].checkpoint_type == "recovery"
    assert recovery[0].checkpoint_data["strategy"] == "partial_resume"
    assert recovery[0].checkpoint_data["resumed_run_id"] == interrupted.id


@pytest.mark.asyncio
async def test_recovery_of_corrupt_checkpoint_fails(fake_jira, db):
    interrupted = make_run(db, status="failed", project_keys=["PROJ"])
    service = CheckpointService(db)
    service.create_checkpoint(interrupted.id, "PROJ", {
        "project_stored": True, "entities_processed": 120, "entities_total": 100,
    })

    sync_run = await make_orchestrator(fake_jira, db).run(
        SyncScope(sync_type="recovery", resume_of_run_id=interrupted.id)
    )

    assert sync_run.status == "failed"
    assert "needs manual review" in sync_run.error_message
    recovery = checkpoints_for(db, sync_run.id, RECOVERY_PROJECT_KEY)
    assert recovery[0].checkpoint_data["strategy"] == "manual_review_required"
    assert fake_jira.calls == []


@pytest.mark.asyncio
async def test_recovery_of_completed_run_does_nothing(fake_jira, db):
    finished = make_run(db, status="completed", project_keys=["PROJ"])
    service = CheckpointService(db)
    service.complete_checkpoint(service.create_checkpoint(finished.id, "PROJ", {"project_stored": True}))

    sync_run = await make_orchestrator(fake_jira, db).run(
        SyncScope(sync_type="recovery", resume_of_run_id=finished.id)
    )

    assert sync_run.status == "completed"
    assert sync_run.total_projects == 0
    assert fake_jira.calls == []


@pytest.mark.asyncio
async def test_cancellation_between_projects(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1, worklogs_per_issue=1)
    fake_jira.add_project("BETA", issue_count=1, worklogs_per_issue=1)
    orchestrator = make_orchestrator(fake_jira, db)
    sync_run = orchestrator.create_run(SyncScope(project_keys=["ALPHA", "BETA"]))

    original = fake_jira.fetch_detail

    async def fetch_and_cancel(resource_type, identifier):
        record = await original(resource_type, identifier)
        sync_run.cancel_requested = True
        return record

    fake_jira.fetch_detail = fetch_and_cancel
    await orchestrator.run(SyncScope(project_keys=["ALPHA", "BETA"]), sync_run)

    assert sync_run.status == "failed"
    assert sync_run.error_message == "Sync cancelled by operator"
    assert sync_run.processed_projects == 1
    assert checkpoints_for(db, sync_run.id, "BETA") == []
    assert checkpoints_for(db, sync_run.id, "ALPHA")[0].status == "completed"


@pytest.mark.asyncio
async def test_no_projects_in_scope_fails_run(fake_jira, db):
    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope())

    assert sync_run.status == "failed"
    assert "No projects in scope" in sync_run.error_message
    assert sync_run.error_details[0]["context"] == {"stage": "precondition"}


@pytest.mark.asyncio
async def test_unreachable_jira_fails_run(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1)
    fake_jira.connection_ok = False

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["ALPHA"]))

    assert sync_run.status == "failed"
    assert "unreachable" in sync_run.error_message
    assert db.query(JiraIssue).count() == 0


@pytest.mark.asyncio
async def test_default_project_keys_are_used(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1)

    sync_run = await make_orchestrator(fake_jira, db, default_project_keys=["ALPHA"]).run(SyncScope())

    assert sync_run.status == "completed"
    assert sync_run.project_keys == ["ALPHA"]


@pytest.mark.asyncio
async def test_critical_error_stops_the_run(fake_jira, db):
    for key in ("ALPHA", "BETA", "GAMMA"):
        fake_jira.add_project(key, issue_count=1)
    fake_jira.fail("issue", "BETA", MemoryError())

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["ALPHA", "BETA", "GAMMA"]))

    assert sync_run.status == "failed"
    assert "Critical error while syncing BETA" in sync_run.error_message
    assert checkpoints_for(db, sync_run.id, "BETA")[0].status == "failed"
    assert ("fetch_detail", "project", "GAMMA") not in fake_jira.calls


@pytest.mark.asyncio
async def test_invalid_worklog_is_logged_and_skipped(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1, worklogs_per_issue=2)
    broken = fake_jira.worklogs["ALPHA-1"][0].model_copy(update={"started_at": None})
    fake_jira.worklogs["ALPHA-1"][0] = broken

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["ALPHA"]))

    assert sync_run.status == "completed"
    assert sync_run.error_count == 1
    assert sync_run.processed_worklogs == 1
    assert sync_run.total_worklogs == 2
    assert db.query(JiraWorklog).count() == 1


@pytest.mark.asyncio
async def test_failed_worklog_write_keeps_run_counters(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1, worklogs_per_issue=2)
    orchestrator = make_orchestrator(fake_jira, db)
    resolver = orchestrator.repository.resolver
    original = resolver.reconcile

    def reconcile(existing, record, links=None):
        if getattr(record, "remote_id", None) == "ALPHA-1-wl-1":
            raise ValueError("database is locked")
        return original(existing, record, links)

    with patch.object(resolver, "reconcile", side_effect=reconcile):
        sync_run = await orchestrator.run(SyncScope(project_keys=["ALPHA"]))

    assert sync_run.status == "completed"
    assert sync_run.total_worklogs == 2
    assert sync_run.processed_worklogs == 1
    assert sync_run.processed_issues == 1
    assert sync_run.error_count == 1


@pytest.mark.asyncio
async def test_project_failure_keeps_run_counters(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=2, worklogs_per_issue=1)
    fake_jira.fail("worklog", "ALPHA-2", TransientAPIError("Jira server error 503", status_code=503))

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["ALPHA"]))

    assert sync_run.status == "completed"
    assert status_of(db, "ALPHA").last_sync_status == "failed"
    assert sync_run.total_issues == 2
    assert sync_run.processed_issues == 2
    assert sync_run.total_worklogs == 1
    assert sync_run.processed_worklogs == 1
    assert sync_run.processed_users == 1



@pytest.mark.asyncio
async def test_worklogs_before_window_are_skipped(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=2, worklogs_per_issue=3)
    since = BASE_TIME + timedelta(minutes=90)

    sync_run = await make_orchestrator(fake_jira, db).run(SyncScope(project_keys=["ALPHA"], since=since))

    assert sync_run.processed_worklogs == 4
    assert sync_run.total_worklogs == 4
    stored = {w.jira_id for w in db.query(JiraWorklog).all()}
    assert "ALPHA-1-wl-1" not in stored
    assert "ALPHA-1-wl-2" in stored


@pytest.mark.asyncio
async def test_validation_results_are_stored(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=3, worklogs_per_issue=1)
    validation = ValidationService(fake_jira, db, rng=random.Random(3))

    sync_run = await make_orchestrator(fake_jira, db, validation_service=validation).run(
        SyncScope(project_keys=["ALPHA"])
    )

    assert sync_run.status == "completed"
    assert sync_run.validation_results["valid"] is True
    assert sync_run.validation_results["projects"][0]["resource_type_distribution"] == {"development": 3}
    assert "ALPHA: all worklogs have the same resource type" in sync_run.validation_results["warnings"]
    assert sync_run.completeness_score == 98.0
    assert status_of(db, "ALPHA").last_validation_status == "valid"


class TestDetermineSince:
    def _status(self, db, **values):
        db.add(ProjectSyncStatus(project_key="ALPHA", **values))
        db.commit()

    def test_full_history_without_previous_sync(self, fake_jira, db):
        assert make_orchestrator(fake_jira, db).determine_since("ALPHA", SyncScope()) is None

    def test_last_successful_sync(self, fake_jira, db):
        self._status(db, last_sync_at=BASE_TIME, last_sync_status="completed")
        assert make_orchestrator(fake_jira, db).determine_since("ALPHA", SyncScope()) == BASE_TIME

    def test_failed_sync_is_not_trusted(self, fake_jira, db):
        self._status(db, last_sync_at=BASE_TIME, last_sync_status="failed")
        assert make_orchestrator(fake_jira, db).determine_since("ALPHA", SyncScope()) is None

    def test_invalid_validation_forces_full_sync(self, fake_jira, db):
        self._status(db, last_sync_at=BASE_TIME, last_sync_status="completed", last_validation_status="invalid")
        assert make_orchestrator(fake_jira, db).determine_since("ALPHA", SyncScope()) is None

    def test_explicit_and_forced_scopes(self, fake_jira, db):
        self._status(db, last_sync_at=BASE_TIME, last_sync_status="completed")
        orchestrator = make_orchestrator(fake_jira, db)
        explicit = BASE_TIME - timedelta(days=7)
        assert orchestrator.determine_since("ALPHA", SyncScope(since=explicit)) == explicit
        assert orchestrator.determine_since("ALPHA", SyncScope(force_full_sync=True)) is None

    def test_resume_point_wins(self, fake_jira, db):
        self._status(db, last_sync_at=BASE_TIME, last_sync_status="completed")
        point = ResumePoint(start_from="issues", skip_project_setup=True, since=None)
        assert make_orchestrator(fake_jira, db).determine_since("ALPHA", SyncScope(), point) is None


@pytest.mark.asyncio
async def test_execute_fails_run_when_jira_is_not_configured(db):
    sync_run = make_run(db, status="pending", project_keys=["ALPHA"])

    with patch.object(settings, "jira_host", None):
        await execute_sync_run(db, sync_run, SyncScope(project_keys=["ALPHA"]))

    assert sync_run.status == "failed"
    assert sync_run.error_message == "Jira connection is not configured"


@pytest.mark.asyncio
async def test_execute_closes_the_client(fake_jira, db):
    fake_jira.add_project("ALPHA", issue_count=1)
    sync_run = make_run(db, status="pending", project_keys=["ALPHA"])

    with patch("jira_sync.services.sync_service.build_orchestrator",
               return_value=make_orchestrator(fake_jira, db)):
        await execute_sync_run(db, sync_run, SyncScope(project_keys=["ALPHA"]))

    assert sync_run.status == "completed"
    assert fake_jira.closed is True
