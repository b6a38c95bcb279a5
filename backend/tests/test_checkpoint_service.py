from datetime import timedelta

import pytest

from conftest import make_run
from jira_sync.models.sync_checkpoint import RECOVERY_PROJECT_KEY, SyncCheckpoint
from jira_sync.models.types import utcnow
from jira_sync.services.checkpoint_service import CheckpointService


@pytest.fixture
def service(db):
    return CheckpointService(db)


def test_checkpoint_lifecycle(db, service):
    run = make_run(db, project_keys=["PROJ"])
    checkpoint = service.create_checkpoint(run.id, "PROJ", {"project_stored": False})
    assert checkpoint.status == "active"

    service.update_checkpoint(checkpoint, {"project_stored": True, "entities_processed": 25})
    service.complete_checkpoint(checkpoint, {"entities_total": 25})

    db.refresh(checkpoint)
    assert checkpoint.status == "completed"
    assert checkpoint.completed_at is not None
    assert checkpoint.checkpoint_data == {"project_stored": True, "entities_processed": 25, "entities_total": 25}


def test_failed_checkpoint_embeds_error(db, service):
    run = make_run(db, project_keys=["PROJ"])
    checkpoint = service.create_checkpoint(run.id, "PROJ", {"project_stored": True})
    service.fail_checkpoint(checkpoint, "boom", {"category": "network"})

    db.refresh(checkpoint)
    assert checkpoint.status == "failed"
    assert checkpoint.checkpoint_data["error"]["message"] == "boom"
    assert checkpoint.checkpoint_data["error"]["context"] == {"category": "network"}
    assert checkpoint.checkpoint_data["project_stored"] is True


def test_version_counter_increments_on_every_write(db, service):
    run = make_run(db, project_keys=["PROJ"])
    checkpoint = service.create_checkpoint(run.id, "PROJ", {"project_stored": False})
    first_version = checkpoint.version
    service.update_checkpoint(checkpoint, {"project_stored": True})
    assert checkpoint.version == first_version + 1


def test_resume_point_from_partial_progress(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    checkpoint = service.create_checkpoint(run.id, "PROJ", {
        "project_stored": True,
        "entities_processed": 40,
        "entities_total": 100,
        "last_processed_entity_key": "PROJ-40",
    })

    point = service.determine_resume_point(checkpoint)

    assert point.start_from == "specific_issue"
    assert point.skip_project_setup is True
    assert point.start_offset == 40
    assert point.last_entity_key == "PROJ-40"


def test_resume_point_restarts_when_project_not_stored(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    checkpoint = service.create_checkpoint(run.id, "PROJ", {"project_stored": False, "entities_processed": 10})

    point = service.determine_resume_point(checkpoint)

    assert point.start_from == "beginning"
    assert point.skip_project_setup is False
    assert point.start_offset == 0


def test_latest_checkpoint_wins(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    old = service.create_checkpoint(run.id, "PROJ", {"project_stored": False})
    old.created_at = utcnow() - timedelta(minutes=5)
    db.commit()
    newest = service.create_checkpoint(run.id, "PROJ", {"project_stored": True, "entities_processed": 3})

    assert service.get_latest_checkpoint(run.id, "PROJ").id == newest.id


def test_analyze_resume_partial(db, service):
    run = make_run(db, status="failed", project_keys=["DONE", "HALF", "NEVER"])
    done = service.create_checkpoint(run.id, "DONE", {"project_stored": True})
    service.complete_checkpoint(done, {"entities_processed": 5, "entities_total": 5})
    half = service.create_checkpoint(run.id, "HALF", {
        "project_stored": True, "entities_processed": 40, "entities_total": 100,
    })
    service.fail_checkpoint(half, "timeout")

    analysis = service.analyze_resume(run.id)

    assert analysis.strategy == "partial_resume"
    assert analysis.can_resume is True
    assert analysis.completed_projects == ["DONE"]
    assert analysis.failed_projects == ["HALF"]
    assert analysis.projects_to_retry == ["HALF", "NEVER"]
    assert analysis.resume_points["HALF"].start_offset == 40


def test_analyze_resume_without_checkpoints_is_full_restart(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    analysis = service.analyze_resume(run.id)
    assert analysis.strategy == "full_restart"
    assert analysis.projects_to_retry == ["PROJ"]


def test_analyze_resume_all_done(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    checkpoint = service.create_checkpoint(run.id, "PROJ", {"project_stored": True})
    service.complete_checkpoint(checkpoint)

    analysis = service.analyze_resume(run.id)

    assert analysis.strategy == "already_completed"
    assert analysis.can_resume is False


def test_analyze_resume_flags_corrupt_checkpoint(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    service.create_checkpoint(run.id, "PROJ", {"project_stored": True, "entities_processed": 120, "entities_total": 100})

    analysis = service.analyze_resume(run.id)

    assert analysis.strategy == "manual_review_required"
    assert "120" in analysis.reason


def test_analyze_resume_unknown_run(service):
    analysis = service.analyze_resume(999)
    assert analysis.strategy == "manual_review_required"
    assert analysis.can_resume is False


def test_recovery_checkpoints_are_ignored_by_analysis(db, service):
    run = make_run(db, status="failed", project_keys=["PROJ"])
    service.create_recovery_checkpoint(run.id, {"resumed_run_id": 1})

    analysis = service.analyze_resume(run.id)

    assert analysis.strategy == "full_restart"
    assert db.query(SyncCheckpoint).filter(SyncCheckpoint.project_key == RECOVERY_PROJECT_KEY).count() == 1


def test_statistics(db, service):
    run = make_run(db, status="failed", project_keys=["A", "B"])
    service.complete_checkpoint(service.create_checkpoint(run.id, "A", {"project_stored": True}))
    service.fail_checkpoint(service.create_checkpoint(run.id, "B", {"project_stored": True}), "boom")

    stats = service.get_statistics(days=7)

    assert stats.total == 2
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.success_rate == 50.0
