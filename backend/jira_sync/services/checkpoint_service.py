"""Checkpoint store and resume analysis for interrupted sync runs."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from jira_sync.models.sync_checkpoint import RECOVERY_PROJECT_KEY, SyncCheckpoint
from jira_sync.models.sync_run import SyncRun
from jira_sync.models.types import utcnow
from jira_sync.schemas.sync import CheckpointStatistics, ResumeAnalysis, ResumePoint

log = logging.getLogger(__name__)

CHECKPOINT_STATUSES = ("active", "completed", "failed")


def _parse_since(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class CheckpointService:
    """
    Per-project progress log for sync runs.

    A checkpoint moves ``active -> completed`` or ``active -> failed``. Each
    write commits on its own; the version column makes concurrent writers
    fail loudly instead of overwriting each other.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_checkpoint(self, sync_run_id: int, project_key: str, data: Optional[Dict[str, Any]] = None,
                          checkpoint_type: str = 'project_sync') -> SyncCheckpoint:
        checkpoint = SyncCheckpoint(
            sync_run_id=sync_run_id,
            project_key=project_key,
            checkpoint_type=checkpoint_type,
            status='active',
            checkpoint_data=dict(data or {}),
        )
        self.db.add(checkpoint)
        self.db.commit()
        self.db.refresh(checkpoint)
        log.debug(f"Created {checkpoint_type} checkpoint #{checkpoint.id} for run #{sync_run_id}, project {project_key}")
        return checkpoint

    def update_checkpoint(self, checkpoint: SyncCheckpoint, data: Dict[str, Any]) -> SyncCheckpoint:
        # New dict so the JSON column is flagged dirty
        checkpoint.checkpoint_data = {**(checkpoint.checkpoint_data or {}), **data}
        self.db.commit()
        log.trace(f"Checkpoint #{checkpoint.id} updated: {data}")
        return checkpoint

    def complete_checkpoint(self, checkpoint: SyncCheckpoint, data: Optional[Dict[str, Any]] = None) -> SyncCheckpoint:
        if data:
            checkpoint.checkpoint_data = {**(checkpoint.checkpoint_data or {}), **data}
        checkpoint.status = 'completed'
        checkpoint.completed_at = utcnow()
        self.db.commit()
        log.debug(f"Checkpoint #{checkpoint.id} ({checkpoint.project_key}) completed")
        return checkpoint

    def fail_checkpoint(self, checkpoint: SyncCheckpoint, error_message: str,
                        error_context: Optional[Dict[str, Any]] = None) -> SyncCheckpoint:
        checkpoint.checkpoint_data = {
            **(checkpoint.checkpoint_data or {}),
            'error': {
                'message': error_message,
                'context': error_context or {},
                'failed_at': utcnow().isoformat(),
            },
        }
        checkpoint.status = 'failed'
        self.db.commit()
        log.warning(f"Checkpoint #{checkpoint.id} ({checkpoint.project_key}) failed: {error_message}")
        return checkpoint

    def create_recovery_checkpoint(self, sync_run_id: int, data: Dict[str, Any]) -> SyncCheckpoint:
        """Cross-cutting checkpoint recording a recovery attempt."""
        return self.create_checkpoint(sync_run_id, RECOVERY_PROJECT_KEY, data, checkpoint_type='recovery')

    def get_checkpoints(self, sync_run_id: int) -> List[SyncCheckpoint]:
        return self.db.query(SyncCheckpoint).filter(
            SyncCheckpoint.sync_run_id == sync_run_id
        ).order_by(SyncCheckpoint.created_at.asc(), SyncCheckpoint.id.asc()).all()

    def get_latest_checkpoint(self, sync_run_id: int, project_key: str) -> Optional[SyncCheckpoint]:
        return self.db.query(SyncCheckpoint).filter(
            SyncCheckpoint.sync_run_id == sync_run_id,
            SyncCheckpoint.project_key == project_key,
        ).order_by(SyncCheckpoint.created_at.desc(), SyncCheckpoint.id.desc()).first()

    def _latest_per_project(self, sync_run_id: int) -> Dict[str, SyncCheckpoint]:
        latest: Dict[str, SyncCheckpoint] = {}
        for checkpoint in self.get_checkpoints(sync_run_id):
            if checkpoint.checkpoint_type != 'project_sync':
                continue
            # Ordered oldest first, so the last one seen wins
            latest[checkpoint.project_key] = checkpoint
        return latest

    def determine_resume_point(self, checkpoint: SyncCheckpoint) -> ResumePoint:
        data = checkpoint.checkpoint_data or {}
        since = _parse_since(data.get('since'))
        if not data.get('project_stored'):
            return ResumePoint(start_from='beginning', skip_project_setup=False, since=since)

        processed = int(data.get('entities_processed') or 0)
        last_key = data.get('last_processed_entity_key')
        return ResumePoint(
            start_from='specific_issue' if processed and last_key else 'issues',
            skip_project_setup=True,
            entities_processed=processed,
            entities_total=data.get('entities_total'),
            last_entity_key=last_key,
            since=since,
        )

    def validate_checkpoint_integrity(self, checkpoint: SyncCheckpoint) -> List[str]:
        """Returns a list of problems; empty when the checkpoint is usable for resume."""
        problems = []
        data = checkpoint.checkpoint_data
        if not isinstance(data, dict):
            return [f"Checkpoint #{checkpoint.id} payload is not an object"]
        if checkpoint.status not in CHECKPOINT_STATUSES:
            problems.append(f"Checkpoint #{checkpoint.id} has unknown status '{checkpoint.status}'")
        if checkpoint.checkpoint_type == 'project_sync' and 'project_stored' not in data:
            problems.append(f"Checkpoint #{checkpoint.id} does not record whether the project was stored")
        processed = data.get('entities_processed')
        total = data.get('entities_total')
        if processed is not None and (not isinstance(processed, int) or processed < 0):
            problems.append(f"Checkpoint #{checkpoint.id} has invalid entities_processed {processed!r}")
        elif processed is not None and isinstance(total, int) and processed > total:
            problems.append(f"Checkpoint #{checkpoint.id} processed {processed} of only {total} entities")
        if checkpoint.status == 'completed' and checkpoint.completed_at is None:
            problems.append(f"Checkpoint #{checkpoint.id} is completed without a completion time")
        if data.get('since'):
            try:
                _parse_since(data['since'])
            except (TypeError, ValueError):
                problems.append(f"Checkpoint #{checkpoint.id} has an unreadable 'since' value")
        return problems

    def analyze_resume(self, sync_run_id: int) -> ResumeAnalysis:
        """Decide how (and whether) an interrupted run can be resumed."""
        sync_run = self.db.get(SyncRun, sync_run_id)
        if sync_run is None:
            return ResumeAnalysis(
                run_id=sync_run_id, can_resume=False, strategy='manual_review_required',
                reason=f"Sync run {sync_run_id} not found",
            )

        latest = self._latest_per_project(sync_run_id)
        scope = list(sync_run.project_keys or [])
        if not latest:
            return ResumeAnalysis(
                run_id=sync_run_id, can_resume=True, strategy='full_restart',
                reason="No checkpoints recorded", projects_to_retry=scope,
            )

        problems: List[str] = []
        analysis = ResumeAnalysis(run_id=sync_run_id, can_resume=True, strategy='partial_resume')
        for project_key, checkpoint in latest.items():
            problems.extend(self.validate_checkpoint_integrity(checkpoint))
            if checkpoint.status == 'completed':
                analysis.completed_projects.append(project_key)
            elif checkpoint.status in ('active', 'failed'):
                analysis.projects_to_retry.append(project_key)
                analysis.resume_points[project_key] = self.determine_resume_point(checkpoint)
                if checkpoint.status == 'failed':
                    analysis.failed_projects.append(project_key)

        if problems:
            return ResumeAnalysis(
                run_id=sync_run_id, can_resume=False, strategy='manual_review_required',
                reason="; ".join(problems),
                completed_projects=analysis.completed_projects,
                failed_projects=analysis.failed_projects,
            )

        # Projects in scope that never got a checkpoint start from scratch
        for project_key in scope:
            if project_key not in latest:
                analysis.projects_to_retry.append(project_key)

        if not analysis.projects_to_retry:
            analysis.strategy = 'already_completed'
            analysis.can_resume = False
            analysis.reason = "All projects completed"
        else:
            analysis.reason = f"{len(analysis.projects_to_retry)} project(s) to retry"

        log.info(f"Resume analysis for run #{sync_run_id}: {analysis.strategy} ({analysis.reason})")
        return analysis

    def get_statistics(self, days: int = 7) -> CheckpointStatistics:
        cutoff = utcnow() - timedelta(days=days)
        rows = self.db.query(SyncCheckpoint.status, func.count(SyncCheckpoint.id)).filter(
            SyncCheckpoint.created_at >= cutoff
        ).group_by(SyncCheckpoint.status).all()
        counts = {status: count for status, count in rows}
        total = sum(counts.values())
        completed = counts.get('completed', 0)
        return CheckpointStatistics(
            period_days=days,
            total=total,
            active=counts.get('active', 0),
            completed=completed,
            failed=counts.get('failed', 0),
            success_rate=round(completed / total * 100, 2) if total else 0.0,
        )
