from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from jira_sync.config import settings
from jira_sync.connectors.base import IssueRecord, IssueTrackerClient, UserRecord, WorklogRecord
from jira_sync.connectors.jira_connector import JiraConnector, build_issue_jql
from jira_sync.connectors.rate_limiter import RateLimiter
from jira_sync.exceptions import (
    InvalidRunStateError,
    PaginationLimitError,
    PermanentAPIError,
    PreconditionError,
    RecordValidationError,
    ResourceExhaustedError,
    TransientAPIError,
)
from jira_sync.models.jira_project import JiraProject
from jira_sync.models.jira_setting import JiraSetting
from jira_sync.models.project_sync_status import ProjectSyncStatus
from jira_sync.models.sync_checkpoint import SyncCheckpoint
from jira_sync.models.sync_run import SyncRun
from jira_sync.models.types import utcnow
from jira_sync.schemas.sync import ResumePoint, SyncScope, ValidationResult
from jira_sync.services.cache import CacheBackend, project_cache
from jira_sync.services.checkpoint_service import CheckpointService
from jira_sync.services.classifier import ResourceClassifier
from jira_sync.services.error_service import log_sync_error
from jira_sync.services.progress import ProgressPublisher, ProgressReporter
from jira_sync.services.reconciler import ConflictResolver
from jira_sync.services.repository import EntityRepository
from jira_sync.services.validation import ValidationService
from jira_sync.utils.encrypt import decrypt_data
from jira_sync.utils.sync_logger import create_sync_log

log = logging.getLogger(__name__)

# Errors that end the whole run instead of one project
CRITICAL_ERRORS = (MemoryError, ResourceExhaustedError)

INIT_PERCENT = 5.0
PROJECTS_PERCENT = 90.0
VALIDATION_PERCENT = 97.0


def _propagates_past_entity(exc: Exception) -> bool:
    """Errors that mean the project (or run) cannot continue, not just one record."""
    if isinstance(exc, CRITICAL_ERRORS + (TransientAPIError, PaginationLimitError)):
        return True
    return isinstance(exc, PermanentAPIError) and exc.status_code in (401, 403)


def create_sync_run(db: Session, scope: SyncScope, triggered_by: Optional[str] = None) -> SyncRun:
    """Persist a pending run for ``scope``."""
    sync_run = SyncRun(
        status='pending',
        sync_type=scope.sync_type,
        project_keys=list(scope.project_keys or []),
        options=scope.model_dump(mode="json", exclude={"project_keys", "sync_type"}),
        triggered_by=triggered_by,
    )
    db.add(sync_run)
    db.commit()
    db.refresh(sync_run)
    return sync_run


@dataclass
class RunContext:
    """State scoped to one run; never shared between runs."""
    sync_run: SyncRun
    classifier: ResourceClassifier
    user_ids: Dict[str, int] = field(default_factory=dict)
    processed_projects: List[str] = field(default_factory=list)


class SyncOrchestrator:
    """
    Drives one sync run: scope resolution, the per-project
    fetch -> resolve -> persist loop, checkpoints, validation and finalization.

    A failing project is recorded against the run and its ProjectSyncStatus,
    and the loop moves on. The run only ends ``failed`` when a precondition
    fails, a critical error occurs or an operator cancels it.
    """

    def __init__(
        self,
        client: IssueTrackerClient,
        db: Session,
        checkpoint_service: Optional[CheckpointService] = None,
        progress_reporter: Optional[ProgressReporter] = None,
        validation_service: Optional[ValidationService] = None,
        cache: Optional[CacheBackend] = None,
        resolver: Optional[ConflictResolver] = None,
        classifier_factory: Callable[[], ResourceClassifier] = ResourceClassifier,
        default_project_keys: Optional[List[str]] = None,
        issue_page_size: Optional[int] = None,
        worklog_page_size: Optional[int] = None,
    ):
        self.client = client
        self.db = db
        self.checkpoints = checkpoint_service or CheckpointService(db)
        self.progress = progress_reporter or ProgressReporter()
        self.validation_service = validation_service
        self.cache = cache
        self.repository = EntityRepository(db, resolver)
        self.classifier_factory = classifier_factory
        self.default_project_keys = list(default_project_keys or [])
        self.issue_page_size = issue_page_size
        self.worklog_page_size = worklog_page_size

    # Run lifecycle

    def create_run(self, scope: SyncScope, triggered_by: Optional[str] = None) -> SyncRun:
        return create_sync_run(self.db, scope, triggered_by)

    async def run(self, scope: SyncScope, sync_run: Optional[SyncRun] = None) -> SyncRun:
        """Execute a sync run for ``scope`` and return it in a terminal state."""
        if sync_run is None:
            sync_run = self.create_run(scope)
        if sync_run.is_terminal:
            raise InvalidRunStateError(f"Sync run {sync_run.id} is already {sync_run.status}")

        sync_run.mark_as_started()
        self.db.commit()
        ctx = RunContext(sync_run=sync_run, classifier=self.classifier_factory())
        log.info(f"Starting {scope.sync_type} sync run #{sync_run.id}")

        try:
            plan = await self._prepare(ctx, scope)
        except PreconditionError as e:
            log.error(f"Sync run #{sync_run.id} failed precondition: {e}")
            create_sync_log(self.db, sync_run.id, "error", str(e), operation="precondition", commit=False)
            sync_run.mark_as_failed(str(e), {"stage": "precondition"})
            self.db.commit()
            self.progress.report(sync_run, sync_run.current_operation)
            await self.progress.drain()
            return sync_run

        self.progress.report(sync_run, f"Syncing {len(plan)} project(s)", INIT_PERCENT)
        self.db.commit()

        for index, (project_key, resume_point) in enumerate(plan):
            self.db.refresh(sync_run)
            if sync_run.is_terminal:
                return await self._abandon_terminal(sync_run, project_key)
            if sync_run.cancel_requested:
                self._finish_cancelled(ctx, project_key)
                await self.progress.drain()
                return sync_run
            try:
                await self._sync_project(ctx, scope, project_key, index, len(plan), resume_point)
            except CRITICAL_ERRORS as e:
                log.critical(f"Sync run #{sync_run.id} terminated by critical error in {project_key}: {e}")
                self.db.rollback()
                log_sync_error(self.db, sync_run, e, {"project_key": project_key}, operation="project_sync")
                sync_run.mark_as_failed(f"Critical error while syncing {project_key}: {e}", {"project_key": project_key})
                self.db.commit()
                self.progress.report(sync_run, sync_run.current_operation)
                await self.progress.drain()
                return sync_run

        await self._validate(ctx)

        if self.cache and ctx.processed_projects:
            self.cache.invalidate_projects(ctx.processed_projects)

        self.db.refresh(sync_run)
        if sync_run.is_terminal:
            return await self._abandon_terminal(sync_run, None)

        sync_run.mark_as_completed()
        self.db.commit()
        self.progress.report(sync_run, "Sync completed", 100.0)
        await self.progress.drain()
        log.info(
            f"Sync run #{sync_run.id} completed: {sync_run.processed_projects}/{sync_run.total_projects} projects, "
            f"{sync_run.processed_issues} issues, {sync_run.processed_worklogs} worklogs, {sync_run.error_count} errors"
        )
        return sync_run

    async def _abandon_terminal(self, sync_run: SyncRun, next_project: Optional[str]) -> SyncRun:
        """Stop working on a run another process already finished (e.g. the stale run cleanup)."""
        where = f"before project {next_project}" if next_project else "before completion"
        log.warning(f"Sync run #{sync_run.id} became {sync_run.status} while running; stopping {where}")
        await self.progress.drain()
        return sync_run

    def _finish_cancelled(self, ctx: RunContext, next_project: str):
        sync_run = ctx.sync_run
        log.warning(f"Sync run #{sync_run.id} cancelled before project {next_project}")
        create_sync_log(
            self.db, sync_run.id, "warning", "Sync cancelled by operator",
            context={"next_project": next_project, "completed_projects": ctx.processed_projects},
            operation="cancel", commit=False,
        )
        sync_run.mark_as_failed("Sync cancelled by operator", {"reason": "cancelled", "next_project": next_project})
        self.db.commit()
        self.progress.report(sync_run, sync_run.current_operation)

    async def _prepare(self, ctx: RunContext, scope: SyncScope) -> List[Tuple[str, Optional[ResumePoint]]]:
        """Resolve the project plan; raises PreconditionError when no work can start."""
        sync_run = ctx.sync_run
        if scope.sync_type == 'recovery' or scope.resume_of_run_id:
            plan = self._recovery_plan(sync_run, scope)
        else:
            keys = list(scope.project_keys or self.default_project_keys)
            if not keys:
                raise PreconditionError("No projects in scope: pass project keys or configure them in the Jira settings")
            plan = [(key, None) for key in keys]

        if plan and not await self.client.test_connection():
            raise PreconditionError("Jira API is unreachable or rejected the configured credentials")

        sync_run.project_keys = [key for key, _ in plan]
        sync_run.total_projects = len(plan)
        self.db.commit()
        return plan

    def _recovery_plan(self, sync_run: SyncRun, scope: SyncScope) -> List[Tuple[str, Optional[ResumePoint]]]:
        if not scope.resume_of_run_id:
            raise PreconditionError("Recovery runs need the id of the run to resume")

        analysis = self.checkpoints.analyze_resume(scope.resume_of_run_id)
        self.checkpoints.create_recovery_checkpoint(sync_run.id, {
            "resumed_run_id": scope.resume_of_run_id,
            "strategy": analysis.strategy,
            "projects_to_retry": analysis.projects_to_retry,
            "completed_projects": analysis.completed_projects,
        })
        create_sync_log(
            self.db, sync_run.id, "info",
            f"Resuming run #{scope.resume_of_run_id}: {analysis.strategy}",
            context=analysis.model_dump(mode="json"), operation="resume",
        )

        if analysis.strategy == 'manual_review_required':
            raise PreconditionError(f"Run #{scope.resume_of_run_id} needs manual review: {analysis.reason}")
        if analysis.strategy == 'already_completed':
            return []

        keys = analysis.projects_to_retry or list(scope.project_keys or self.default_project_keys)
        return [(key, analysis.resume_points.get(key)) for key in keys]

    # Per-project loop

    def _status_for(self, project_key: str) -> ProjectSyncStatus:
        status = self.db.query(ProjectSyncStatus).filter(ProjectSyncStatus.project_key == project_key).first()
        if status is None:
            status = ProjectSyncStatus(project_key=project_key)
            self.db.add(status)
            self.db.flush()
        return status

    def determine_since(self, project_key: str, scope: SyncScope,
                        resume_point: Optional[ResumePoint] = None) -> Optional[datetime]:
        """Explicit window start, else the last trusted sync time, else None (full history)."""
        if resume_point is not None:
            return resume_point.since
        if scope.since:
            return scope.since
        if scope.force_full_sync:
            return None
        status = self.db.query(ProjectSyncStatus).filter(ProjectSyncStatus.project_key == project_key).first()
        if status and status.last_sync_status == 'completed' and status.last_validation_status != 'invalid':
            return status.last_sync_at
        return None

    async def _sync_project(self, ctx: RunContext, scope: SyncScope, project_key: str, index: int,
                            project_count: int, resume_point: Optional[ResumePoint]):
        sync_run = ctx.sync_run
        started_at = utcnow()
        checkpoint: Optional[SyncCheckpoint] = None
        try:
            since = self.determine_since(project_key, scope, resume_point)
            offset = resume_point.start_offset if resume_point else 0
            project = None
            if resume_point and resume_point.skip_project_setup:
                project = self.repository.get_by_key(JiraProject, project_key)

            checkpoint = self.checkpoints.create_checkpoint(sync_run.id, project_key, {
                "project_stored": project is not None,
                "since": since.isoformat() if since else None,
                "entities_processed": offset,
            })

            if project is None:
                sync_run.update_current_operation(f"Storing project {project_key}")
                record = await self.client.fetch_detail("project", project_key)
                project = self.repository.upsert(record).entity
                self.checkpoints.update_checkpoint(checkpoint, {"project_stored": True})
            else:
                log.info(f"Resuming {project_key} at issue {offset + 1} (project already stored)")

            jql = build_issue_jql(project_key, since, scope.until, scope.only_issues_with_worklogs)
            log.info(f"Syncing {project_key} since {since.isoformat() if since else 'the beginning'}")

            processed = offset
            total = 0
            first_page = True
            async for page in self.client.iterate("issue", jql, start_at=offset, page_size=self.issue_page_size):
                total = page.total
                if first_page:
                    self._count(sync_run, total_issues=max(total - offset, 0))
                    first_page = False

                last_key = None
                for issue_record in page.records:
                    await self._process_issue(ctx, project, issue_record, since)
                    processed += 1
                    last_key = issue_record.key

                self.checkpoints.update_checkpoint(checkpoint, {
                    "entities_processed": processed,
                    "entities_total": total,
                    "last_processed_entity_key": last_key,
                })
                fraction = processed / total if total else 1.0
                self.progress.report(
                    sync_run,
                    f"Syncing {project_key}: {processed}/{total} issues",
                    INIT_PERCENT + PROJECTS_PERCENT * (index + min(fraction, 1.0)) / project_count,
                )
                self.db.commit()

            self.checkpoints.complete_checkpoint(checkpoint, {"entities_processed": processed, "entities_total": total})

            status = self._status_for(project_key)
            status.last_sync_at = started_at
            status.last_sync_status = 'completed'
            status.issues_count = self.repository.count_issues(project_key)
            status.worklogs_count = self.repository.count_worklogs(project_key)
            status.last_error = None
            sync_run.processed_projects = (sync_run.processed_projects or 0) + 1
            ctx.processed_projects.append(project_key)
            self.db.commit()
            create_sync_log(
                self.db, sync_run.id, "info",
                f"Project {project_key} synced: {processed - offset} issues processed",
                context={"issues_total": total, "resumed_from": offset},
                entity_type="project", entity_id=project_key, operation="project_sync",
            )
        except CRITICAL_ERRORS as e:
            self.db.rollback()
            if checkpoint is not None:
                self.checkpoints.fail_checkpoint(checkpoint, str(e), {"critical": True})
            raise
        except Exception as e:
            self._record_project_failure(ctx, project_key, checkpoint, e)

    def _record_project_failure(self, ctx: RunContext, project_key: str,
                                checkpoint: Optional[SyncCheckpoint], exc: Exception):
        self.db.rollback()
        log.error(f"Project {project_key} failed in run #{ctx.sync_run.id}: {exc}", exc_info=True)
        classification = log_sync_error(
            self.db, ctx.sync_run, exc, {"project_key": project_key},
            entity_type="project", entity_id=project_key, operation="project_sync",
        )
        if checkpoint is not None:
            self.checkpoints.fail_checkpoint(checkpoint, str(exc), {
                "category": classification.category.value,
                "retryable": classification.retryable,
            })
        status = self._status_for(project_key)
        status.last_sync_status = 'failed'
        status.last_error = str(exc)
        self.db.commit()

    async def _process_issue(self, ctx: RunContext, project: JiraProject, record: IssueRecord,
                             since: Optional[datetime]):
        try:
            assignee_id = self._store_user(ctx, record.assignee)
            issue = self.repository.upsert(record, links={
                "jira_project_id": project.id,
                "assignee_user_id": assignee_id,
            }).entity
            self._count(ctx.sync_run, processed_issues=1)
            await self._sync_worklogs(ctx, issue, since)
        except Exception as e:
            if _propagates_past_entity(e):
                raise
            self._record_entity_error(ctx, e, "issue", record.key or record.remote_id, project.project_key)

    async def _sync_worklogs(self, ctx: RunContext, issue, since: Optional[datetime]):
        sync_run = ctx.sync_run
        async for page in self.client.iterate("worklog", issue.issue_key, page_size=self.worklog_page_size):
            for worklog in page.records:
                if since and self._older_than(worklog, since):
                    continue
                self._count(sync_run, total_worklogs=1)
                try:
                    author_id = self._store_user(ctx, worklog.author)
                    self.repository.upsert(worklog, links={
                        "jira_issue_id": issue.id,
                        "author_user_id": author_id,
                        "resource_type": ctx.classifier.classify(worklog),
                    })
                    self._count(sync_run, processed_worklogs=1)
                except Exception as e:
                    if _propagates_past_entity(e):
                        raise
                    self._record_entity_error(ctx, e, "worklog", f"{issue.issue_key}:{worklog.remote_id}", None)

    @staticmethod
    def _older_than(worklog: WorklogRecord, since: datetime) -> bool:
        reference = worklog.updated or worklog.started_at
        return reference is not None and reference < since

    def _store_user(self, ctx: RunContext, user: Optional[UserRecord]) -> Optional[int]:
        if user is None or not user.account_id:
            return None
        if user.account_id in ctx.user_ids:
            return ctx.user_ids[user.account_id]
        try:
            stored = self.repository.upsert(user).entity
        except RecordValidationError as e:
            log.warning(f"Skipping user {user.account_id}: {e}")
            return None
        ctx.user_ids[user.account_id] = stored.id
        self._count(ctx.sync_run, total_users=1, processed_users=1)
        return stored.id

    def _count(self, sync_run: SyncRun, **increments: int):
        """Add to the run counters and commit them so a later rollback cannot discard them."""
        for name, amount in increments.items():
            setattr(sync_run, name, (getattr(sync_run, name) or 0) + amount)
        self.db.commit()

    def _record_entity_error(self, ctx: RunContext, exc: Exception, entity_type: str,
                             entity_id: Optional[str], project_key: Optional[str]):
        log.warning(f"Failed to process {entity_type} {entity_id}: {exc}")
        log_sync_error(
            self.db, ctx.sync_run, exc, {"project_key": project_key} if project_key else {},
            entity_type=entity_type, entity_id=entity_id, operation=f"{entity_type}_sync",
        )

    # Validation

    async def _validate(self, ctx: RunContext):
        sync_run = ctx.sync_run
        if self.validation_service is None or not sync_run.project_keys:
            return
        self.progress.report(sync_run, "Validating imported data", VALIDATION_PERCENT)
        self.db.commit()
        try:
            result: ValidationResult = await self.validation_service.validate(sync_run)
        except Exception as e:
            # Data-quality checks never fail the run that produced the data
            log.warning(f"Validation of run #{sync_run.id} failed: {e}", exc_info=True)
            create_sync_log(
                self.db, sync_run.id, "warning", f"Validation could not complete: {e}", operation="validation",
            )
            return

        sync_run.validation_results = result.model_dump(mode="json")
        sync_run.completeness_score = result.completeness_score
        for project in result.projects:
            status = self._status_for(project.project_key)
            status.last_validation_status = 'valid' if project.valid else 'invalid'
            status.last_completeness_score = result.completeness_score
        self.db.commit()
        create_sync_log(
            self.db, sync_run.id, "info" if result.valid else "warning",
            f"Validation {'passed' if result.valid else 'failed'}: discrepancy {result.discrepancy_percent}%, "
            f"completeness {result.completeness_score}",
            context={"errors": result.errors, "warnings": result.warnings},
            operation="validation",
        )


def load_jira_config(db: Session) -> Tuple[Dict, List[str]]:
    """Connection config and configured project keys from the stored settings, else the environment."""
    stored = db.query(JiraSetting).first()
    if stored:
        try:
            token = decrypt_data(stored.api_token)
        except ValueError as e:
            raise PreconditionError(str(e))
        host, email = stored.jira_host, stored.jira_email
        api_version, project_keys = stored.api_version, list(stored.project_keys or [])
    else:
        host, email, token = settings.jira_host, settings.jira_email, settings.jira_api_token
        api_version, project_keys = settings.jira_api_version, settings.jira_project_keys_list

    if not host or not email or not token:
        raise PreconditionError("Jira connection is not configured")

    config = {
        "base_url": host,
        "email": email,
        "api_token": token,
        "api_version": api_version,
        "timeout": settings.request_timeout_seconds,
        "max_attempts": settings.max_retry_attempts,
        "backoff_base_seconds": settings.backoff_base_seconds,
        "retry_after_fallback_seconds": settings.retry_after_fallback_seconds,
        "issue_page_size": settings.issue_page_size,
        "worklog_page_size": settings.worklog_page_size,
        "max_batches": settings.max_batches,
        "cache_ttl_seconds": settings.cache_ttl_seconds,
    }
    return config, project_keys


def build_orchestrator(db: Session, publisher: Optional[ProgressPublisher] = None) -> SyncOrchestrator:
    """Wire a production orchestrator; raises PreconditionError when Jira is not configured."""
    config, project_keys = load_jira_config(db)
    rate_limiter = RateLimiter(
        requests_per_second=settings.requests_per_second,
        pause_every=settings.rate_limit_pause_every,
        pause_seconds=settings.rate_limit_pause_seconds,
    )
    client = JiraConnector(config, rate_limiter=rate_limiter, cache=project_cache)
    validation_service = None
    if settings.enable_post_sync_validation:
        validation_service = ValidationService(
            client,
            db,
            threshold_percent=settings.discrepancy_threshold_percent,
            sample_size=settings.validation_sample_size,
            spot_check_size=settings.validation_spot_check_size,
        )
    return SyncOrchestrator(
        client=client,
        db=db,
        progress_reporter=ProgressReporter(publisher),
        validation_service=validation_service,
        cache=project_cache,
        default_project_keys=project_keys,
    )


async def execute_sync_run(db: Session, sync_run: SyncRun, scope: SyncScope,
                           publisher: Optional[ProgressPublisher] = None) -> SyncRun:
    """Run an already-created run end to end, failing it if the engine cannot be built."""
    try:
        orchestrator = build_orchestrator(db, publisher)
    except PreconditionError as e:
        log.error(f"Sync run #{sync_run.id} cannot start: {e}")
        create_sync_log(db, sync_run.id, "error", str(e), operation="precondition", commit=False)
        sync_run.mark_as_failed(str(e), {"stage": "configuration"})
        db.commit()
        return sync_run

    try:
        return await orchestrator.run(scope, sync_run)
    finally:
        await orchestrator.client.close()
