"""Post-sync validation of imported data against Jira and local integrity rules."""

import logging
import random
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from jira_sync.connectors.base import IssueTrackerClient
from jira_sync.connectors.jira_connector import build_issue_jql
from jira_sync.exceptions import SyncError
from jira_sync.models.jira_issue import JiraIssue
from jira_sync.models.jira_project import JiraProject
from jira_sync.models.jira_user import JiraUser
from jira_sync.models.jira_worklog import JiraWorklog
from jira_sync.models.sync_run import SyncRun
from jira_sync.models.types import utcnow
from jira_sync.schemas.sync import IntegrityReport, ProjectValidation, SyncScope, ValidationResult
from jira_sync.services.classifier import DEFAULT_RESOURCE_TYPE
from jira_sync.services.repository import EntityRepository

log = logging.getLogger(__name__)

MAX_WORKLOG_SECONDS = 86400
DEFAULT_TYPE_WARNING_PERCENT = 50.0


def discrepancy_percent(local: int, remote: int) -> float:
    """|local - remote| as a percentage of remote."""
    if remote == 0:
        return 0.0 if local == 0 else 100.0
    return round(abs(local - remote) / remote * 100, 2)


def completeness_score(discrepancy: float, errors: int, warnings: int, data_quality: float) -> float:
    penalised = 100 - discrepancy * 2 - errors * 10 - warnings * 2
    score = (max(0.0, penalised) + data_quality) / 2
    return round(min(100.0, max(0.0, score)), 1)


class ValidationService:
    """
    Independently re-checks what a run imported.

    Remote counts come from cheap total-only searches; the worklog count is
    estimated from a random sample of issues. Local integrity checks need no
    remote access at all.
    """

    def __init__(
        self,
        client: IssueTrackerClient,
        db: Session,
        threshold_percent: float = 5.0,
        sample_size: int = 5,
        spot_check_size: int = 10,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.db = db
        self.repository = EntityRepository(db)
        self.threshold_percent = threshold_percent
        self.sample_size = sample_size
        self.spot_check_size = spot_check_size
        self.rng = rng or random.Random()

    def is_within_threshold(self, local: int, remote: int) -> bool:
        return discrepancy_percent(local, remote) <= self.threshold_percent

    async def _estimate_remote_worklogs(self, project_key: str, until: Optional[datetime] = None) -> int:
        jql = build_issue_jql(project_key, until=until, only_with_worklogs=True)
        issues_with_worklogs = await self.client.count("issue", jql)
        if issues_with_worklogs == 0:
            return 0

        sample = min(self.sample_size, issues_with_worklogs)
        offset = self.rng.randint(0, issues_with_worklogs - sample)
        page = await self.client.fetch_page("issue", jql, offset, sample)
        if not page.records:
            return 0

        worklog_counts = []
        for issue in page.records:
            worklog_page = await self.client.fetch_page("worklog", issue.key, 0, 1)
            worklog_counts.append(worklog_page.total)
        average = sum(worklog_counts) / len(worklog_counts)
        log.debug(f"{project_key}: {average:.2f} worklogs per issue over a sample of {len(worklog_counts)}")
        return round(average * issues_with_worklogs)

    async def validate_project(self, project_key: str, only_with_worklogs: bool = False,
                               until: Optional[datetime] = None) -> ProjectValidation:
        """Compare local and remote counts over the same filters the run imported with."""
        result = ProjectValidation(
            project_key=project_key,
            local_issues=self.repository.count_issues(project_key, only_with_worklogs, until),
            local_worklogs=self.repository.count_worklogs(project_key, until),
            resource_type_distribution=self.repository.resource_type_distribution(project_key),
        )
        try:
            jql = build_issue_jql(project_key, until=until, only_with_worklogs=only_with_worklogs)
            result.remote_issues = await self.client.count("issue", jql)
            result.remote_worklogs = await self._estimate_remote_worklogs(project_key, until)
        except SyncError as e:
            log.warning(f"Validation of {project_key} could not query Jira: {e}")
            result.error = str(e)
            result.valid = False
            return result

        result.issue_discrepancy = abs(result.local_issues - result.remote_issues)
        result.issue_discrepancy_percent = discrepancy_percent(result.local_issues, result.remote_issues)
        result.worklog_discrepancy = abs(result.local_worklogs - result.remote_worklogs)
        result.worklog_discrepancy_percent = discrepancy_percent(result.local_worklogs, result.remote_worklogs)
        result.valid = (
            result.issue_discrepancy_percent <= self.threshold_percent
            and result.worklog_discrepancy_percent <= self.threshold_percent
        )
        return result

    def check_integrity(self) -> IntegrityReport:
        """Local-only checks: orphans, missing authors, implausible values and duplicates."""
        now = utcnow()
        total = self.db.query(func.count(JiraWorklog.id)).scalar() or 0

        orphaned = self.db.query(func.count(JiraWorklog.id)).outerjoin(
            JiraIssue, JiraWorklog.jira_issue_id == JiraIssue.id
        ).filter(JiraIssue.id.is_(None)).scalar() or 0

        missing_author = self.db.query(func.count(JiraWorklog.id)).outerjoin(
            JiraUser, JiraWorklog.author_user_id == JiraUser.id
        ).filter(JiraUser.id.is_(None)).scalar() or 0

        future_dated = self.db.query(func.count(JiraWorklog.id)).filter(
            JiraWorklog.started_at > now
        ).scalar() or 0

        excessive = self.db.query(func.count(JiraWorklog.id)).filter(
            JiraWorklog.time_spent_seconds > MAX_WORKLOG_SECONDS
        ).scalar() or 0

        non_positive = self.db.query(func.count(JiraWorklog.id)).filter(
            JiraWorklog.time_spent_seconds <= 0
        ).scalar() or 0

        duplicate_groups = self.db.query(func.count(JiraWorklog.id)).group_by(
            JiraWorklog.jira_issue_id, JiraWorklog.author_user_id, JiraWorklog.started_at
        ).having(func.count(JiraWorklog.id) > 1).all()
        duplicates = sum(count - 1 for (count,) in duplicate_groups)

        problems = orphaned + missing_author + future_dated + excessive + non_positive + duplicates
        quality = 100.0 if total == 0 else round(max(0.0, 100 - problems / total * 100), 1)
        return IntegrityReport(
            orphaned_worklogs=orphaned,
            missing_author_worklogs=missing_author,
            future_dated_worklogs=future_dated,
            duplicate_worklogs=duplicates,
            excessive_duration_worklogs=excessive,
            non_positive_duration_worklogs=non_positive,
            total_worklogs=total,
            data_quality_score=quality,
        )

    @staticmethod
    def resource_type_warnings(project_key: str, distribution: Dict[str, int]) -> List[str]:
        """Flag classifier output that looks like the keyword rules are not matching."""
        total = sum(distribution.values())
        if total == 0:
            return []
        warnings = []
        default_percent = round(distribution.get(DEFAULT_RESOURCE_TYPE, 0) / total * 100, 1)
        if default_percent > DEFAULT_TYPE_WARNING_PERCENT:
            warnings.append(
                f"{project_key}: {default_percent}% of worklogs fell back to '{DEFAULT_RESOURCE_TYPE}'; "
                f"consider extending the classification keywords"
            )
        if len(distribution) == 1:
            warnings.append(f"{project_key}: all worklogs have the same resource type")
        return warnings

    async def spot_check(self, project_key: str) -> Tuple[List[str], List[str]]:
        """Compare worklog ids of a random sample of local issues with Jira."""
        issues = self.db.query(JiraIssue).join(
            JiraProject, JiraIssue.jira_project_id == JiraProject.id
        ).filter(JiraProject.project_key == project_key).all()
        if not issues:
            return [], []

        missing: List[str] = []
        extra: List[str] = []
        for issue in self.rng.sample(issues, min(self.spot_check_size, len(issues))):
            remote_ids = set()
            async for page in self.client.iterate("worklog", issue.issue_key):
                remote_ids.update(record.remote_id for record in page.records)
            local_ids = self.repository.worklog_ids_for_issue(issue)
            missing.extend(f"{issue.issue_key}:{wid}" for wid in sorted(remote_ids - local_ids))
            extra.extend(f"{issue.issue_key}:{wid}" for wid in sorted(local_ids - remote_ids))
        return missing, extra

    async def validate(self, sync_run: SyncRun) -> ValidationResult:
        project_keys = list(sync_run.project_keys or [])
        log.info(f"Validating run #{sync_run.id} for projects {project_keys} (threshold {self.threshold_percent}%)")

        errors: List[str] = []
        warnings: List[str] = []
        findings: List[str] = []
        projects: List[ProjectValidation] = []

        scope = SyncScope.model_validate({
            key: value for key, value in (sync_run.options or {}).items()
            if key in ("until", "only_issues_with_worklogs")
        })
        for project_key in project_keys:
            project = await self.validate_project(project_key, scope.only_issues_with_worklogs, scope.until)
            projects.append(project)
            warnings.extend(self.resource_type_warnings(project_key, project.resource_type_distribution))
            if project.error:
                errors.append(f"{project_key}: validation query failed ({project.error})")
                continue
            if not project.valid:
                errors.append(
                    f"{project_key}: discrepancy above {self.threshold_percent}% "
                    f"(issues {project.local_issues}/{project.remote_issues}, "
                    f"worklogs {project.local_worklogs}/{project.remote_worklogs})"
                )
            try:
                missing, extra = await self.spot_check(project_key)
            except SyncError as e:
                warnings.append(f"{project_key}: spot check skipped ({e})")
                continue
            findings.extend(f"missing {item}" for item in missing)
            findings.extend(f"extra {item}" for item in extra)
            if missing or extra:
                warnings.append(f"{project_key}: spot check found {len(missing)} missing and {len(extra)} extra worklogs")

        integrity = self.check_integrity()
        if integrity.orphaned_worklogs:
            errors.append(f"{integrity.orphaned_worklogs} worklogs reference a missing issue")
        if integrity.duplicate_worklogs:
            errors.append(f"{integrity.duplicate_worklogs} duplicate worklogs (same issue, author and start)")
        if integrity.missing_author_worklogs:
            warnings.append(f"{integrity.missing_author_worklogs} worklogs have no author")
        if integrity.future_dated_worklogs:
            warnings.append(f"{integrity.future_dated_worklogs} worklogs start in the future")
        if integrity.excessive_duration_worklogs:
            warnings.append(f"{integrity.excessive_duration_worklogs} worklogs exceed 24 hours")
        if integrity.non_positive_duration_worklogs:
            warnings.append(f"{integrity.non_positive_duration_worklogs} worklogs have no logged time")

        checked = [p for p in projects if not p.error]
        total_local = sum(p.local_issues + p.local_worklogs for p in checked)
        total_remote = sum(p.remote_issues + p.remote_worklogs for p in checked)
        overall = discrepancy_percent(total_local, total_remote)
        valid = all(p.valid for p in projects) and overall <= self.threshold_percent

        result = ValidationResult(
            run_id=sync_run.id,
            threshold_percent=self.threshold_percent,
            valid=valid,
            projects=projects,
            total_local=total_local,
            total_remote=total_remote,
            discrepancy_percent=overall,
            integrity=integrity,
            findings=findings,
            errors=errors,
            warnings=warnings,
            completeness_score=completeness_score(overall, len(errors), len(warnings), integrity.data_quality_score),
            validated_at=utcnow(),
        )
        result.recommendations = self.recommendations(result)
        log.info(
            f"Validation of run #{sync_run.id}: {'valid' if valid else 'INVALID'}, "
            f"discrepancy {overall}%, completeness {result.completeness_score}"
        )
        return result

    def recommendations(self, result: ValidationResult) -> List[str]:
        recommendations = []
        invalid = [p.project_key for p in result.projects if not p.valid]
        if invalid:
            recommendations.append(f"Run a full sync for {', '.join(invalid)} to close the count gap.")
        if result.findings:
            recommendations.append("Re-sync the issues listed in the findings; their worklogs differ from Jira.")
        if result.integrity.orphaned_worklogs or result.integrity.duplicate_worklogs:
            recommendations.append("Clean up orphaned or duplicate worklogs before relying on reports.")
        if result.integrity.future_dated_worklogs or result.integrity.excessive_duration_worklogs:
            recommendations.append("Review worklogs with implausible dates or durations in Jira.")
        if result.completeness_score < 80:
            recommendations.append("Completeness is low; check the sync logs for failed projects and retry them.")
        return recommendations
