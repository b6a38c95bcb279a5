"""Storage access for imported Jira entities."""

from datetime import datetime
from typing import Any, Dict, Optional, Type
import logging

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from jira_sync.database import Base
from jira_sync.models.jira_issue import JiraIssue
from jira_sync.models.jira_project import JiraProject
from jira_sync.models.jira_user import JiraUser
from jira_sync.models.jira_worklog import JiraWorklog
from jira_sync.services.reconciler import ConflictResolver, ReconcileResult

log = logging.getLogger(__name__)

# model -> (remote id column, local key column)
REMOTE_ID_COLUMNS = {
    JiraProject: ("jira_id", "project_key"),
    JiraIssue: ("jira_id", "issue_key"),
    JiraWorklog: ("jira_id", "id"),
    JiraUser: ("account_id", "account_id"),
}


class EntityRepository:
    """Upsert-by-remote-id, read-by-key and count queries over one session.

    Every upsert commits on its own so a failure never rolls back records
    that were already stored.
    """

    def __init__(self, db: Session, resolver: Optional[ConflictResolver] = None):
        self.db = db
        self.resolver = resolver or ConflictResolver()

    def get_by_remote_id(self, model: Type[Base], remote_id: str) -> Optional[Any]:
        column = REMOTE_ID_COLUMNS[model][0]
        return self.db.query(model).filter(getattr(model, column) == str(remote_id)).first()

    def get_by_key(self, model: Type[Base], key: Any) -> Optional[Any]:
        column = REMOTE_ID_COLUMNS[model][1]
        return self.db.query(model).filter(getattr(model, column) == key).first()

    def upsert(self, record: BaseModel, links: Optional[Dict[str, Any]] = None) -> ReconcileResult:
        """Validate, merge and persist ``record``; rolls back and re-raises on failure."""
        spec = self.resolver.validate(record)
        remote_id = getattr(record, spec.remote_id)
        existing = self.get_by_remote_id(spec.model, remote_id)
        try:
            result = self.resolver.reconcile(existing, record, links)
            if result.created:
                self.db.add(result.entity)
            if result.created or result.changes:
                self.db.commit()
                self.db.refresh(result.entity)
        except Exception:
            self.db.rollback()
            raise
        return result

    # Aggregates used by the orchestrator and the validation engine

    def count_issues(self, project_key: str, only_with_worklogs: bool = False,
                     until: Optional[datetime] = None) -> int:
        query = self.db.query(func.count(JiraIssue.id)).join(
            JiraProject, JiraIssue.jira_project_id == JiraProject.id
        ).filter(JiraProject.project_key == project_key)
        if only_with_worklogs:
            query = query.filter(JiraIssue.id.in_(self.db.query(JiraWorklog.jira_issue_id)))
        if until:
            query = query.filter(JiraIssue.remote_updated_at <= until)
        return query.scalar() or 0

    def count_worklogs(self, project_key: str, until: Optional[datetime] = None) -> int:
        query = self.db.query(func.count(JiraWorklog.id)).join(
            JiraIssue, JiraWorklog.jira_issue_id == JiraIssue.id
        ).join(
            JiraProject, JiraIssue.jira_project_id == JiraProject.id
        ).filter(JiraProject.project_key == project_key)
        if until:
            query = query.filter(JiraIssue.remote_updated_at <= until)
        return query.scalar() or 0

    def resource_type_distribution(self, project_key: str) -> Dict[str, int]:
        rows = self.db.query(JiraWorklog.resource_type, func.count(JiraWorklog.id)).join(
            JiraIssue, JiraWorklog.jira_issue_id == JiraIssue.id
        ).join(
            JiraProject, JiraIssue.jira_project_id == JiraProject.id
        ).filter(JiraProject.project_key == project_key).group_by(JiraWorklog.resource_type).all()
        return {resource_type: count for resource_type, count in rows}

    def count_all(self) -> Dict[str, int]:
        return {
            "projects": self.db.query(func.count(JiraProject.id)).scalar() or 0,
            "issues": self.db.query(func.count(JiraIssue.id)).scalar() or 0,
            "worklogs": self.db.query(func.count(JiraWorklog.id)).scalar() or 0,
            "users": self.db.query(func.count(JiraUser.id)).scalar() or 0,
        }

    def worklog_ids_for_issue(self, issue: JiraIssue) -> set:
        rows = self.db.query(JiraWorklog.jira_id).filter(JiraWorklog.jira_issue_id == issue.id).all()
        return {row[0] for row in rows}
