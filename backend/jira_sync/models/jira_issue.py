"""Jira issue model."""

from sqlalchemy import Column, ForeignKey, Integer, String

from jira_sync.database import Base
from jira_sync.models.types import JSONType, UTCDateTime, utcnow


class JiraIssue(Base):
    """Issue imported from Jira."""

    __tablename__ = "jira_issues"

    id = Column(Integer, primary_key=True, index=True)
    jira_id = Column(String(50), unique=True, nullable=False, index=True)
    issue_key = Column(String(50), unique=True, nullable=False, index=True)
    jira_project_id = Column(Integer, ForeignKey("jira_projects.id"), nullable=False, index=True)
    summary = Column(String(1000), nullable=False)
    status = Column(String(100), nullable=False)
    labels = Column(JSONType, nullable=False, default=list)
    epic_key = Column(String(50), nullable=True)
    assignee_user_id = Column(Integer, ForeignKey("jira_users.id"), nullable=True)
    original_estimate_seconds = Column(Integer, nullable=True)
    remote_created_at = Column(UTCDateTime, nullable=True)
    remote_updated_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<JiraIssue(id={self.id}, key='{self.issue_key}', status='{self.status}')>"
