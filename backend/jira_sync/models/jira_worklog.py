"""Jira worklog model."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String

from jira_sync.database import Base
from jira_sync.models.types import UTCDateTime, utcnow


class JiraWorklog(Base):
    """Worklog imported from Jira, with its derived resource type."""

    __tablename__ = "jira_worklogs"

    id = Column(Integer, primary_key=True, index=True)
    jira_id = Column(String(50), unique=True, nullable=False, index=True)
    jira_issue_id = Column(Integer, ForeignKey("jira_issues.id"), nullable=False, index=True)
    author_user_id = Column(Integer, ForeignKey("jira_users.id"), nullable=True)
    time_spent_seconds = Column(Integer, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    resource_type = Column(String(50), nullable=False, default='development')
    remote_created_at = Column(UTCDateTime, nullable=True)
    remote_updated_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_jira_worklogs_natural_key', 'jira_issue_id', 'author_user_id', 'started_at'),
    )

    def __repr__(self):
        return f"<JiraWorklog(id={self.id}, jira_id='{self.jira_id}', seconds={self.time_spent_seconds})>"
