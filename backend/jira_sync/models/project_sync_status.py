"""Durable last-known-good sync pointer per Jira project."""

from sqlalchemy import Column, Float, Integer, String, Text

from jira_sync.database import Base
from jira_sync.models.types import UTCDateTime, utcnow


class ProjectSyncStatus(Base):
    """One row per project key, independent of any single run."""

    __tablename__ = "project_sync_statuses"

    id = Column(Integer, primary_key=True, index=True)
    project_key = Column(String(50), unique=True, nullable=False, index=True)
    last_sync_at = Column(UTCDateTime, nullable=True)
    last_sync_status = Column(String(20), nullable=True)  # completed, failed
    issues_count = Column(Integer, default=0, nullable=False)
    worklogs_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_validation_status = Column(String(20), nullable=True)  # valid, invalid
    last_completeness_score = Column(Float, nullable=True)
    version = Column(Integer, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<ProjectSyncStatus(project='{self.project_key}', status='{self.last_sync_status}')>"
