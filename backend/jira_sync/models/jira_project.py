"""Jira project model."""

from sqlalchemy import Column, Integer, String

from jira_sync.database import Base
from jira_sync.models.types import UTCDateTime, utcnow


class JiraProject(Base):
    """Project imported from Jira."""

    __tablename__ = "jira_projects"

    id = Column(Integer, primary_key=True, index=True)
    jira_id = Column(String(50), unique=True, nullable=False, index=True)
    project_key = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<JiraProject(id={self.id}, key='{self.project_key}')>"
