"""Stored Jira connection settings."""

from sqlalchemy import Column, Integer, String, Text

from jira_sync.database import Base
from jira_sync.models.types import JSONType, UTCDateTime, utcnow


class JiraSetting(Base):
    """Jira host, credentials and the configured project scope."""

    __tablename__ = "jira_settings"

    id = Column(Integer, primary_key=True, index=True)
    jira_host = Column(String(255), nullable=False)
    jira_email = Column(String(255), nullable=False)
    api_token = Column(Text, nullable=False)  # Fernet-encrypted
    api_version = Column(Integer, nullable=False, default=3)
    project_keys = Column(JSONType, nullable=False, default=list)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<JiraSetting(id={self.id}, host='{self.jira_host}', projects={self.project_keys})>"
