"""Jira user model."""

from sqlalchemy import Column, Integer, String

from jira_sync.database import Base
from jira_sync.models.types import UTCDateTime, utcnow


class JiraUser(Base):
    """Issue assignee or worklog author imported from Jira."""

    __tablename__ = "jira_users"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(128), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    email_address = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<JiraUser(id={self.id}, name='{self.display_name}')>"
