"""Schedule model for periodic sync configuration."""

from sqlalchemy import Column, Integer, String, Boolean

from jira_sync.database import Base
from jira_sync.models.types import UTCDateTime, utcnow


class Schedule(Base):
    """Cron schedule that triggers incremental sync runs."""

    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    cron = Column(String(100), nullable=False)
    timezone = Column(String(50), nullable=False, default='UTC')
    concurrency = Column(String(20), nullable=False, default='skip')  # 'skip' | 'queue'
    enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Schedule(id={self.id}, cron='{self.cron}', enabled={self.enabled})>"
