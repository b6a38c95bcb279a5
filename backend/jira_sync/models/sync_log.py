"""Append-only log entries attached to a sync run."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text

from jira_sync.database import Base
from jira_sync.models.types import JSONType, UTCDateTime, utcnow


class SyncLogEntry(Base):
    """Operational history for one sync run. Rows are never updated."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    sync_run_id = Column(Integer, ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(UTCDateTime, default=utcnow, nullable=False)
    level = Column(String(10), nullable=False)  # info, warning, error
    message = Column(Text, nullable=False)
    context = Column(JSONType, nullable=True)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(100), nullable=True)
    operation = Column(String(100), nullable=True)

    __table_args__ = (
        Index('ix_sync_logs_run_level', 'sync_run_id', 'level'),
    )

    def __repr__(self):
        return f"<SyncLogEntry(id={self.id}, run={self.sync_run_id}, level='{self.level}')>"
