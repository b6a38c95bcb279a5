"""Per-project progress checkpoints used to resume interrupted runs."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String

from jira_sync.database import Base
from jira_sync.models.types import JSONType, UTCDateTime, utcnow

RECOVERY_PROJECT_KEY = "RECOVERY"


class SyncCheckpoint(Base):
    """Durable progress marker for one project within one run."""

    __tablename__ = "sync_checkpoints"

    id = Column(Integer, primary_key=True, index=True)
    sync_run_id = Column(Integer, ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False)
    project_key = Column(String(50), nullable=False)
    checkpoint_type = Column(String(20), nullable=False, default='project_sync')  # project_sync, recovery
    status = Column(String(20), nullable=False, default='active')  # active, completed, failed
    checkpoint_data = Column(JSONType, nullable=False, default=dict)
    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_sync_checkpoints_run_project', 'sync_run_id', 'project_key'),
        Index('ix_sync_checkpoints_status', 'status'),
    )

    def __repr__(self):
        return f"<SyncCheckpoint(id={self.id}, run={self.sync_run_id}, project='{self.project_key}', status='{self.status}')>"
