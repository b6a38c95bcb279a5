"""Sync run model for tracking synchronization executions."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, Float, Integer, String, Text

from jira_sync.database import Base
from jira_sync.exceptions import InvalidRunStateError
from jira_sync.models.types import JSONType, UTCDateTime, utcnow

TERMINAL_STATUSES = ("completed", "failed")


class SyncRun(Base):
    """One execution of the sync engine."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)

    # Execution details
    status = Column(String(20), nullable=False, default='pending', index=True)  # pending, in_progress, completed, failed
    sync_type = Column(String(20), nullable=False, default='manual')  # manual, scheduled, incremental, recovery
    project_keys = Column(JSONType, nullable=False, default=list)
    options = Column(JSONType, nullable=False, default=dict)
    triggered_by = Column(String(100), nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    # Statistics
    total_projects = Column(Integer, default=0, nullable=False)
    processed_projects = Column(Integer, default=0, nullable=False)
    total_issues = Column(Integer, default=0, nullable=False)
    processed_issues = Column(Integer, default=0, nullable=False)
    total_worklogs = Column(Integer, default=0, nullable=False)
    processed_worklogs = Column(Integer, default=0, nullable=False)
    total_users = Column(Integer, default=0, nullable=False)
    processed_users = Column(Integer, default=0, nullable=False)

    # Progress
    current_operation = Column(Text, nullable=True)
    progress_percentage = Column(Float, default=0.0, nullable=False)
    cancel_requested = Column(Boolean, default=False, nullable=False)

    # Errors and validation
    error_count = Column(Integer, default=0, nullable=False)
    error_details = Column(JSONType, nullable=True)
    validation_results = Column(JSONType, nullable=True)
    completeness_score = Column(Float, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.status in ('pending', 'in_progress')

    @property
    def error_message(self) -> Optional[str]:
        """Most recent error message, if any."""
        if not self.error_details:
            return None
        return self.error_details[-1].get('message')

    def is_stale(self, minutes: int, now: Optional[datetime] = None) -> bool:
        """A non-terminal run that has not been touched for ``minutes``."""
        if self.is_terminal:
            return False
        now = now or utcnow()
        reference = self.updated_at if self.status == 'in_progress' else self.created_at
        return reference is not None and reference < now - timedelta(minutes=minutes)

    def _ensure_not_terminal(self, transition: str):
        if self.is_terminal:
            raise InvalidRunStateError(
                f"Sync run {self.id} is already {self.status}; cannot {transition}"
            )

    def mark_as_started(self):
        self._ensure_not_terminal("start")
        self.status = 'in_progress'
        self.started_at = utcnow()
        self.progress_percentage = 0.0

    def mark_as_completed(self):
        self._ensure_not_terminal("complete")
        self.status = 'completed'
        self.completed_at = utcnow()
        self.progress_percentage = 100.0
        self.current_operation = 'Sync completed'
        if self.started_at:
            self.duration_seconds = int((self.completed_at - self.started_at).total_seconds())

    def mark_as_failed(self, message: str, details: Optional[Dict[str, Any]] = None):
        self._ensure_not_terminal("fail")
        self.add_error(message, details)
        self.status = 'failed'
        self.completed_at = utcnow()
        self.current_operation = f"Sync failed: {message}"
        if self.started_at:
            self.duration_seconds = int((self.completed_at - self.started_at).total_seconds())

    def add_error(self, message: str, context: Optional[Dict[str, Any]] = None):
        # Reassign so the JSON column is flagged dirty
        self.error_details = list(self.error_details or []) + [{
            'message': message,
            'context': context or {},
            'timestamp': utcnow().isoformat(),
        }]
        self.error_count = (self.error_count or 0) + 1

    def update_current_operation(self, operation: str):
        self.current_operation = operation

    def __repr__(self):
        return f"<SyncRun(id={self.id}, type='{self.sync_type}', status='{self.status}', errors={self.error_count})>"
