from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SyncType = Literal['manual', 'scheduled', 'incremental', 'recovery']


class SyncScope(BaseModel):
    """What a run should cover."""
    project_keys: Optional[List[str]] = Field(None, description="Project keys to sync; all configured projects when omitted")
    sync_type: SyncType = 'manual'
    since: Optional[datetime] = Field(None, description="Explicit window start; overrides the last successful sync time")
    until: Optional[datetime] = Field(None, description="Explicit window end")
    force_full_sync: bool = Field(False, description="Ignore the last successful sync time and fetch full history")
    only_issues_with_worklogs: bool = Field(False, description="Restrict the issue search to issues that have worklogs")
    resume_of_run_id: Optional[int] = Field(None, description="Run to resume (recovery runs only)")

    @field_validator('project_keys')
    @classmethod
    def normalize_keys(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        keys = [key.strip().upper() for key in v if key and key.strip()]
        return list(dict.fromkeys(keys))

    @field_validator('since', 'until')
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class SyncRequest(SyncScope):
    """Body of POST /sync/run."""


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    sync_type: str
    project_keys: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    total_projects: int = 0
    processed_projects: int = 0
    total_issues: int = 0
    processed_issues: int = 0
    total_worklogs: int = 0
    processed_worklogs: int = 0
    total_users: int = 0
    processed_users: int = 0
    current_operation: Optional[str] = None
    progress_percentage: float = 0.0
    cancel_requested: bool = False
    error_count: int = 0
    error_message: Optional[str] = None
    completeness_score: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaginatedSyncRuns(BaseModel):
    data: List[SyncRunResponse]
    total: int


class SyncLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    level: str
    message: str
    context: Optional[Dict[str, Any]] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    operation: Optional[str] = None


class ResumePoint(BaseModel):
    """Where a project's loop restarts, derived from its latest checkpoint."""
    start_from: Literal['beginning', 'issues', 'specific_issue'] = 'beginning'
    skip_project_setup: bool = False
    entities_processed: int = 0
    entities_total: Optional[int] = None
    last_entity_key: Optional[str] = None
    since: Optional[datetime] = None

    @property
    def start_offset(self) -> int:
        return self.entities_processed if self.start_from != 'beginning' else 0


class ResumeAnalysis(BaseModel):
    run_id: int
    can_resume: bool
    strategy: Literal['full_restart', 'partial_resume', 'already_completed', 'manual_review_required']
    reason: Optional[str] = None
    projects_to_retry: List[str] = Field(default_factory=list)
    completed_projects: List[str] = Field(default_factory=list)
    failed_projects: List[str] = Field(default_factory=list)
    resume_points: Dict[str, ResumePoint] = Field(default_factory=dict)


class ProjectValidation(BaseModel):
    project_key: str
    local_issues: int = 0
    remote_issues: int = 0
    issue_discrepancy: int = 0
    issue_discrepancy_percent: float = 0.0
    local_worklogs: int = 0
    remote_worklogs: int = 0
    worklog_discrepancy: int = 0
    worklog_discrepancy_percent: float = 0.0
    resource_type_distribution: Dict[str, int] = Field(default_factory=dict)
    valid: bool = True
    error: Optional[str] = None


class IntegrityReport(BaseModel):
    orphaned_worklogs: int = 0
    missing_author_worklogs: int = 0
    future_dated_worklogs: int = 0
    duplicate_worklogs: int = 0
    excessive_duration_worklogs: int = 0
    non_positive_duration_worklogs: int = 0
    total_worklogs: int = 0
    data_quality_score: float = 100.0


class ValidationResult(BaseModel):
    run_id: int
    threshold_percent: float
    valid: bool
    projects: List[ProjectValidation] = Field(default_factory=list)
    total_local: int = 0
    total_remote: int = 0
    discrepancy_percent: float = 0.0
    integrity: IntegrityReport = Field(default_factory=IntegrityReport)
    findings: List[str] = Field(default_factory=list, description="Missing/extra record identifiers, e.g. 'missing PROJ-1:10042'")
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    completeness_score: float = 100.0
    recommendations: List[str] = Field(default_factory=list)
    validated_at: datetime


class ProgressEvent(BaseModel):
    run_id: int
    operation: str
    percentage: float
    counts: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    estimated_completion: Optional[datetime] = None
    emitted_at: datetime


class StaleRunResponse(BaseModel):
    id: int
    status: str
    sync_type: str
    current_operation: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    minutes_inactive: float


class CheckpointStatistics(BaseModel):
    period_days: int
    total: int
    active: int
    completed: int
    failed: int
    success_rate: float
