"""Classification of sync errors into category, severity and remediation advice."""

from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional
import logging

import httpx
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from jira_sync.constants.error_categories import ErrorCategory, ErrorSeverity, explain_error, get_suggestions
from jira_sync.exceptions import (
    PaginationLimitError,
    PermanentAPIError,
    RecordValidationError,
    ResourceExhaustedError,
    TransientAPIError,
)
from jira_sync.models.sync_log import SyncLogEntry
from jira_sync.models.sync_run import SyncRun
from jira_sync.models.types import utcnow
from jira_sync.utils.sync_logger import create_sync_log

log = logging.getLogger(__name__)

NETWORK_MARKERS = ("connection", "timeout", "timed out", "network", "curl", "dns")
MEMORY_MARKERS = ("memory", "out of memory")
DATABASE_MARKERS = ("database", "sql", "deadlock", "integrity")
PERMISSION_MARKERS = ("permission", "unauthorized", "forbidden", "access denied", "401", "403")
FILESYSTEM_MARKERS = ("no such file", "disk", "file")


class ErrorClassification(BaseModel):
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    user_message: str
    suggestions: List[str] = Field(default_factory=list)
    error_class: str
    error_message: str


def _categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, (MemoryError, ResourceExhaustedError)):
        return ErrorCategory.MEMORY
    if isinstance(exc, SQLAlchemyError):
        return ErrorCategory.DATABASE
    if isinstance(exc, PermanentAPIError):
        if exc.status_code in (401, 403):
            return ErrorCategory.PERMISSION
        return ErrorCategory.JIRA_API
    if isinstance(exc, TransientAPIError):
        return ErrorCategory.JIRA_API if exc.status_code else ErrorCategory.NETWORK
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, (RecordValidationError, PaginationLimitError, ValueError)):
        return ErrorCategory.VALIDATION
    if isinstance(exc, OSError):
        return ErrorCategory.FILESYSTEM

    message = str(exc).lower()
    if any(marker in message for marker in MEMORY_MARKERS):
        return ErrorCategory.MEMORY
    if any(marker in message for marker in NETWORK_MARKERS):
        return ErrorCategory.NETWORK
    if any(marker in message for marker in PERMISSION_MARKERS):
        return ErrorCategory.PERMISSION
    if any(marker in message for marker in DATABASE_MARKERS):
        return ErrorCategory.DATABASE
    if "jira" in message or "api" in message:
        return ErrorCategory.JIRA_API
    if any(marker in message for marker in FILESYSTEM_MARKERS):
        return ErrorCategory.FILESYSTEM
    return ErrorCategory.UNKNOWN


def _severity(category: ErrorCategory, exc: BaseException) -> ErrorSeverity:
    if category in (ErrorCategory.MEMORY, ErrorCategory.DATABASE):
        return ErrorSeverity.CRITICAL
    status_code = getattr(exc, "status_code", None)
    if category in (ErrorCategory.PERMISSION, ErrorCategory.JIRA_API) or status_code in (401, 403):
        return ErrorSeverity.HIGH
    if category in (ErrorCategory.NETWORK, ErrorCategory.VALIDATION):
        return ErrorSeverity.MEDIUM
    return ErrorSeverity.LOW


def _is_retryable(category: ErrorCategory, exc: BaseException) -> bool:
    if category in (ErrorCategory.PERMISSION, ErrorCategory.VALIDATION):
        return False
    if isinstance(exc, PermanentAPIError):
        return False
    if getattr(exc, "status_code", None) in (401, 403, 404):
        return False
    return "not found" not in str(exc).lower()


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map an exception onto the sync error taxonomy."""
    category = _categorize(exc)
    detail = str(exc) or exc.__class__.__name__
    return ErrorClassification(
        category=category,
        severity=_severity(category, exc),
        retryable=_is_retryable(category, exc),
        user_message=explain_error(category, {"detail": detail}),
        suggestions=get_suggestions(category),
        error_class=exc.__class__.__name__,
        error_message=detail,
    )


def log_sync_error(
    db: Session,
    sync_run: SyncRun,
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    operation: Optional[str] = None,
) -> ErrorClassification:
    """Classify ``exc`` and record it on the run and in the run's log."""
    classification = classify_error(exc)
    payload = {
        **(context or {}),
        "category": classification.category.value,
        "severity": classification.severity.value,
        "retryable": classification.retryable,
        "error_class": classification.error_class,
        "suggestions": classification.suggestions,
    }
    sync_run.add_error(classification.user_message, payload)
    create_sync_log(
        db,
        sync_run.id,
        "error",
        classification.user_message,
        context=payload,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        commit=False,
    )
    db.commit()
    return classification


def get_error_statistics(db: Session, days: int = 7) -> Dict[str, Any]:
    """
    Aggregate logged errors over the last ``days`` days.

    Returns:
        Dictionary with totals by category and severity, the retryable share
        and human-readable recommendations
    """
    cutoff = utcnow() - timedelta(days=days)
    entries = db.query(SyncLogEntry).filter(
        SyncLogEntry.level == "error",
        SyncLogEntry.timestamp >= cutoff,
    ).all()

    by_category: Counter = Counter()
    by_severity: Counter = Counter()
    retryable = 0
    for entry in entries:
        context = entry.context or {}
        by_category[context.get("category", ErrorCategory.UNKNOWN.value)] += 1
        by_severity[context.get("severity", ErrorSeverity.LOW.value)] += 1
        if context.get("retryable"):
            retryable += 1

    return {
        "period_days": days,
        "total_errors": len(entries),
        "by_category": dict(by_category),
        "by_severity": dict(by_severity),
        "retryable_errors": retryable,
        "recommendations": _recommendations(len(entries), by_category, by_severity),
    }


def _recommendations(total: int, by_category: Counter, by_severity: Counter) -> List[str]:
    recommendations = []
    if total == 0:
        return recommendations
    if by_severity.get(ErrorSeverity.CRITICAL.value):
        recommendations.append("Critical errors occurred; check database connectivity and memory limits before the next run.")
    if by_category.get(ErrorCategory.NETWORK.value, 0) > total * 0.3:
        recommendations.append("Network errors are frequent; check connectivity to the Jira host.")
    if by_category.get(ErrorCategory.PERMISSION.value):
        recommendations.append("Permission errors occurred; verify the API token and project permissions.")
    if by_category.get(ErrorCategory.JIRA_API.value, 0) > total * 0.3:
        recommendations.append("Jira API errors are frequent; consider lowering the request rate.")
    if by_category.get(ErrorCategory.VALIDATION.value):
        recommendations.append("Some Jira records could not be imported; review the validation errors in the sync logs.")
    return recommendations
