"""Helper for writing run-scoped sync log entries."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from jira_sync.models.sync_log import SyncLogEntry

log = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def create_sync_log(
    db: Session,
    sync_run_id: int,
    level: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    operation: Optional[str] = None,
    commit: bool = True,
) -> SyncLogEntry:
    """
    Append a log entry to a sync run and mirror it to the application log.

    Args:
        db: Database session
        sync_run_id: Run the entry belongs to
        level: 'info', 'warning' or 'error'
        message: Human-readable message
        context: Additional structured context as JSON
        entity_type: Type of entity being processed (e.g., 'issue', 'worklog')
        entity_id: Remote key or id of that entity
        operation: Operation tag (e.g., 'project_sync', 'validation')
        commit: Commit immediately (default) or leave it to the caller

    Returns:
        Created SyncLogEntry instance

    Usage:
        ```python
        create_sync_log(
            db, run.id, "error",
            "Failed to process issue",
            context={"error": str(e)},
            entity_type="issue",
            entity_id="PROJ-12",
            operation="issue_sync",
        )
        ```
    """
    if level not in _LEVELS:
        raise ValueError(f"Unknown sync log level: {level}")

    entry = SyncLogEntry(
        sync_run_id=sync_run_id,
        level=level,
        message=message,
        context=context,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        operation=operation,
    )
    db.add(entry)
    if commit:
        db.commit()

    target = f" [{entity_type} {entity_id}]" if entity_type else ""
    log.log(_LEVELS[level], f"Run #{sync_run_id}{target}: {message}")
    return entry
