"""Exception hierarchy used across the sync engine."""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""


class TransientAPIError(SyncError):
    """Network timeout, 5xx or 429: retryable with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetriesExhaustedError(TransientAPIError):
    """A transient failure persisted past the configured number of attempts."""

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(message, status_code)
        self.attempts = attempts


class PermanentAPIError(SyncError):
    """401/403/404 and other client errors: surfaced immediately, never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PaginationLimitError(SyncError):
    """Pagination exceeded the configured batch ceiling."""


class RecordValidationError(SyncError):
    """A remote record is missing a mandatory field."""

    def __init__(self, entity_type: str, missing_fields: list, identifier: Optional[str] = None):
        self.entity_type = entity_type
        self.missing_fields = missing_fields
        self.identifier = identifier
        label = f"{entity_type} {identifier}" if identifier else entity_type
        super().__init__(f"Invalid {label}: missing required field(s) {', '.join(missing_fields)}")


class ResourceExhaustedError(SyncError):
    """Memory or storage exhaustion. Forces run termination."""


class PreconditionError(SyncError):
    """A run-level precondition failed before any work began."""


class InvalidRunStateError(SyncError):
    """A lifecycle transition was attempted on a run that does not allow it."""
