from enum import Enum
from typing import Dict, List


class ErrorCategory(str, Enum):
    NETWORK = "network"
    DATABASE = "database"
    MEMORY = "memory"
    JIRA_API = "jira_api"
    PERMISSION = "permission"
    VALIDATION = "validation"
    FILESYSTEM = "filesystem"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def explain_error(category: ErrorCategory, context: Dict) -> str:
    templates = {
        ErrorCategory.NETWORK: "Network connection issue while talking to Jira: {detail}.",
        ErrorCategory.DATABASE: "Database operation failed: {detail}.",
        ErrorCategory.MEMORY: "The sync ran out of memory: {detail}.",
        ErrorCategory.JIRA_API: "Jira API returned an error: {detail}.",
        ErrorCategory.PERMISSION: "Permission denied by Jira: {detail}.",
        ErrorCategory.VALIDATION: "Jira returned data that could not be imported: {detail}.",
        ErrorCategory.FILESYSTEM: "File system error: {detail}.",
        ErrorCategory.UNKNOWN: "Unexpected error - manual review required: {detail}.",
    }
    template = templates.get(category, templates[ErrorCategory.UNKNOWN])
    return template.format(detail=context.get('detail', ''))


SUGGESTIONS: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.NETWORK: [
        "Check your internet connection",
        "Verify the Jira host URL is reachable",
        "Retry the sync in a few minutes",
    ],
    ErrorCategory.PERMISSION: [
        "Verify the API token is still valid",
        "Check the Jira account has Browse Projects permission",
        "Confirm the project key exists and is visible to the account",
    ],
    ErrorCategory.JIRA_API: [
        "Check the Jira status page for incidents",
        "Lower the requests-per-second setting if rate limits are hit often",
        "Retry the sync later",
    ],
    ErrorCategory.MEMORY: [
        "Sync fewer projects per run",
        "Reduce the issue page size",
    ],
    ErrorCategory.DATABASE: [
        "Check the database connection settings",
        "Verify the database has free disk space",
        "Run pending database migrations",
    ],
    ErrorCategory.VALIDATION: [
        "Inspect the referenced Jira record for missing fields",
        "Re-run the sync once the record is fixed in Jira",
    ],
    ErrorCategory.FILESYSTEM: [
        "Check file permissions and free disk space",
    ],
    ErrorCategory.UNKNOWN: [
        "Check the sync logs for details",
        "Retry the sync, and contact support if the error persists",
    ],
}


def get_suggestions(category: ErrorCategory) -> List[str]:
    return list(SUGGESTIONS.get(category, SUGGESTIONS[ErrorCategory.UNKNOWN]))
