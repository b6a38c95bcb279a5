"""Database models."""

from jira_sync.models.jira_setting import JiraSetting
from jira_sync.models.jira_project import JiraProject
from jira_sync.models.jira_user import JiraUser
from jira_sync.models.jira_issue import JiraIssue
from jira_sync.models.jira_worklog import JiraWorklog
from jira_sync.models.sync_run import SyncRun
from jira_sync.models.sync_log import SyncLogEntry
from jira_sync.models.sync_checkpoint import SyncCheckpoint
from jira_sync.models.project_sync_status import ProjectSyncStatus
from jira_sync.models.schedule import Schedule

__all__ = [
    "JiraSetting",
    "JiraProject",
    "JiraUser",
    "JiraIssue",
    "JiraWorklog",
    "SyncRun",
    "SyncLogEntry",
    "SyncCheckpoint",
    "ProjectSyncStatus",
    "Schedule",
]
