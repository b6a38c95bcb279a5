from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from jira_sync.connectors.base import IssueRecord, ProjectRecord, UserRecord, WorklogRecord

# Jira custom field holding the epic link on company-managed projects
EPIC_LINK_FIELD = "customfield_10014"


def parse_jira_datetime(value: Any) -> Optional[datetime]:
    """Parse Jira timestamps such as ``2024-01-15T09:30:00.000+0000`` into aware datetimes."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def flatten_rich_text(content: Any) -> str:
    """
    Flatten an Atlassian Document Format payload (or a plain string) to text.

    Every nested ``text`` node is collected in document order and joined with
    single spaces.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()

    parts: List[str] = []

    def _collect(node: Any):
        if isinstance(node, dict):
            text = node.get("text")
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
            for value in node.values():
                if isinstance(value, (dict, list)):
                    _collect(value)
        elif isinstance(node, list):
            for item in node:
                _collect(item)

    _collect(content)
    return " ".join(parts)


class NormalizerService:
    """
    Converts raw Jira REST payloads into the plain records the engine works with.

    Nothing downstream of this service sees Jira's JSON shapes. Missing fields
    are carried as ``None``; deciding whether a record is acceptable is left to
    the conflict resolver.
    """

    def normalize_user(self, data: Optional[Dict[str, Any]]) -> Optional[UserRecord]:
        if not data:
            return None
        return UserRecord(
            account_id=data.get("accountId") or data.get("name"),
            display_name=data.get("displayName"),
            email_address=data.get("emailAddress"),
        )

    def normalize_project(self, data: Dict[str, Any]) -> ProjectRecord:
        return ProjectRecord(
            remote_id=str(data["id"]) if data.get("id") is not None else None,
            key=data.get("key"),
            name=data.get("name"),
        )

    def normalize_issue(self, data: Dict[str, Any]) -> IssueRecord:
        fields = data.get("fields") or {}
        status = fields.get("status") or {}
        project = fields.get("project") or {}
        parent = fields.get("parent") or {}

        epic_key = fields.get(EPIC_LINK_FIELD)
        if not epic_key and parent:
            parent_type = ((parent.get("fields") or {}).get("issuetype") or {}).get("name")
            if parent_type == "Epic":
                epic_key = parent.get("key")

        return IssueRecord(
            remote_id=str(data["id"]) if data.get("id") is not None else None,
            key=data.get("key"),
            project_key=project.get("key"),
            summary=fields.get("summary"),
            status=status.get("name"),
            labels=list(fields.get("labels") or []),
            epic_key=epic_key,
            assignee=self.normalize_user(fields.get("assignee")),
            original_estimate_seconds=fields.get("timeoriginalestimate"),
            created=parse_jira_datetime(fields.get("created")),
            updated=parse_jira_datetime(fields.get("updated")),
        )

    def normalize_worklog(self, data: Dict[str, Any], issue_key: Optional[str] = None) -> WorklogRecord:
        seconds = data.get("timeSpentSeconds")
        return WorklogRecord(
            remote_id=str(data["id"]) if data.get("id") is not None else None,
            issue_key=issue_key,
            author=self.normalize_user(data.get("author")),
            time_spent_seconds=int(seconds) if seconds is not None else None,
            started_at=parse_jira_datetime(data.get("started")),
            comment_text=flatten_rich_text(data.get("comment")),
            created=parse_jira_datetime(data.get("created")),
            updated=parse_jira_datetime(data.get("updated")),
        )
