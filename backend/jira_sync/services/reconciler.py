from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type
import logging

from pydantic import BaseModel

from jira_sync.connectors.base import IssueRecord, ProjectRecord, UserRecord, WorklogRecord
from jira_sync.database import Base
from jira_sync.exceptions import RecordValidationError
from jira_sync.models.jira_issue import JiraIssue
from jira_sync.models.jira_project import JiraProject
from jira_sync.models.jira_user import JiraUser
from jira_sync.models.jira_worklog import JiraWorklog

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    field: str
    local_value: Any
    remote_value: Any


@dataclass(frozen=True)
class EntitySpec:
    """How one record type maps onto its model."""
    entity_type: str
    model: Type[Base]
    required: Tuple[str, ...]
    # model attribute -> record attribute
    fields: Dict[str, str]
    identifier: str
    remote_id: str = "remote_id"


ENTITY_SPECS: Dict[Type[BaseModel], EntitySpec] = {
    ProjectRecord: EntitySpec(
        entity_type="project",
        model=JiraProject,
        required=("remote_id", "key", "name"),
        fields={"jira_id": "remote_id", "project_key": "key", "name": "name"},
        identifier="key",
    ),
    UserRecord: EntitySpec(
        entity_type="user",
        model=JiraUser,
        required=("account_id", "display_name"),
        fields={"account_id": "account_id", "display_name": "display_name", "email_address": "email_address"},
        identifier="account_id",
        remote_id="account_id",
    ),
    IssueRecord: EntitySpec(
        entity_type="issue",
        model=JiraIssue,
        required=("remote_id", "key", "summary", "status"),
        fields={
            "jira_id": "remote_id",
            "issue_key": "key",
            "summary": "summary",
            "status": "status",
            "labels": "labels",
            "epic_key": "epic_key",
            "original_estimate_seconds": "original_estimate_seconds",
            "remote_created_at": "created",
            "remote_updated_at": "updated",
        },
        identifier="key",
    ),
    WorklogRecord: EntitySpec(
        entity_type="worklog",
        model=JiraWorklog,
        required=("remote_id", "time_spent_seconds", "started_at"),
        fields={
            "jira_id": "remote_id",
            "time_spent_seconds": "time_spent_seconds",
            "started_at": "started_at",
            "remote_created_at": "created",
            "remote_updated_at": "updated",
        },
        identifier="remote_id",
    ),
}


@dataclass
class ReconcileResult:
    entity: Any
    changes: List[FieldChange] = field(default_factory=list)
    created: bool = False

    def __iter__(self):
        # Unpacks as (merged, changes)
        return iter((self.entity, self.changes))


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class ConflictResolver:
    """
    Merges a freshly fetched Jira record into its local row.

    Jira is the only authority: every tracked field takes the remote value.
    The recorded changes are diagnostic output and never gate the merge.
    """

    def spec_for(self, record: BaseModel) -> EntitySpec:
        try:
            return ENTITY_SPECS[type(record)]
        except KeyError:
            raise ValueError(f"No entity mapping for record type {type(record).__name__}")

    def validate(self, record: BaseModel) -> EntitySpec:
        """Raises RecordValidationError when a mandatory field is absent."""
        spec = self.spec_for(record)
        missing = [name for name in spec.required if _is_missing(getattr(record, name))]
        if missing:
            raise RecordValidationError(spec.entity_type, missing, getattr(record, spec.identifier, None))
        return spec

    def reconcile(self, existing: Optional[Any], record: BaseModel,
                  links: Optional[Dict[str, Any]] = None) -> ReconcileResult:
        """
        Merge ``record`` into ``existing`` (or build a new row when there is none).

        ``links`` carries resolved foreign keys and derived values (e.g.
        ``jira_issue_id``, ``resource_type``) that are tracked like any other field.
        """
        spec = self.validate(record)
        values = {attr: getattr(record, source) for attr, source in spec.fields.items()}
        values.update(links or {})

        if existing is None:
            entity = spec.model(**values)
            log.trace(f"New {spec.entity_type} {getattr(record, spec.identifier)} from remote")
            return ReconcileResult(entity=entity, changes=[], created=True)

        changes = []
        for attr, remote_value in values.items():
            local_value = getattr(existing, attr)
            if local_value != remote_value:
                changes.append(FieldChange(attr, local_value, remote_value))
                setattr(existing, attr, remote_value)

        if changes:
            log.debug(
                f"Conflict on {spec.entity_type} {getattr(record, spec.identifier)}: "
                f"{', '.join(f'{c.field} {c.local_value!r} -> {c.remote_value!r}' for c in changes)} (remote wins)"
            )
        return ReconcileResult(entity=existing, changes=changes, created=False)
