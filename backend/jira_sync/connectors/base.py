from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from jira_sync.exceptions import PaginationLimitError


class UserRecord(BaseModel):
    """Jira user as seen at the API boundary."""
    account_id: Optional[str] = Field(None, description="Jira accountId")
    display_name: Optional[str] = Field(None, description="Display name")
    email_address: Optional[str] = Field(None, description="Email address, when visible to the API user")


class ProjectRecord(BaseModel):
    """Jira project as seen at the API boundary."""
    remote_id: Optional[str] = Field(None, description="Jira project id")
    key: Optional[str] = Field(None, description="Project key (e.g. 'PROJ')")
    name: Optional[str] = Field(None, description="Project name")


class IssueRecord(BaseModel):
    """Jira issue as seen at the API boundary."""
    remote_id: Optional[str] = Field(None, description="Jira issue id")
    key: Optional[str] = Field(None, description="Issue key (e.g. 'PROJ-12')")
    project_key: Optional[str] = Field(None, description="Key of the owning project")
    summary: Optional[str] = Field(None, description="Issue summary")
    status: Optional[str] = Field(None, description="Workflow status name")
    labels: List[str] = Field(default_factory=list)
    epic_key: Optional[str] = Field(None, description="Parent epic key, if any")
    assignee: Optional[UserRecord] = None
    original_estimate_seconds: Optional[int] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


class WorklogRecord(BaseModel):
    """Jira worklog as seen at the API boundary."""
    remote_id: Optional[str] = Field(None, description="Jira worklog id")
    issue_key: Optional[str] = Field(None, description="Key of the parent issue")
    author: Optional[UserRecord] = None
    time_spent_seconds: Optional[int] = Field(None, description="Logged duration in seconds")
    started_at: Optional[datetime] = Field(None, description="When the work started")
    comment_text: str = Field("", description="Comment flattened to plain text")
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


Record = Union[ProjectRecord, IssueRecord, WorklogRecord, UserRecord]


class Page(BaseModel):
    """One page of a paginated listing."""
    records: List[Any] = Field(default_factory=list)
    next_page_token: Optional[int] = Field(None, description="Offset of the next page, None when exhausted")
    total: int = 0


class IssueTrackerClient(ABC):
    """Interface the sync engine uses to read from the remote tracker."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.max_batches: Optional[int] = config.get("max_batches")

    @abstractmethod
    async def fetch_page(self, resource_type: str, query: Any, page_token: Optional[int] = None,
                         page_size: Optional[int] = None) -> Page:
        """Fetches one page of ``resource_type`` records matching ``query``."""
        pass

    @abstractmethod
    async def fetch_detail(self, resource_type: str, identifier: str) -> Record:
        """Fetches a single record by id or key."""
        pass

    @abstractmethod
    async def count(self, resource_type: str, query: Any) -> int:
        """Returns the total number of records matching ``query`` without fetching them."""
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """Validates the connection to the remote tracker."""
        pass

    async def iterate(self, resource_type: str, query: Any, start_at: int = 0,
                      page_size: Optional[int] = None) -> AsyncIterator[Page]:
        """Yields pages starting at ``start_at`` until the listing is exhausted."""
        token: Optional[int] = start_at
        batches = 0
        while token is not None:
            if self.max_batches and batches >= self.max_batches:
                raise PaginationLimitError(
                    f"Pagination of {resource_type} exceeded {self.max_batches} batches for query {query!r}"
                )
            batches += 1
            page = await self.fetch_page(resource_type, query, token, page_size)
            yield page
            token = page.next_page_token

    async def close(self):
        pass
