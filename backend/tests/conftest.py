import os
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import jira_sync.models  # noqa: F401  registers every table
from jira_sync.auth import get_current_operator
from jira_sync.connectors.base import IssueRecord, IssueTrackerClient, Page, ProjectRecord, UserRecord, WorklogRecord
from jira_sync.database import Base, get_db
from jira_sync.exceptions import PermanentAPIError
from jira_sync.main import app
from jira_sync.schemas.auth import Operator

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

BASE_TIME = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db) -> TestClient:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_operator] = lambda: Operator(username="tester")
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(account_id: str = "u-1", display_name: str = "Jane Doe", email: Optional[str] = None) -> UserRecord:
    return UserRecord(account_id=account_id, display_name=display_name, email_address=email)


def make_issue(project_key: str, number: int, updated: Optional[datetime] = None, **overrides) -> IssueRecord:
    values = dict(
        remote_id=f"{project_key}-id-{number}",
        key=f"{project_key}-{number}",
        project_key=project_key,
        summary=f"Issue {number}",
        status="Open",
        assignee=make_user(),
        created=BASE_TIME,
        updated=updated or BASE_TIME,
    )
    values.update(overrides)
    return IssueRecord(**values)


def make_worklog(issue_key: str, number: int, started_at: Optional[datetime] = None, **overrides) -> WorklogRecord:
    started = started_at or BASE_TIME + timedelta(hours=number)
    values = dict(
        remote_id=f"{issue_key}-wl-{number}",
        issue_key=issue_key,
        author=make_user(),
        time_spent_seconds=1800,
        started_at=started,
        created=started,
        updated=started,
    )
    values.update(overrides)
    return WorklogRecord(**values)


class FakeJiraClient(IssueTrackerClient):
    """In-memory tracker that paginates like the real connector and records every call."""

    PROJECT_RE = re.compile(r'project = "([^"]+)"')

    def __init__(self, page_size: int = 50, max_batches: Optional[int] = None):
        super().__init__({"max_batches": max_batches})
        self.page_size = page_size
        self.projects: Dict[str, ProjectRecord] = {}
        self.issues: Dict[str, List[IssueRecord]] = {}
        self.worklogs: Dict[str, List[WorklogRecord]] = {}
        self.failures: Dict[tuple, BaseException] = {}
        self.connection_ok = True
        self.calls: List[tuple] = []
        self.closed = False

    def add_project(self, key: str, issue_count: int = 0, worklogs_per_issue: int = 0) -> "FakeJiraClient":
        self.projects[key] = ProjectRecord(remote_id=f"{key}-pid", key=key, name=f"{key} project")
        self.issues[key] = [make_issue(key, n) for n in range(1, issue_count + 1)]
        for issue in self.issues[key]:
            self.worklogs[issue.key] = [make_worklog(issue.key, n) for n in range(1, worklogs_per_issue + 1)]
        return self

    def fail(self, resource_type: str, identifier: str, exc: BaseException):
        self.failures[(resource_type, identifier)] = exc

    def calls_for(self, name: str, resource_type: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[0] == name and (resource_type is None or c[1] == resource_type)]

    def _check_failure(self, resource_type: str, identifier: str):
        exc = self.failures.get((resource_type, identifier))
        if exc is not None:
            raise exc

    def _issues_for(self, jql: str) -> List[IssueRecord]:
        key = self.PROJECT_RE.search(jql).group(1)
        issues = self.issues.get(key, [])
        if "worklogDate is not EMPTY" in jql:
            issues = [issue for issue in issues if self.worklogs.get(issue.key)]
        return issues

    async def fetch_page(self, resource_type, query, page_token=None, page_size=None) -> Page:
        start = page_token or 0
        size = page_size or self.page_size
        self.calls.append(("fetch_page", resource_type, str(query), start, size))
        if resource_type == "issue":
            key = self.PROJECT_RE.search(str(query)).group(1)
            self._check_failure("issue", key)
            items = self._issues_for(str(query))
        else:
            self._check_failure("worklog", str(query))
            items = self.worklogs.get(str(query), [])
        chunk = items[start:start + size]
        next_start = start + len(chunk)
        next_token = None if not chunk or len(chunk) < size or next_start >= len(items) else next_start
        return Page(records=chunk, next_page_token=next_token, total=len(items))

    async def fetch_detail(self, resource_type, identifier):
        self.calls.append(("fetch_detail", resource_type, identifier))
        self._check_failure(resource_type, identifier)
        if resource_type == "project" and identifier in self.projects:
            return self.projects[identifier]
        raise PermanentAPIError(f"Resource not found in Jira. GET /project/{identifier}", status_code=404)

    async def count(self, resource_type, query) -> int:
        self.calls.append(("count", resource_type, str(query)))
        self._check_failure("issue", self.PROJECT_RE.search(str(query)).group(1))
        return len(self._issues_for(str(query)))

    async def test_connection(self) -> bool:
        return self.connection_ok

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_jira() -> FakeJiraClient:
    return FakeJiraClient()


def make_run(db, status: str = "in_progress", project_keys=None, **kwargs):
    from jira_sync.models.sync_run import SyncRun

    sync_run = SyncRun(status=status, sync_type=kwargs.pop("sync_type", "manual"),
                       project_keys=list(project_keys or []), options={}, **kwargs)
    db.add(sync_run)
    db.commit()
    db.refresh(sync_run)
    return sync_run
