import json
from datetime import datetime, timezone

import httpx
import pytest

from jira_sync.connectors.jira_connector import JiraConnector, build_issue_jql
from jira_sync.connectors.rate_limiter import RateLimiter
from jira_sync.exceptions import PaginationLimitError, PermanentAPIError, RetriesExhaustedError
from jira_sync.services.cache import InMemoryCache


async def no_sleep(seconds: float):
    pass


class Recorder:
    """Collects requested sleeps instead of sleeping."""

    def __init__(self):
        self.sleeps = []

    async def __call__(self, seconds: float):
        self.sleeps.append(seconds)


def make_connector(handler, api_version: int = 3, sleep=no_sleep, cache=None, **config) -> JiraConnector:
    base = {
        "base_url": "https://example.atlassian.net",
        "email": "bot@example.com",
        "api_token": "token",
        "api_version": api_version,
        "max_attempts": 3,
        "backoff_base_seconds": 1.0,
        "retry_after_fallback_seconds": 60.0,
    }
    base.update(config)
    return JiraConnector(
        base,
        rate_limiter=RateLimiter(requests_per_second=1000, pause_every=0, sleep=no_sleep),
        cache=cache,
        sleep=sleep,
        transport=httpx.MockTransport(handler),
    )


def issue_payload(number: int) -> dict:
    return {
        "id": str(1000 + number),
        "key": f"PROJ-{number}",
        "fields": {
            "summary": f"Issue {number}",
            "status": {"name": "Open"},
            "labels": [],
            "project": {"key": "PROJ"},
            "created": "2024-01-15T09:30:00.000+0000",
            "updated": "2024-01-16T09:30:00.000+0000",
        },
    }


def search_handler(total: int, requests: list):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        start, size = body["startAt"], body["maxResults"]
        issues = [issue_payload(n) for n in range(start + 1, min(start + size, total) + 1)]
        return httpx.Response(200, json={"startAt": start, "maxResults": size, "total": total, "issues": issues})
    return handler


def test_build_issue_jql_with_window_and_worklog_filter():
    since = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)
    jql = build_issue_jql("PROJ", since=since, only_with_worklogs=True)
    assert jql == (
        'project = "PROJ" AND (updated >= "2024-01-01 12:30" OR created >= "2024-01-01 12:30") '
        'AND worklogDate is not EMPTY ORDER BY updated ASC'
    )


def test_build_issue_jql_full_history():
    assert build_issue_jql("PROJ") == 'project = "PROJ" ORDER BY updated ASC'


@pytest.mark.asyncio
async def test_backoff_honours_retry_after_then_gives_up():
    hints = iter(["5", "10", "20", "30"])
    recorder = Recorder()

    def handler(request):
        return httpx.Response(429, headers={"Retry-After": next(hints)})

    connector = make_connector(handler, sleep=recorder, max_attempts=4)
    with pytest.raises(RetriesExhaustedError) as excinfo:
        await connector.fetch_detail("issue", "PROJ-1")

    assert recorder.sleeps == [5.0, 10.0, 20.0]
    assert excinfo.value.attempts == 4
    assert excinfo.value.status_code == 429
    await connector.close()


@pytest.mark.asyncio
async def test_429_without_hint_uses_fallback():
    recorder = Recorder()
    responses = iter([httpx.Response(429), httpx.Response(200, json=issue_payload(1))])

    connector = make_connector(lambda request: next(responses), sleep=recorder, retry_after_fallback_seconds=60.0)
    issue = await connector.fetch_detail("issue", "PROJ-1")

    assert issue.key == "PROJ-1"
    assert recorder.sleeps == [60.0]
    await connector.close()


@pytest.mark.asyncio
async def test_server_errors_retry_with_exponential_backoff():
    recorder = Recorder()
    responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(200, json=issue_payload(2))])

    connector = make_connector(lambda request: next(responses), sleep=recorder)
    issue = await connector.fetch_detail("issue", "PROJ-2")

    assert issue.key == "PROJ-2"
    assert recorder.sleeps == [1.0, 2.0]
    await connector.close()


@pytest.mark.asyncio
async def test_network_errors_are_retried():
    recorder = Recorder()
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=issue_payload(3))

    connector = make_connector(handler, sleep=recorder)
    issue = await connector.fetch_detail("issue", "PROJ-3")

    assert issue.key == "PROJ-3"
    assert len(calls) == 2
    assert recorder.sleeps == [1.0]
    await connector.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403, 404])
async def test_permanent_errors_fail_immediately(status_code):
    recorder = Recorder()
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code, json={"errorMessages": ["nope"]})

    connector = make_connector(handler, sleep=recorder)
    with pytest.raises(PermanentAPIError) as excinfo:
        await connector.fetch_detail("issue", "PROJ-1")

    assert excinfo.value.status_code == status_code
    assert len(calls) == 1
    assert recorder.sleeps == []
    await connector.close()


@pytest.mark.asyncio
async def test_pagination_follows_offset_and_total():
    requests = []
    connector = make_connector(search_handler(73, requests))

    pages = [page async for page in connector.iterate("issue", build_issue_jql("PROJ"), page_size=25)]

    assert [len(page.records) for page in pages] == [25, 25, 23]
    assert [body["startAt"] for body in requests] == [0, 25, 50]
    assert pages[-1].next_page_token is None
    assert all(page.total == 73 for page in pages)
    await connector.close()


@pytest.mark.asyncio
async def test_pagination_stops_when_offset_reaches_total():
    requests = []
    connector = make_connector(search_handler(100, requests))

    pages = [page async for page in connector.iterate("issue", build_issue_jql("PROJ"), page_size=50)]

    assert len(pages) == 2
    assert len(requests) == 2
    await connector.close()


@pytest.mark.asyncio
async def test_pagination_resumes_from_offset():
    requests = []
    connector = make_connector(search_handler(100, requests))

    pages = [page async for page in connector.iterate("issue", build_issue_jql("PROJ"), start_at=40, page_size=50)]

    assert [body["startAt"] for body in requests] == [40, 90]
    assert sum(len(page.records) for page in pages) == 60
    await connector.close()


@pytest.mark.asyncio
async def test_pagination_ceiling_raises():
    requests = []
    connector = make_connector(search_handler(1000, requests), max_batches=2)

    with pytest.raises(PaginationLimitError):
        async for _ in connector.iterate("issue", build_issue_jql("PROJ"), page_size=10):
            pass

    assert len(requests) == 2
    await connector.close()


@pytest.mark.asyncio
async def test_api_v2_searches_with_get():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"startAt": 0, "maxResults": 0, "total": 42, "issues": []})

    connector = make_connector(handler, api_version=2)
    total = await connector.count("issue", build_issue_jql("PROJ"))

    assert total == 42
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/rest/api/2/search"
    assert seen[0].url.params["maxResults"] == "0"
    assert "project = \"PROJ\"" in seen[0].url.params["jql"]
    await connector.close()


@pytest.mark.asyncio
async def test_api_v3_searches_with_post():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"startAt": 0, "maxResults": 0, "total": 7, "issues": []})

    connector = make_connector(handler, api_version=3)
    assert await connector.count("issue", build_issue_jql("PROJ")) == 7
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/rest/api/3/search"
    assert json.loads(seen[0].content)["maxResults"] == 0
    await connector.close()


def test_rejects_unknown_api_version():
    with pytest.raises(ValueError):
        make_connector(lambda request: httpx.Response(200), api_version=4)


@pytest.mark.asyncio
async def test_worklog_page_is_normalized():
    def handler(request):
        assert request.url.path == "/rest/api/3/issue/PROJ-1/worklog"
        return httpx.Response(200, json={
            "startAt": 0,
            "maxResults": 100,
            "total": 1,
            "worklogs": [{
                "id": "10042",
                "author": {"accountId": "abc", "displayName": "Jane Doe"},
                "timeSpentSeconds": 3600,
                "started": "2024-01-15T09:30:00.000+0000",
                "comment": {"type": "doc", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Code review"}]}]},
            }],
        })

    connector = make_connector(handler)
    page = await connector.fetch_page("worklog", "PROJ-1")

    assert page.total == 1
    assert page.next_page_token is None
    worklog = page.records[0]
    assert worklog.remote_id == "10042"
    assert worklog.issue_key == "PROJ-1"
    assert worklog.author.account_id == "abc"
    assert worklog.comment_text == "Code review"
    await connector.close()


@pytest.mark.asyncio
async def test_project_detail_is_cached():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"id": "10000", "key": "PROJ", "name": "Project"})

    cache = InMemoryCache()
    connector = make_connector(handler, cache=cache)
    first = await connector.fetch_detail("project", "PROJ")
    second = await connector.fetch_detail("project", "PROJ")

    assert first == second
    assert first.remote_id == "10000"
    assert len(calls) == 1

    cache.invalidate_projects(["PROJ"])
    await connector.fetch_detail("project", "PROJ")
    assert len(calls) == 2
    await connector.close()


@pytest.mark.asyncio
async def test_connection_check_reports_failure_instead_of_raising():
    connector = make_connector(lambda request: httpx.Response(401))
    assert await connector.test_connection() is False
    await connector.close()
