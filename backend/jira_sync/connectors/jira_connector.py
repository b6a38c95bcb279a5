import asyncio
import httpx
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jira_sync.connectors.base import IssueTrackerClient, Page, Record
from jira_sync.connectors.rate_limiter import RateLimiter
from jira_sync.exceptions import PermanentAPIError, RetriesExhaustedError, TransientAPIError
from jira_sync.services.cache import CacheBackend, project_cache_prefix
from jira_sync.services.normalizer import EPIC_LINK_FIELD, NormalizerService

log = logging.getLogger(__name__)

ISSUE_FIELDS = [
    "summary", "status", "labels", "assignee", "project", "parent",
    "created", "updated", "timeoriginalestimate", EPIC_LINK_FIELD,
]

JQL_DATE_FORMAT = "%Y-%m-%d %H:%M"


def build_issue_jql(
    project_key: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    only_with_worklogs: bool = False,
) -> str:
    """Builds the search JQL for one project, ordered by update time so "since" filtering is monotonic."""
    clauses = [f'project = "{project_key}"']
    if since:
        stamp = since.strftime(JQL_DATE_FORMAT)
        clauses.append(f'(updated >= "{stamp}" OR created >= "{stamp}")')
    if until:
        clauses.append(f'updated <= "{until.strftime(JQL_DATE_FORMAT)}"')
    if only_with_worklogs:
        clauses.append("worklogDate is not EMPTY")
    return " AND ".join(clauses) + " ORDER BY updated ASC"


PERMANENT_STATUS_MESSAGES = {
    401: "Authentication failed. Check the Jira account email and API token.",
    403: "Access denied. The Jira account lacks permission for this resource.",
    404: "Resource not found in Jira.",
}


class JiraConnector(IssueTrackerClient):
    """
    Rate-limited client for the Jira Cloud/Server REST API.

    Speaks API version 2 or 3; the versions only differ in how search
    requests are built. Every request passes through the injected
    ``RateLimiter`` and is retried on 429, 5xx and network failures with
    exponential backoff. 401/403/404 fail immediately.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[CacheBackend] = None,
        normalizer: Optional[NormalizerService] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self.base_url = str(self.config["base_url"]).rstrip("/")
        self.api_version = int(self.config.get("api_version", 3))
        if self.api_version not in (2, 3):
            raise ValueError(f"Unsupported Jira API version: {self.api_version}")
        self.max_attempts = int(self.config.get("max_attempts", 3))
        self.backoff_base_seconds = float(self.config.get("backoff_base_seconds", 1.0))
        self.retry_after_fallback_seconds = float(self.config.get("retry_after_fallback_seconds", 60.0))
        self.issue_page_size = int(self.config.get("issue_page_size", 50))
        self.worklog_page_size = int(self.config.get("worklog_page_size", 100))
        self.cache_ttl_seconds = int(self.config.get("cache_ttl_seconds", 600))

        self.rate_limiter = rate_limiter or RateLimiter()
        self.cache = cache
        self.normalizer = normalizer or NormalizerService()
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.config.get("email", ""), self.config.get("api_token", "")),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=float(self.config.get("timeout", 30)),
            transport=transport,
        )
        log.info(f"Jira connector initialized with base URL: {self.base_url} (API v{self.api_version})")

    @property
    def api_prefix(self) -> str:
        return f"/rest/api/{self.api_version}"

    def backoff_delay(self, attempt: int) -> float:
        """Base delay doubled per attempt (1-based)."""
        return self.backoff_base_seconds * (2 ** (attempt - 1))

    def _retry_after(self, response: httpx.Response) -> float:
        value = response.headers.get("Retry-After")
        try:
            return float(value) if value is not None else self.retry_after_fallback_seconds
        except ValueError:
            return self.retry_after_fallback_seconds

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Rate-limited request with bounded retries; returns the decoded JSON body."""
        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(1, self.max_attempts + 1):
            await self.rate_limiter.acquire()
            try:
                log.trace(f"Jira API {method} {path} (attempt {attempt}) with params: {kwargs.get('params', 'none')}")
                response = await self.client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                last_error = f"Network error for {path}: {e}"
                last_status = None
                delay = self.backoff_delay(attempt)
                log.warning(f"{last_error} (attempt {attempt}/{self.max_attempts})")
            else:
                log.trace(f"Jira API response for {path}: {response.status_code}")
                if response.is_success:
                    return response.json() if response.content else {}

                status = response.status_code
                last_status = status
                if status == 429:
                    delay = max(self._retry_after(response), self.backoff_delay(attempt))
                    last_error = f"Rate limited by Jira on {path}"
                    log.warning(f"{last_error}; retrying in {delay}s (attempt {attempt}/{self.max_attempts})")
                elif status >= 500:
                    delay = self.backoff_delay(attempt)
                    last_error = f"Jira server error {status} on {path}"
                    log.warning(f"{last_error}; retrying in {delay}s (attempt {attempt}/{self.max_attempts})")
                else:
                    message = PERMANENT_STATUS_MESSAGES.get(status, f"Jira rejected the request ({status}).")
                    log.error(f"HTTP error for {path}: {status} - {response.text[:500]}")
                    raise PermanentAPIError(f"{message} {method} {path}", status_code=status)

            if attempt < self.max_attempts:
                await self._sleep(delay)

        raise RetriesExhaustedError(
            f"{last_error} (gave up after {self.max_attempts} attempts)",
            status_code=last_status,
            attempts=self.max_attempts,
        )

    async def _search(self, jql: str, start_at: int, max_results: int, fields: List[str]) -> Dict[str, Any]:
        if self.api_version == 3:
            body = {"jql": jql, "startAt": start_at, "maxResults": max_results, "fields": fields}
            return await self._request("POST", f"{self.api_prefix}/search", json=body)
        params = {"jql": jql, "startAt": start_at, "maxResults": max_results, "fields": ",".join(fields)}
        return await self._request("GET", f"{self.api_prefix}/search", params=params)

    @staticmethod
    def _next_token(start_at: int, received: int, page_size: int, total: int) -> Optional[int]:
        next_start = start_at + received
        if received == 0 or received < page_size or next_start >= total:
            return None
        return next_start

    async def fetch_page(self, resource_type: str, query: Any, page_token: Optional[int] = None,
                         page_size: Optional[int] = None) -> Page:
        start_at = page_token or 0
        if resource_type == "issue":
            size = page_size or self.issue_page_size
            data = await self._search(str(query), start_at, size, ISSUE_FIELDS)
            raw = data.get("issues", [])
            records = [self.normalizer.normalize_issue(item) for item in raw]
        elif resource_type == "worklog":
            size = page_size or self.worklog_page_size
            data = await self._request(
                "GET", f"{self.api_prefix}/issue/{query}/worklog",
                params={"startAt": start_at, "maxResults": size},
            )
            raw = data.get("worklogs", [])
            records = [self.normalizer.normalize_worklog(item, issue_key=str(query)) for item in raw]
        else:
            raise ValueError(f"Unsupported resource type for pagination: {resource_type}")

        total = int(data.get("total", start_at + len(raw)))
        next_token = self._next_token(start_at, len(raw), size, total)
        log.debug(f"Fetched {len(records)} {resource_type} records at offset {start_at} (total {total})")
        return Page(records=records, next_page_token=next_token, total=total)

    async def fetch_detail(self, resource_type: str, identifier: str) -> Record:
        if resource_type == "project":
            cache_key = f"{project_cache_prefix(identifier)}detail"
            cached = self.cache.get(cache_key) if self.cache else None
            if cached is None:
                cached = await self._request("GET", f"{self.api_prefix}/project/{identifier}")
                if self.cache:
                    self.cache.put(cache_key, cached, self.cache_ttl_seconds)
            return self.normalizer.normalize_project(cached)
        if resource_type == "issue":
            data = await self._request(
                "GET", f"{self.api_prefix}/issue/{identifier}", params={"fields": ",".join(ISSUE_FIELDS)}
            )
            return self.normalizer.normalize_issue(data)
        if resource_type == "user":
            data = await self._request("GET", f"{self.api_prefix}/user", params={"accountId": identifier})
            return self.normalizer.normalize_user(data)
        raise ValueError(f"Unsupported resource type for detail lookup: {resource_type}")

    async def count(self, resource_type: str, query: Any) -> int:
        if resource_type != "issue":
            raise ValueError(f"Counting is only supported for issues, not {resource_type}")
        data = await self._search(str(query), 0, 0, ["id"])
        return int(data.get("total", 0))

    async def test_connection(self) -> bool:
        try:
            me = await self._request("GET", f"{self.api_prefix}/myself")
            log.info(f"Jira connection OK as {me.get('displayName', 'unknown')}")
            return True
        except (PermanentAPIError, TransientAPIError) as e:
            log.error(f"Jira connection test failed: {e}")
            return False

    async def close(self):
        await self.client.aclose()
