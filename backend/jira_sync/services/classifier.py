"""Priority-ordered resource type classification for worklogs."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from jira_sync.connectors.base import UserRecord, WorklogRecord

log = logging.getLogger(__name__)

DEFAULT_RESOURCE_TYPE = "development"

# (category, priority, keywords); lower priority wins, table order breaks ties
RESOURCE_CATEGORIES: List[Tuple[str, int, Tuple[str, ...]]] = [
    ("frontend", 1, ("frontend", "front-end", "fe", "ui", "ux", "react", "vue", "angular", "javascript", "css", "html")),
    ("backend", 1, ("backend", "back-end", "be", "api", "server", "php", "laravel", "database", "mysql", "postgresql")),
    ("qa", 2, ("qa", "quality assurance", "tester", "testing", "qe", "automation", "test", "quality")),
    ("devops", 2, ("devops", "dev ops", "infrastructure", "deployment", "ci/cd", "docker", "kubernetes", "aws", "server admin")),
    ("architect", 2, ("architect", "solution architect", "technical architect", "system architect", "senior architect")),
    ("management", 3, ("management", "manager", "pm", "project manager", "scrum master", "lead", "team lead", "director")),
    ("content management", 4, ("content", "content manager", "cms", "content creation", "copywriter", "editor", "writer")),
]

SOURCE_PROFILE = "profile"
SOURCE_COMMENT = "comment"

SENIORITY_TERMS = ("senior", "lead")
MANAGEMENT_HOURS = range(9, 18)
MANAGEMENT_MIN_SECONDS = 4 * 3600


def _compile(keyword: str) -> re.Pattern:
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])")


_PATTERNS: List[Tuple[str, int, int, List[re.Pattern]]] = [
    (category, priority, order, [_compile(keyword) for keyword in keywords])
    for order, (category, priority, keywords) in enumerate(RESOURCE_CATEGORIES)
]


@dataclass(frozen=True)
class CategoryMatch:
    category: str
    priority: int
    source: str
    order: int

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        return (self.priority, 0 if self.source == SOURCE_PROFILE else 1, self.order)


def _matches(text: str, source: str, penalty: int) -> List[CategoryMatch]:
    text = text.lower()
    found = []
    for category, priority, order, patterns in _PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            found.append(CategoryMatch(category, priority + penalty, source, order))
    return found


class ResourceClassifier:
    """
    Assigns a resource type to each worklog from its author and comment.

    Profile text (display name and email) is scanned first; comment matches
    count one priority level weaker. The decision is memoized per author for
    the lifetime of the instance, so create one classifier per sync run.
    """

    def __init__(self):
        self._memo: Dict[str, str] = {}

    def classify(self, worklog: WorklogRecord) -> str:
        author = worklog.author or UserRecord()
        memo_key = author.account_id
        if memo_key and memo_key in self._memo:
            return self._memo[memo_key]

        resource_type = self._classify(author, worklog)
        if memo_key:
            self._memo[memo_key] = resource_type
        log.trace(f"Classified worklog {worklog.remote_id} by {author.display_name!r} as '{resource_type}'")
        return resource_type

    def _classify(self, author: UserRecord, worklog: WorklogRecord) -> str:
        profile_text = " ".join(filter(None, [author.display_name, author.email_address]))
        candidates = _matches(profile_text, SOURCE_PROFILE, 0)
        if worklog.comment_text:
            candidates += _matches(worklog.comment_text, SOURCE_COMMENT, 1)

        if candidates:
            return min(candidates, key=lambda match: match.sort_key).category

        return self._heuristic(author, worklog.started_at, worklog.time_spent_seconds) or DEFAULT_RESOURCE_TYPE

    def _heuristic(self, author: UserRecord, started_at: Optional[datetime],
                   time_spent_seconds: Optional[int]) -> Optional[str]:
        name = (author.display_name or "").lower()
        email = (author.email_address or "").lower()

        if any(term in name for term in SENIORITY_TERMS):
            if "qa" in name or "test" in name:
                return "qa"
            if "dev" in name or "engineer" in name:
                return "backend"

        if "qa" in email or "test" in email:
            return "qa"

        if started_at and time_spent_seconds and started_at.hour in MANAGEMENT_HOURS \
                and time_spent_seconds >= MANAGEMENT_MIN_SECONDS:
            return "management"

        return None

    def clear(self):
        self._memo.clear()
