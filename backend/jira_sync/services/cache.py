"""Cache collaborator for read-only API responses."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional
import logging
import time

from pydantic import BaseModel

log = logging.getLogger(__name__)


class CacheEntry(BaseModel):
    value: Any
    expires_at: float


class CacheBackend(ABC):
    """get / put / invalidate contract. A miss always means "fetch fresh"."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def put(self, key: str, value: Any, ttl: int) -> None:
        pass

    @abstractmethod
    def invalidate(self, prefix: str) -> int:
        """Drops every key starting with ``prefix`` and returns how many were dropped."""
        pass

    def invalidate_projects(self, project_keys: Iterable[str]) -> int:
        removed = 0
        for key in project_keys:
            removed += self.invalidate(project_cache_prefix(key))
        return removed


def project_cache_prefix(project_key: str) -> str:
    return f"jira:project:{project_key.upper()}:"


class InMemoryCache(CacheBackend):
    """Process-local cache with per-entry TTL (seconds)."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if time.time() >= entry.expires_at:
            del self._entries[key]
            log.trace(f"Cache expired: {key}")
            return None
        log.trace(f"Cache hit: {key}")
        return entry.value

    def put(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=time.time() + ttl)

    def invalidate(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            log.debug(f"Invalidated {len(keys)} cache entries with prefix '{prefix}'")
        return len(keys)


# Process-wide cache of read-only project metadata
project_cache = InMemoryCache()
