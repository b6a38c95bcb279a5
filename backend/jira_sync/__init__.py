"""Jira worklog synchronization service."""

from jira_sync.utils.logging import install_trace_level

__version__ = "0.1.0"

install_trace_level()
