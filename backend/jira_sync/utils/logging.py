"""Logging setup: custom TRACE level and root logger configuration."""

import logging

TRACE = 5

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)-8s - %(message)s'


def _trace(self, msg, *args, **kwargs):
    if self.isEnabledFor(TRACE):
        self._log(TRACE, msg, args, **kwargs)


def install_trace_level():
    """Register the TRACE level and add ``Logger.trace`` to every logger."""
    logging.TRACE = TRACE
    logging.addLevelName(TRACE, "TRACE")
    logging.Logger.trace = _trace


def configure_logging(log_level_str: str):
    """Configure the root logger once, honouring the TRACE and VERBOSE modes."""
    log_level_str = log_level_str.upper()
    log_level = TRACE if log_level_str == "TRACE" else getattr(logging, log_level_str, logging.INFO)
    if logging.getLogger().hasHandlers():
        return

    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    root = logging.getLogger()

    if log_level_str == "VERBOSE":
        root_level = logging.DEBUG
        http_level = logging.DEBUG
        connectors_level = TRACE
        root.info("VERBOSE mode enabled: HTTP details and connector traces active for debugging.")
    elif log_level_str == "TRACE":
        root_level = TRACE
        http_level = TRACE
        connectors_level = TRACE
    else:
        root_level = log_level
        http_level = logging.WARNING
        connectors_level = logging.DEBUG if log_level <= logging.DEBUG else log_level

    root.setLevel(root_level)
    logging.getLogger("httpcore").setLevel(http_level)
    logging.getLogger("httpcore.http11").setLevel(http_level)
    logging.getLogger("httpx").setLevel(http_level)
    logging.getLogger("jira_sync.connectors").setLevel(connectors_level)

    if log_level_str == "TRACE":
        root.trace("Trace logging enabled at startup (verbose details).")
    else:
        root.debug("Debug logging enabled at startup.")
