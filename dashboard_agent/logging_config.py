"""
Logging Configuration Module

Centralized logging setup for the dashboard agent. Intents and tool
parameters are logged by the planner and the execution controller, so every
handler installed here carries the PII redaction filter.
"""

import logging
import sys
from typing import Optional
from dashboard_agent.security.pii_redactor import PIIRedactionFilter


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    enable_pii_redaction: bool = True
) -> logging.Logger:
    """
    Configure application logging with PII redaction.

    Call once at application startup (see ``dashboard_agent.api``).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom format string. If None, uses the default structured format.
        enable_pii_redaction: Whether to install the PII redaction filter (default: True)

    Returns:
        Configured root logger instance
    """
    if log_format is None:
        log_format = (
            '%(asctime)s - %(name)s - %(levelname)s - '
            '%(filename)s:%(lineno)d - %(message)s'
        )

    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(log_format, datefmt='%Y-%m-%d %H:%M:%S'))

    if enable_pii_redaction:
        console_handler.addFilter(PIIRedactionFilter())

    root_logger.addHandler(console_handler)

    if enable_pii_redaction:
        root_logger.info("PII redaction filter enabled for all logs")

    logging.getLogger("dashboard_agent").setLevel(level)

    return root_logger


def get_logger(name: str = "dashboard_agent") -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Loggers inherit the redaction filter through the root handler installed
    by setup_logging().
    """
    return logging.getLogger(name)


def add_pii_filter_to_existing_loggers() -> None:
    """
    Add the PII redaction filter to every handler already registered.

    Useful when the app is embedded in a host (e.g. uvicorn) that installed
    its own handlers before setup_logging() ran.
    """
    loggers = [logging.getLogger(name) for name in logging.root.manager.loggerDict]
    loggers.append(logging.getLogger())

    pii_filter = PIIRedactionFilter()
    for logger in loggers:
        for handler in getattr(logger, "handlers", []):
            if not any(isinstance(f, PIIRedactionFilter) for f in handler.filters):
                handler.addFilter(pii_filter)
