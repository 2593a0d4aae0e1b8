"""Logging configuration for postal-clerk.

This module provides structlog configuration and utility functions
for sanitizing log output.
"""

import logging
import re
import sys
from typing import Any

import structlog


def sanitize_for_log(text: str, max_length: int = 100) -> str:
    """Remove control characters and limit length for safe logging.

    Args:
        text: The text to sanitize.
        max_length: Maximum length of returned string.

    Returns:
        Sanitized text safe for logging.
    """
    if not text:
        return ""
    # ANSI codes first, before the ESC byte goes with the control chars
    text = re.sub(r"\x1b\[[0-9;]*m", "", text)
    text = re.sub(r"[\x00-\x1f\x7f]", "", text)
    return text[:max_length]


def configure_logging(json_format: bool = False, debug: bool = False, force: bool = False) -> bool:
    """Configure structlog for the process.

    Logging is process-wide and must be configured once, before first use.
    Later calls are ignored unless ``force`` is set.

    Args:
        json_format: If True, output JSON logs.
        debug: If True, enable DEBUG level logging. Otherwise only
            warnings and errors are shown.
        force: Reconfigure even if logging was already set up.

    Returns:
        True if this call configured logging, False if it was a no-op.
    """
    if structlog.is_configured() and not force:
        return False

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.WARNING
        ),
        context_class=dict,
        # stdout belongs to command output
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    return True
