"""
Logging configuration for inkdoodle.

This module installs the loguru sinks used by the desktop app and the CLI, and
provides helpers that keep creator details and long text bodies out of the logs.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger


LOG_LEVEL_ENV = "INKDOODLE_LOG_LEVEL"

# Text bodies longer than this are truncated in parameter logs
TRUNCATE_LENGTH = int(os.environ.get("INKDOODLE_LOG_TRUNCATE_LENGTH", "80"))

SENSITIVE_KEYS = {
    "api_key", "password", "secret", "token", "auth", "credential",
    "email", "phone", "address"
}


def truncate_for_log(value: Any, max_length: Optional[int] = None) -> Any:
    """
    Truncate long strings for logging.

    Non-string values are returned unchanged.
    """
    if max_length is None:
        max_length = TRUNCATE_LENGTH
    if not isinstance(value, str) or len(value) <= max_length:
        return value
    return f"{value[:max_length]}... ({len(value)} chars)"


def mask_sensitive_fields(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Mask sensitive fields in a row or metadata dict.

    Args:
        row: Dictionary to mask

    Returns:
        A copy with sensitive values replaced by ``***MASKED***``
    """
    if not row:
        return row
    masked = dict(row)
    for key in masked:
        if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
            masked[key] = "***MASKED***"
    return masked


def loggable_params(row: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive keys and truncate long bodies, for logging a statement's parameters."""
    return {key: truncate_for_log(value) for key, value in (mask_sensitive_fields(row) or {}).items()}


def configure_logging(level: Optional[str] = None,
                      log_file: Optional[Union[str, Path]] = None,
                      console: bool = True) -> None:
    """
    Configure loguru sinks for the application.

    This should be called once at startup. The level falls back to the
    INKDOODLE_LOG_LEVEL environment variable, then INFO.
    """
    level = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()

    logger.remove()
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            sink=str(log_path),
            level=level,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True
        )

    if console:
        logger.add(
            sink=sys.stderr,
            level=level,
            colorize=True
        )

    logger.debug(f"Logging configured: level={level}, file={log_file}, console={console}")
