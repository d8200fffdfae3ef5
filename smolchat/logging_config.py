"""
Logging configuration for smolchat.

Installs loguru sinks from the [logging] config section and keeps user
queries short in log lines.
"""

import sys
from typing import Any, Dict, Optional

from loguru import logger

from .config import get_log_file_path, get_section

# Query truncation length, overridden by configure_logging()
QUERY_TRUNCATE_LENGTH = 50


def truncate_query(query: str, max_length: Optional[int] = None) -> str:
    """
    Truncate query for logging.

    Args:
        query: Query string to truncate
        max_length: Maximum length (defaults to QUERY_TRUNCATE_LENGTH)

    Returns:
        Truncated query with ellipsis if needed
    """
    if max_length is None:
        max_length = QUERY_TRUNCATE_LENGTH

    if len(query) <= max_length:
        return query

    return f"{query[:max_length]}..."


def configure_logging(config: Optional[Dict[str, Any]] = None) -> None:
    """
    Configure loguru sinks for the application.

    This should be called once at startup.
    """
    global QUERY_TRUNCATE_LENGTH

    general = get_section("general", config)
    logging_section = get_section("logging", config)
    level = str(general.get("log_level", "INFO")).upper()
    QUERY_TRUNCATE_LENGTH = int(logging_section.get("truncate_queries_at", QUERY_TRUNCATE_LENGTH))

    logger.remove()  # Remove default handler
    log_file = get_log_file_path(config)
    logger.add(
        sink=str(log_file),
        level=level,
        rotation=logging_section.get("log_rotation", "10 MB"),
        retention=logging_section.get("log_retention", "7 days"),
        enqueue=True,
    )

    if logging_section.get("console_logging", False):
        logger.add(sink=sys.stderr, level=level, colorize=True)

    logger.info(f"Logging configured: level={level}, file={log_file}")
