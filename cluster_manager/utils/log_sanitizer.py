"""
Log sanitization utilities to prevent log injection attacks.
"""

import re
from typing import Any


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Sanitize a value for safe logging.

    Removes control characters and newlines that could be used to forge log
    lines, and truncates long values.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output (default 100)

    Returns:
        Sanitized string safe for logging
    """
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", str(value))

    # Limit length to prevent log flooding
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def sanitize_cluster_id(cluster_id: str) -> str:
    """
    Sanitize a cluster ID for logging.

    Cluster IDs only contain alphanumeric characters, hyphens and underscores.
    """
    return re.sub(r"[^a-zA-Z0-9_-]", "", str(cluster_id))[:64]


def mask_connection_string(connection_string: str) -> str:
    """Replace the password in a connection URL with ***."""
    return re.sub(r"(://[^:/@]+:)[^@]*@", r"\1***@", connection_string)
