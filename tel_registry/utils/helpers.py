"""
TEL Helper Functions

Small formatting utilities shared by the CLI and reports.
"""

import base64
from datetime import datetime, timezone
from typing import Optional


def format_timestamp(dt: Optional[datetime] = None) -> str:
    """
    Format a datetime as ISO 8601 with timezone.

    Args:
        dt: Datetime to format. If None, uses current UTC time.
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    return dt.isoformat()


def truncate_hash(hash_str: str, length: int = 16) -> str:
    """
    Truncate a digest for display purposes.

    Args:
        hash_str: Full digest string, with or without algorithm prefix
        length: Number of hex characters to show

    Returns:
        str: Truncated digest with ellipsis
    """
    if not hash_str:
        return "-"
    if ':' in hash_str:
        _, hash_part = hash_str.split(':', 1)
    else:
        hash_part = hash_str

    if len(hash_part) <= length:
        return hash_part
    return f"{hash_part[:length]}..."


def describe_payload(payload: bytes, limit: int = 32) -> str:
    """Printable rendering of an opaque payload: text if it decodes, else base64."""
    if not payload:
        return "-"
    try:
        text = payload.decode('utf-8')
        if text.isprintable():
            return text if len(text) <= limit else f"{text[:limit]}..."
    except UnicodeDecodeError:
        pass
    encoded = base64.b64encode(payload).decode('ascii')
    return encoded if len(encoded) <= limit else f"{encoded[:limit]}..."
