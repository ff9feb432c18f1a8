"""
Input validation utilities for booking requests.
"""

import re
from typing import Optional

from utils.constants import MAX_NOTES_LENGTH, MAX_SERVICE_NAME_LENGTH


def validate_service_name(name: str) -> bool:
    """Check that a service name is non-blank and not overly long."""
    if not name or not isinstance(name, str):
        return False
    return 0 < len(name.strip()) <= MAX_SERVICE_NAME_LENGTH


def sanitize_text(text: str, max_length: Optional[int] = None) -> str:
    """
    Sanitize user input text.

    Args:
        text: Input text
        max_length: Optional maximum length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Remove control characters except newlines and tabs
    sanitized = re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", str(text))

    sanitized = sanitized.strip()

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized


def sanitize_notes(notes: Optional[str]) -> Optional[str]:
    """Sanitize appointment notes; blank notes become None."""
    if notes is None:
        return None
    cleaned = sanitize_text(notes, max_length=MAX_NOTES_LENGTH)
    return cleaned or None
