"""
Security utilities for free-text answer sanitization
"""
import re
from typing import Optional

from config.settings import MAX_TEXT_LENGTH

# Anything shaped like a markup tag
_TAG_RE = re.compile(r"<[^>]*>")

# URL schemes that can execute script when rendered as a link
_SCRIPT_SCHEME_RE = re.compile(r"(?:javascript|vbscript|data)\s*:", re.IGNORECASE)

_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_text(value: Optional[str], max_length: int = MAX_TEXT_LENGTH) -> str:
    """
    Sanitize user-entered free text before validation and persistence.

    Steps:
    - Strip markup tags
    - Remove script-like URL schemes (javascript:, vbscript:, data:)
    - Collapse runs of whitespace to single spaces and trim
    - Clamp to max_length

    Tag and scheme removal repeat until nothing changes, so nested input
    like "<scr<b>ipt>" cannot reassemble. The result is stable:
    sanitize_text(sanitize_text(x)) == sanitize_text(x).

    Args:
        value: Raw text (None is treated as empty)
        max_length: Maximum length of the result

    Returns:
        Sanitized text, possibly empty
    """
    if not value:
        return ""

    text = value.replace("\x00", "")

    while True:
        cleaned = _SCRIPT_SCHEME_RE.sub("", _TAG_RE.sub("", text))
        if cleaned == text:
            break
        text = cleaned

    text = _WHITESPACE_RE.sub(" ", text).strip()

    if len(text) > max_length:
        # Clamping can expose a trailing space
        text = text[:max_length].rstrip()

    return text


def sanitized_length(value: Optional[str]) -> int:
    """Length of the text after sanitization; used by the minimum-length gates."""
    return len(sanitize_text(value))
