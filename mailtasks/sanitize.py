"""
Sanitizers for untrusted email content before it reaches the LLM or storage.
"""

import html
import re
from typing import Optional

MAX_BODY_LENGTH = 50000
MAX_SUBJECT_LENGTH = 500

_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def strip_html(text: str) -> str:
    text = _STYLE_RE.sub("", text)
    text = _SCRIPT_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def sanitize_email_content(content: Optional[str]) -> str:
    """Strip markup, escape special characters, and cap the length of an email body."""
    if not content:
        return ""
    sanitized = html.escape(strip_html(content), quote=True)
    return _truncate(sanitized, MAX_BODY_LENGTH)


def sanitize_email_subject(subject: Optional[str]) -> str:
    if not subject:
        return "(No subject)"
    sanitized = html.escape(strip_html(subject), quote=True)
    return _truncate(sanitized, MAX_SUBJECT_LENGTH)
