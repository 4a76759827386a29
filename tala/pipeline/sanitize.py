"""Prompt-injection scrubbing for text that goes into a model prompt."""

from __future__ import annotations

import re

from tala.config import PIPELINE_USER_TEXT_MAX_CHARS

_IGNORE_INSTRUCTIONS = re.compile(r"(?i)(ignore|disregard)[^\n]*(instruction|prompt)s?")
_ROLE_MARKERS = re.compile(r"(?im)^\s*(system|assistant)\s*:")


def sanitize(text: str | None, max_length: int = PIPELINE_USER_TEXT_MAX_CHARS) -> str:
    """Redact common injection patterns and truncate."""
    if not text:
        return ""

    text = _IGNORE_INSTRUCTIONS.sub("[REDACTED]", text)
    text = _ROLE_MARKERS.sub("", text)
    return text.strip()[:max_length]
