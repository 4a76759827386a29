"""Defensive JSON extraction from model replies.

The model is asked for exactly one JSON object, but replies may be wrapped
in ```json fences, surrounded by prose, or carry a trailing comma. Order of
attempts:

1. Strip code fences, parse the remainder
2. Parse the span between the first "{" and the last "}"
3. Same span with trailing commas removed

Only a JSON object counts as success; anything else raises ParseError.
"""

from __future__ import annotations

import json
import re
from typing import Any

from tala.errors import ParseError
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter

logger = get_logger(__name__)

_FENCE_OPEN = re.compile(r"```(?:json|JSON)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```")
_TRAILING_COMMA = re.compile(r",\s*([\}\]])")


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences, keeping the fenced body."""
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def extract_json_object(text: str | None) -> dict[str, Any]:
    """
    Parse the single JSON object contained in a model reply.

    Raises:
        ParseError: If no JSON object can be recovered
    """
    if text is None or not text.strip():
        counter("llm.json.empty")
        raise ParseError("Empty model reply", raw_text=text)

    stripped = strip_code_fences(text)
    result = _loads_object(stripped)
    if result is not None:
        return result

    first = stripped.find("{")
    last = stripped.rfind("}")
    if first >= 0 and last > first:
        span = stripped[first : last + 1]
        result = _loads_object(span)
        if result is not None:
            counter("llm.json.brace_recovered")
            return result

        result = _loads_object(_TRAILING_COMMA.sub(r"\1", span))
        if result is not None:
            counter("llm.json.comma_repaired")
            logger.info("JSON repair succeeded (trailing commas removed)")
            return result

    counter("llm.json.unrecoverable")
    logger.warning("Could not recover JSON object from model reply (%d chars)", len(text))
    raise ParseError("Model reply did not contain a JSON object", raw_text=text)
