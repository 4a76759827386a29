"""
Event timestamp resolution.

Precedence when deciding when an extracted event happened:

1. An explicit date found in attachment content (e.g. "Visit Date: 2025-11-12")
2. A relative-time phrase resolved against the caller's local time
   ("30 minutes ago", "this morning at 8", "at 2pm", "yesterday at 3pm")
3. A bare date, which means midnight of that date

With nothing to go on, the event happened "now". All results are naive
local wall-clock datetimes truncated to whole seconds.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Any

from tala.pipeline.types import AttachmentInterpretation

_MONTHS = {
    name: index
    for index, names in enumerate(
        [
            ("jan", "january"),
            ("feb", "february"),
            ("mar", "march"),
            ("apr", "april"),
            ("may",),
            ("jun", "june"),
            ("jul", "july"),
            ("aug", "august"),
            ("sep", "sept", "september"),
            ("oct", "october"),
            ("nov", "november"),
            ("dec", "december"),
        ],
        start=1,
    )
    for name in names
}

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_NAMED_DATE = re.compile(
    r"\b(" + "|".join(sorted(_MONTHS, key=len, reverse=True)) + r")\.?\s+(\d{1,2})(?:st|nd|rd|th)?(?:,?\s+(\d{4}))?\b",
    re.IGNORECASE,
)

_AGO = re.compile(
    r"\b(\d+|an?|one|half an)\s*(minutes?|mins?|hours?|hrs?|days?)\s+ago\b",
    re.IGNORECASE,
)
_JUST_NOW = re.compile(r"\b(just now|right now|just finished|a moment ago)\b", re.IGNORECASE)
_CLOCK = re.compile(
    r"\b(?:at\s+|@\s*)?(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)(?=\W|$)"
    r"|\b(?:at|@)\s*(\d{1,2})(?::(\d{2}))?\b"
    r"|\b(\d{1,2}):(\d{2})\b",
    re.IGNORECASE,
)
_YESTERDAY = re.compile(r"\b(yesterday|last night)\b", re.IGNORECASE)
_MORNING = re.compile(r"\b(morning|breakfast)\b", re.IGNORECASE)
_AFTERNOON = re.compile(r"\b(afternoon|evening|tonight|night|dinner)\b", re.IGNORECASE)
_SEGMENT_BREAK = re.compile(r"[,;]|\.\s+|\b(?:then|and|after that|later)\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z]+")


def to_seconds(value: datetime) -> datetime:
    """Drop sub-second precision."""
    return value.replace(microsecond=0)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an ISO8601 timestamp from model output.

    Timezone offsets are dropped (the model is told to use local time).
    Returns None for anything unparseable.
    """
    if isinstance(value, datetime):
        return to_seconds(value.replace(tzinfo=None))
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_seconds(parsed.replace(tzinfo=None))


def find_explicit_date(text: str) -> date | None:
    """First calendar date mentioned in text (ISO, US numeric, or month name)."""
    if not text:
        return None

    candidates: list[tuple[int, date]] = []

    for match in _ISO_DATE.finditer(text):
        year, month, day = (int(g) for g in match.groups())
        if parsed := _safe_date(year, month, day):
            candidates.append((match.start(), parsed))

    for match in _US_DATE.finditer(text):
        month, day, year = (int(g) for g in match.groups())
        if parsed := _safe_date(year, month, day):
            candidates.append((match.start(), parsed))

    for match in _NAMED_DATE.finditer(text):
        month = _MONTHS[match.group(1).lower()]
        day = int(match.group(2))
        if match.group(3) is None:
            continue
        if parsed := _safe_date(int(match.group(3)), month, day):
            candidates.append((match.start(), parsed))

    if not candidates:
        return None
    return min(candidates, key=lambda c: c[0])[1]


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def attachment_date(interpretation: AttachmentInterpretation | None) -> date | None:
    """Explicit date from attachment key findings first, then extracted text."""
    if interpretation is None:
        return None
    for summary in interpretation.files:
        for finding in summary.key_findings:
            if found := find_explicit_date(finding):
                return found
    for summary in interpretation.files:
        if found := find_explicit_date(summary.extracted_text):
            return found
    return None


def find_clock_time(text: str) -> time | None:
    """Clock time mentioned in text ("at 2pm", "14:30", "this morning at 8")."""
    if not text:
        return None

    match = _CLOCK.search(text)
    if not match:
        return None

    if match.group(1) is not None:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2) or 0), match.group(3)
    elif match.group(4) is not None:
        hour, minute, meridiem = int(match.group(4)), int(match.group(5) or 0), None
    else:
        hour, minute, meridiem = int(match.group(6)), int(match.group(7)), None

    if minute > 59 or hour > 23:
        return None

    if meridiem:
        is_pm = meridiem.lower().startswith("p")
        if hour > 12:
            return None
        if is_pm and hour < 12:
            hour += 12
        elif not is_pm and hour == 12:
            hour = 0
    elif hour < 12 and _AFTERNOON.search(text) and not _MORNING.search(text):
        hour += 12

    return time(hour, minute)


def resolve_relative(text: str, now: datetime) -> datetime | None:
    """Resolve a relative-time phrase against `now`; None if there is none."""
    if not text:
        return None

    if match := _AGO.search(text):
        raw_amount, unit = match.group(1).lower(), match.group(2).lower()
        if raw_amount == "half an":
            amount = 0.5
        elif raw_amount in ("a", "an", "one"):
            amount = 1.0
        else:
            amount = float(raw_amount)
        if unit.startswith("m"):
            delta = timedelta(minutes=amount)
        elif unit.startswith("h"):
            delta = timedelta(hours=amount)
        else:
            delta = timedelta(days=amount)
        return to_seconds(now - delta)

    if _JUST_NOW.search(text):
        return to_seconds(now)

    clock = find_clock_time(text)
    if clock is None:
        if _YESTERDAY.search(text):
            return to_seconds(now - timedelta(days=1))
        return None

    day = now.date()
    if _YESTERDAY.search(text):
        day -= timedelta(days=1)
        return datetime.combine(day, clock)

    resolved = datetime.combine(day, clock)
    # "at 11pm" said at 7am means last night
    if resolved > now:
        resolved -= timedelta(days=1)
    return resolved


def has_time_phrase(text: str) -> bool:
    return bool(_AGO.search(text) or _JUST_NOW.search(text) or find_clock_time(text))


def time_segments(text: str) -> list[str]:
    """Clauses of a message that each carry their own time phrase."""
    if not text:
        return []
    return [part.strip() for part in _SEGMENT_BREAK.split(text) if part.strip() and has_time_phrase(part)]


def segment_for(text: str, keywords: set[str], index: int) -> str | None:
    """
    Pick the clause of `text` whose time phrase belongs to one event.

    The clause sharing the most words with `keywords` wins; with no overlap the
    n-th timed clause goes to the n-th event. None when the message has fewer
    than two timed clauses (the whole message then applies to every event).
    """
    segments = time_segments(text)
    if len(segments) < 2:
        return None

    words = {word.lower() for word in keywords if len(word) > 2}
    best, best_score = None, 0
    for segment in segments:
        score = len(words & set(_WORD.findall(segment.lower())))
        if score > best_score:
            best, best_score = segment, score
    if best is None:
        if index >= len(segments):
            return None
        best = segments[index]

    # Keep "yesterday" from another clause
    if _YESTERDAY.search(text) and not _YESTERDAY.search(best):
        best = "yesterday " + best
    return best


def resolve_event_time(
    now: datetime,
    model_value: Any = None,
    texts: tuple[str, ...] = (),
    attachment_day: date | None = None,
) -> datetime:
    """
    Decide one candidate's timestamp.

    Args:
        now: Caller's local time
        model_value: The timestamp the model proposed (may be missing or invalid)
        texts: Text to scan when the model gave nothing usable, most specific
            first (the candidate's summary, its clause of the message, then
            the whole message)
        attachment_day: Explicit date found in attachment content
    """
    proposed = parse_timestamp(model_value)

    if attachment_day is not None:
        # The attachment's date wins; keep whatever time of day we know
        if proposed is not None:
            return datetime.combine(attachment_day, proposed.time())
        for text in texts:
            if clock := find_clock_time(text):
                return datetime.combine(attachment_day, clock)
        return datetime.combine(attachment_day, time(0, 0))

    if proposed is not None:
        return proposed

    for text in texts:
        if relative := resolve_relative(text, now):
            return relative

    for text in texts:
        if bare := find_explicit_date(text):
            return datetime.combine(bare, time(0, 0))

    return to_seconds(now)
