"""Pure field extractors for provider call/conversation payloads.

Provider payloads arrive in several shapes (list API, webhook objects, older
webhook versions).  Each extractor here tries one candidate location and
returns ``str | None``; :func:`first_non_empty` composes them so the first
match wins.  Nothing in this module performs I/O.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, date, datetime
from typing import Any, Literal, TypeVar

T = TypeVar("T")

CommunicationType = Literal["phone_call", "sms", "email"]

Extractor = Callable[[Mapping[str, Any]], str | None]

_CONVERSATION_TYPE_MAP: dict[str, CommunicationType] = {
    "sms": "sms",
    "text": "sms",
    "email": "email",
    "phone": "phone_call",
    "call": "phone_call",
}

_MESSAGE_TEXT_KEYS = ("text", "body", "message", "preview", "summary", "content")


def as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def first_non_empty(source: Mapping[str, Any], extractors: Iterable[Extractor]) -> str | None:
    """Run *extractors* in order and return the first non-empty result."""
    for extractor in extractors:
        value = extractor(source)
        if value is not None:
            return value
    return None


def field(*path: str) -> Extractor:
    """Build an extractor that reads a non-empty string at a nested key path."""

    def _extract(source: Mapping[str, Any]) -> str | None:
        current: Any = source
        for key in path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        return as_non_empty_string(current)

    _extract.__name__ = "field_" + "_".join(path)
    return _extract


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

CALL_SUMMARY_EXTRACTORS: tuple[Extractor, ...] = (
    field("summary"),
    field("summary", "text"),
    field("summary", "content"),
    field("metadata", "summary"),
    field("metadata", "callSummary"),
    field("notes"),
)


def extract_call_summary(call: Mapping[str, Any]) -> str | None:
    return first_non_empty(call, CALL_SUMMARY_EXTRACTORS)


def _summary_lines(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [line for line in (as_non_empty_string(item) for item in value) if line]


def format_call_summary_payload(payload: Mapping[str, Any]) -> str | None:
    """Render a ``call.summary`` webhook body as bullet-list notes.

    Produces ``"Summary:\\n- ..."`` and ``"Next Steps:\\n- ..."`` sections,
    omitting empty ones, separated by a blank line.  Returns ``None`` when
    both sections are empty.
    """
    sections: list[str] = []
    summary = _summary_lines(payload.get("summary"))
    if summary:
        sections.append("Summary:\n- " + "\n- ".join(summary))
    next_steps = _summary_lines(payload.get("nextSteps"))
    if next_steps:
        sections.append("Next Steps:\n- " + "\n- ".join(next_steps))
    if not sections:
        return None
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Conversations / messages
# ---------------------------------------------------------------------------


def _text_from_value(value: Any) -> str | None:
    text = as_non_empty_string(value)
    if text is not None:
        return text
    if isinstance(value, Mapping):
        return as_non_empty_string(value.get("text"))
    if isinstance(value, list):
        parts: list[str] = []
        for item in value:
            part = as_non_empty_string(item)
            if part is None and isinstance(item, Mapping):
                part = as_non_empty_string(item.get("text"))
            if part is not None:
                parts.append(part)
        return "\n".join(parts) or None
    return None


def extract_message_text(message: Any) -> str | None:
    """Return the human-readable text of a message-shaped mapping."""
    if not isinstance(message, Mapping):
        return None
    for key in _MESSAGE_TEXT_KEYS:
        text = _text_from_value(message.get(key))
        if text is not None:
            return text
    return None


def map_conversation_type(value: Any) -> CommunicationType:
    if not isinstance(value, str):
        return "sms"
    return _CONVERSATION_TYPE_MAP.get(value.strip().lower(), "sms")


# ---------------------------------------------------------------------------
# Dates and batching
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = as_non_empty_string(value)
        if text is None:
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def timestamp_or_now(value: Any) -> datetime:
    """Like :func:`parse_timestamp` but substitutes the current time."""
    return parse_timestamp(value) or datetime.now(UTC)


def to_date_only(value: Any) -> str:
    """Return the UTC ``YYYY-MM-DD`` of *value*, or today's when unparsable."""
    return timestamp_or_now(value).date().isoformat()


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    return [list(items[index : index + size]) for index in range(0, len(items), size)]


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))
