"""Webhook event normalization and parsing.

OpenPhone has delivered webhook bodies in more than one envelope over time::

    {"type": "call.completed", "data": {"object": {...}}}
    {"object": {"object": "event", "type": "message.received", "data": {...}}}
    {"event": "call.completed", "id": "AC...", ...}            # flat

:func:`normalize_event` flattens any of these into an ``(event_type, payload,
data)`` triple.  :func:`parse_event` goes one step further and returns a
tagged union of the event variants the sync engine knows how to handle,
together with human-readable diagnostics for anything it had to drop.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from commsync.sync.extractors import as_non_empty_string

EventKind = Literal["call_summary", "call", "conversation", "unknown"]

_EVENT_TYPE_KEYS = ("type", "eventType", "event")


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical ``{event_type, payload, data}`` view of a webhook body."""

    event_type: str | None
    payload: dict[str, Any]
    data: Any


def _unwrap_envelope(event: Mapping[str, Any]) -> Mapping[str, Any]:
    inner = event.get("object")
    if isinstance(inner, Mapping) and inner.get("object") == "event":
        return inner
    return event


def normalize_event(event: Any) -> NormalizedEvent:
    if not isinstance(event, Mapping):
        return NormalizedEvent(event_type=None, payload={}, data=event)

    envelope = _unwrap_envelope(event)

    event_type: str | None = None
    for key in _EVENT_TYPE_KEYS:
        event_type = as_non_empty_string(envelope.get(key)) or as_non_empty_string(event.get(key))
        if event_type is not None:
            break

    data = envelope.get("data")
    if data is None:
        data = event.get("data")
    if data is None:
        data = envelope

    if isinstance(data, Mapping):
        inner = data.get("object")
        payload = dict(inner) if isinstance(inner, Mapping) else dict(data)
    else:
        payload = {}

    return NormalizedEvent(event_type=event_type, payload=payload, data=data)


def classify_event_type(event_type: str | None) -> EventKind:
    """Dispatch rule: case-insensitive substring match, first match wins."""
    if not event_type:
        return "unknown"
    lowered = event_type.lower()
    if "call.summary" in lowered:
        return "call_summary"
    if "call" in lowered:
        return "call"
    if "message" in lowered or "conversation" in lowered:
        return "conversation"
    return "unknown"


# ---------------------------------------------------------------------------
# Tagged event variants
# ---------------------------------------------------------------------------


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_type: str | None = None


class CallEvent(_EventBase):
    kind: Literal["call"] = "call"
    call: dict[str, Any]


class CallSummaryEvent(_EventBase):
    kind: Literal["call_summary"] = "call_summary"
    call_id: str
    summary: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)


class ConversationEvent(_EventBase):
    kind: Literal["conversation"] = "conversation"
    conversation: dict[str, Any]


class UnknownEvent(_EventBase):
    kind: Literal["unknown"] = "unknown"


WebhookEvent = Annotated[
    CallEvent | CallSummaryEvent | ConversationEvent | UnknownEvent,
    Field(discriminator="kind"),
]


@dataclass
class ParsedEvent:
    event: WebhookEvent
    diagnostics: list[str] = field(default_factory=list)


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [item for item in (as_non_empty_string(v) for v in value) if item]


def parse_event(raw: Any) -> ParsedEvent:
    """Parse a raw webhook body into a :data:`WebhookEvent` variant."""
    diagnostics: list[str] = []
    if not isinstance(raw, Mapping):
        diagnostics.append("webhook body is not a JSON object")
        return ParsedEvent(event=UnknownEvent(), diagnostics=diagnostics)

    normalized = normalize_event(raw)
    event_type = normalized.event_type
    if event_type is None:
        diagnostics.append("webhook event is missing an event type")

    kind = classify_event_type(event_type)
    payload = normalized.payload

    if kind == "call_summary":
        call_id = as_non_empty_string(payload.get("callId")) or as_non_empty_string(
            payload.get("call_id")
        )
        if call_id is None:
            diagnostics.append(f"{event_type} event is missing a call id")
            return ParsedEvent(event=UnknownEvent(event_type=event_type), diagnostics=diagnostics)
        return ParsedEvent(
            event=CallSummaryEvent(
                event_type=event_type,
                call_id=call_id,
                summary=_string_list(payload.get("summary")),
                next_steps=_string_list(payload.get("nextSteps")),
                payload=payload,
            ),
            diagnostics=diagnostics,
        )

    if kind == "call":
        if as_non_empty_string(payload.get("id")) is None:
            diagnostics.append(f"{event_type} event is missing a call id")
            return ParsedEvent(event=UnknownEvent(event_type=event_type), diagnostics=diagnostics)
        return ParsedEvent(event=CallEvent(event_type=event_type, call=payload), diagnostics=diagnostics)

    if kind == "conversation":
        conversation_id = as_non_empty_string(payload.get("conversationId")) or as_non_empty_string(
            payload.get("id")
        )
        if conversation_id is None:
            diagnostics.append(f"{event_type} event is missing a conversation id")
            return ParsedEvent(event=UnknownEvent(event_type=event_type), diagnostics=diagnostics)
        return ParsedEvent(
            event=ConversationEvent(event_type=event_type, conversation=payload),
            diagnostics=diagnostics,
        )

    return ParsedEvent(event=UnknownEvent(event_type=event_type), diagnostics=diagnostics)
