"""Tests for webhook event normalization and parsing."""

from __future__ import annotations

import pytest

from commsync.sync.events import (
    CallEvent,
    CallSummaryEvent,
    ConversationEvent,
    UnknownEvent,
    classify_event_type,
    normalize_event,
    parse_event,
)

pytestmark = pytest.mark.unit


class TestNormalizeEvent:
    def test_data_object_envelope(self) -> None:
        normalized = normalize_event(
            {"type": "call.completed", "data": {"object": {"id": "c-1", "status": "completed"}}}
        )
        assert normalized.event_type == "call.completed"
        assert normalized.payload == {"id": "c-1", "status": "completed"}

    def test_nested_event_object_envelope(self) -> None:
        normalized = normalize_event(
            {
                "object": {
                    "object": "event",
                    "type": "message.received",
                    "data": {"object": {"id": "m-1", "conversationId": "conv-1"}},
                }
            }
        )
        assert normalized.event_type == "message.received"
        assert normalized.payload["conversationId"] == "conv-1"

    def test_flat_body_with_event_key(self) -> None:
        normalized = normalize_event({"event": "call.completed", "id": "c-2"})
        assert normalized.event_type == "call.completed"
        assert normalized.payload == {"event": "call.completed", "id": "c-2"}

    def test_data_without_object(self) -> None:
        normalized = normalize_event({"eventType": "call.ringing", "data": {"id": "c-3"}})
        assert normalized.event_type == "call.ringing"
        assert normalized.payload == {"id": "c-3"}

    def test_non_mapping(self) -> None:
        normalized = normalize_event(["not", "an", "object"])
        assert normalized.event_type is None
        assert normalized.payload == {}


class TestClassifyEventType:
    @pytest.mark.parametrize(
        ("event_type", "kind"),
        [
            ("call.summary.completed", "call_summary"),
            ("CALL.SUMMARY.COMPLETED", "call_summary"),
            ("call.completed", "call"),
            ("call.recording.completed", "call"),
            ("message.received", "conversation"),
            ("conversation.updated", "conversation"),
            ("contact.updated", "unknown"),
            (None, "unknown"),
            ("", "unknown"),
        ],
    )
    def test_first_match_wins(self, event_type: str | None, kind: str) -> None:
        assert classify_event_type(event_type) == kind


class TestParseEvent:
    def test_call_summary(self) -> None:
        parsed = parse_event(
            {
                "type": "call.summary.completed",
                "data": {
                    "object": {
                        "callId": "c-42",
                        "summary": ["Discussed renewal"],
                        "nextSteps": ["Send quote"],
                    }
                },
            }
        )
        assert isinstance(parsed.event, CallSummaryEvent)
        assert parsed.event.call_id == "c-42"
        assert parsed.event.summary == ["Discussed renewal"]
        assert parsed.event.next_steps == ["Send quote"]
        assert parsed.event.payload["callId"] == "c-42"
        assert parsed.diagnostics == []

    def test_call_summary_without_call_id_is_dropped(self) -> None:
        parsed = parse_event({"type": "call.summary.completed", "data": {"object": {}}})
        assert isinstance(parsed.event, UnknownEvent)
        assert parsed.event.event_type == "call.summary.completed"
        assert parsed.diagnostics == ["call.summary.completed event is missing a call id"]

    def test_call(self) -> None:
        parsed = parse_event({"type": "call.completed", "data": {"object": {"id": "c-1"}}})
        assert isinstance(parsed.event, CallEvent)
        assert parsed.event.kind == "call"
        assert parsed.event.call == {"id": "c-1"}

    def test_call_without_id(self) -> None:
        parsed = parse_event({"type": "call.completed", "data": {"object": {"status": "done"}}})
        assert isinstance(parsed.event, UnknownEvent)
        assert parsed.diagnostics

    def test_message_uses_conversation_id(self) -> None:
        parsed = parse_event(
            {
                "type": "message.received",
                "data": {"object": {"id": "m-1", "conversationId": "conv-9", "text": "hi"}},
            }
        )
        assert isinstance(parsed.event, ConversationEvent)
        assert parsed.event.conversation["conversationId"] == "conv-9"

    def test_unhandled_type_has_no_diagnostics(self) -> None:
        parsed = parse_event({"type": "contact.updated", "data": {"object": {"id": "ct-1"}}})
        assert isinstance(parsed.event, UnknownEvent)
        assert parsed.event.event_type == "contact.updated"
        assert parsed.diagnostics == []

    def test_missing_type(self) -> None:
        parsed = parse_event({"data": {"object": {"id": "x"}}})
        assert isinstance(parsed.event, UnknownEvent)
        assert parsed.diagnostics == ["webhook event is missing an event type"]

    def test_non_object_body(self) -> None:
        parsed = parse_event("oops")
        assert isinstance(parsed.event, UnknownEvent)
        assert parsed.diagnostics == ["webhook body is not a JSON object"]
