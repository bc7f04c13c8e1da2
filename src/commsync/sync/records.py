"""Build and upsert canonical communication records.

Calls are keyed by the OpenPhone call id, conversations by the conversation
id.  Writing the same external id twice updates the existing record in place
(notes, date and event timestamp), so webhook retries and overlapping poll
windows never produce duplicates.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from commsync.core.metrics import SyncMetrics
from commsync.storage.repositories import (
    Client,
    CommunicationRecordInput,
    CommunicationRepository,
    UpsertAction,
    UpsertResult,
)
from commsync.sync.extractors import (
    as_mapping,
    as_non_empty_string,
    extract_call_summary,
    extract_message_text,
    map_conversation_type,
    parse_timestamp,
    timestamp_or_now,
)
from commsync.sync.resolver import ExternalContact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordOutcome:
    """Result of processing one provider record end to end."""

    action: UpsertAction
    id: str
    client_created: bool = False


def call_id_of(call: Mapping[str, Any]) -> str | None:
    return as_non_empty_string(call.get("id"))


def conversation_id_of(conversation: Mapping[str, Any]) -> str | None:
    return as_non_empty_string(conversation.get("conversationId")) or as_non_empty_string(
        conversation.get("id")
    )


def _first_timestamp(source: Mapping[str, Any], *keys: str) -> datetime | None:
    for key in keys:
        parsed = parse_timestamp(source.get(key))
        if parsed is not None:
            return parsed
    return None


def build_call_record(
    call: Mapping[str, Any],
    *,
    client: Client,
    contact: ExternalContact,
    source: str,
    notes_override: str | None = None,
) -> CommunicationRecordInput | None:
    call_id = call_id_of(call)
    if call_id is None or client.id is None:
        return None

    communication_date = timestamp_or_now(
        _first_timestamp(call, "startedAt", "endedAt", "createdAt")
    ).date()
    event_timestamp = timestamp_or_now(_first_timestamp(call, "endedAt", "startedAt", "createdAt"))

    direction = as_non_empty_string(call.get("direction"))
    preposition = "to" if direction in ("outbound", "outgoing") else "from"
    notes = (
        notes_override
        or extract_call_summary(call)
        or f"Phone call {preposition} {contact.name or client.name}"
    )

    return CommunicationRecordInput(
        client_id=client.id,
        client_name=client.name,
        communication_date=communication_date,
        communication_type="phone_call",
        subject=f"Phone call with {contact.name or contact.phone or client.name}",
        notes=notes,
        source=source,
        external_call_id=call_id,
        external_event_timestamp=event_timestamp,
    )


def build_conversation_record(
    conversation: Mapping[str, Any],
    *,
    client: Client,
    source: str,
) -> CommunicationRecordInput | None:
    conversation_id = conversation_id_of(conversation)
    if conversation_id is None or client.id is None:
        return None

    last_message = as_mapping(conversation.get("lastMessage"))
    latest = _first_timestamp(last_message, "createdAt") or _first_timestamp(
        conversation, "lastActivityAt", "updatedAt", "createdAt"
    )
    event_timestamp = timestamp_or_now(latest)
    communication_date = event_timestamp.date()
    communication_type = map_conversation_type(conversation.get("type"))
    title = as_non_empty_string(conversation.get("title")) or as_non_empty_string(
        conversation.get("name")
    )

    notes = (
        extract_message_text(last_message)
        or extract_message_text(conversation)
        or title
        or f"Conversation update received on {communication_date.isoformat()}"
    )

    return CommunicationRecordInput(
        client_id=client.id,
        client_name=client.name,
        communication_date=communication_date,
        communication_type=communication_type,
        subject=title or f"{communication_type} conversation",
        notes=notes,
        source=source,
        external_conversation_id=conversation_id,
        external_event_timestamp=event_timestamp,
    )


class CommunicationRecordUpserter:
    """Turn provider records into idempotent communication upserts."""

    def __init__(
        self,
        repository: CommunicationRepository,
        *,
        source: str,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._repository = repository
        self._source = source
        self._metrics = metrics or SyncMetrics()

    async def upsert_call(
        self,
        call: Mapping[str, Any],
        *,
        client: Client,
        contact: ExternalContact,
        notes_override: str | None = None,
    ) -> UpsertResult | None:
        record = build_call_record(
            call,
            client=client,
            contact=contact,
            source=self._source,
            notes_override=notes_override,
        )
        if record is None:
            logger.warning("Skipping call without an id for client %s", client.id)
            return None
        return await self._write(record, kind="call")

    async def upsert_conversation(
        self,
        conversation: Mapping[str, Any],
        *,
        client: Client,
    ) -> UpsertResult | None:
        record = build_conversation_record(conversation, client=client, source=self._source)
        if record is None:
            logger.warning("Skipping conversation without an id for client %s", client.id)
            return None
        return await self._write(record, kind="conversation")

    async def _write(self, record: CommunicationRecordInput, *, kind: str) -> UpsertResult:
        result = await self._repository.upsert_communication(record)
        self._metrics.upsert(kind, result.action)
        logger.debug(
            "%s %s communication %s (call=%s conversation=%s)",
            result.action.capitalize(),
            kind,
            result.id,
            record.external_call_id,
            record.external_conversation_id,
        )
        return result
