"""External contact extraction and client resolution.

Resolution order for an inbound :class:`ExternalContact`:

1. Existing client linked by OpenPhone contact id
2. Client with the same (whitespace-normalized) name
3. Client with the same normalized phone number
4. Otherwise enrich from OpenPhone and create a new client

When a client is matched by name or phone and the inbound contact carries an
OpenPhone contact id the client lacks, the id is attached write-through.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from typing import Any

from commsync.core.metrics import SyncMetrics
from commsync.openphone.client import OpenPhoneError, TelephonyProvider
from commsync.phone import normalize_phone_number, phones_match
from commsync.storage.repositories import Client, ClientRepository, NewClient
from commsync.sync.errors import ClientResolutionError
from commsync.sync.extractors import as_mapping, as_non_empty_string

logger = logging.getLogger(__name__)

UNKNOWN_CONTACT_NAME = "Unknown OpenPhone Contact"
CONTACT_SEARCH_LIMIT = 10


@dataclass(frozen=True)
class ExternalContact:
    """A person as OpenPhone knows them; not yet linked to a client."""

    name: str | None = None
    phone: str | None = None
    contact_id: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class ResolvedClient:
    client: Client
    created: bool


def normalize_name(value: str | None) -> str | None:
    if value is None:
        return None
    collapsed = " ".join(value.split())
    return collapsed or None


def _pick_participant(
    participants: list[Any],
    own_numbers: Collection[str],
) -> Mapping[str, Any] | str | None:
    candidates = [
        p
        for p in participants
        if not (isinstance(p, str) and normalize_phone_number(p) in own_numbers)
    ]
    for participant in candidates:
        if isinstance(participant, Mapping) and participant.get("type") != "user":
            return participant
        if isinstance(participant, str):
            return participant
    if candidates:
        return candidates[0]
    return participants[0] if participants else None


def _counterpart_number(source: Mapping[str, Any]) -> str | None:
    """Return the non-workspace number of a message-shaped payload."""
    direction = as_non_empty_string(source.get("direction"))
    recipients = source.get("to")
    if isinstance(recipients, str):
        recipients = [recipients]
    first_recipient = (
        as_non_empty_string(recipients[0]) if isinstance(recipients, list) and recipients else None
    )
    sender = as_non_empty_string(source.get("from"))
    if direction == "outgoing" or direction == "outbound":
        return first_recipient
    return sender or first_recipient


def extract_contact(
    source: Mapping[str, Any],
    *,
    own_numbers: Collection[str] = (),
) -> ExternalContact:
    """Pull the external party out of a call, conversation, or message payload.

    Fields of an explicit ``contact`` mapping win; otherwise the first
    participant whose ``type`` is not ``"user"`` is used (falling back to the
    first participant).  Plain-string participants are treated as phone
    numbers, skipping the workspace's own numbers.
    """
    contact = as_mapping(source.get("contact"))
    participants = source.get("participants")
    participant = (
        _pick_participant(participants, own_numbers) if isinstance(participants, list) else None
    )

    participant_name = participant_phone = participant_contact_id = None
    if isinstance(participant, Mapping):
        participant_name = as_non_empty_string(participant.get("displayName")) or (
            as_non_empty_string(participant.get("name"))
        )
        participant_phone = as_non_empty_string(participant.get("phoneNumber")) or (
            as_non_empty_string(participant.get("phone"))
        )
        participant_contact_id = as_non_empty_string(participant.get("contactId"))
    elif isinstance(participant, str):
        participant_phone = as_non_empty_string(participant)

    name = (
        as_non_empty_string(contact.get("displayName"))
        or as_non_empty_string(contact.get("name"))
        or participant_name
    )
    phone = (
        as_non_empty_string(contact.get("phoneNumber"))
        or participant_phone
        or (_counterpart_number(source) if participant is None else None)
    )
    contact_id = as_non_empty_string(contact.get("id")) or participant_contact_id
    email = as_non_empty_string(contact.get("email"))

    return ExternalContact(name=name, phone=phone, contact_id=contact_id, email=email)


# ---------------------------------------------------------------------------
# OpenPhone contact shape helpers
# ---------------------------------------------------------------------------


def _contact_fields(contact: Mapping[str, Any]) -> Mapping[str, Any]:
    return as_mapping(contact.get("defaultFields")) or contact


def _contact_values(contact: Mapping[str, Any], key: str) -> list[str]:
    raw = _contact_fields(contact).get(key)
    if not isinstance(raw, list):
        return []
    values: list[str] = []
    for item in raw:
        value = as_non_empty_string(item.get("value")) if isinstance(item, Mapping) else (
            as_non_empty_string(item)
        )
        if value is not None:
            values.append(value)
    return values


def contact_display_name(contact: Mapping[str, Any]) -> str | None:
    """``first last``, falling back to company."""
    fields = _contact_fields(contact)
    parts = [
        part
        for part in (
            as_non_empty_string(fields.get("firstName")),
            as_non_empty_string(fields.get("lastName")),
        )
        if part
    ]
    if parts:
        return " ".join(parts)
    return as_non_empty_string(fields.get("company"))


def contact_primary_email(contact: Mapping[str, Any]) -> str | None:
    emails = _contact_values(contact, "emails")
    return emails[0] if emails else None


def contact_phone_numbers(contact: Mapping[str, Any]) -> list[str]:
    normalized = (normalize_phone_number(value) for value in _contact_values(contact, "phoneNumbers"))
    return [value for value in normalized if value is not None]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ContactResolver:
    """Map external contacts to internal clients, creating clients as needed."""

    def __init__(
        self,
        *,
        clients: ClientRepository,
        provider: TelephonyProvider,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._clients = clients
        self._provider = provider
        self._metrics = metrics or SyncMetrics()

    async def resolve(self, contact: ExternalContact) -> ResolvedClient:
        normalized_phone = normalize_phone_number(contact.phone)
        client = await self._find_existing(contact, normalized_phone)

        if client is not None:
            if contact.contact_id and not client.openphone_contact_id:
                if client.id is None:
                    raise ClientResolutionError(f"Matched client {client.name!r} has no id")
                await self._clients.attach_openphone_contact_id(client.id, contact.contact_id)
                client = client.model_copy(update={"openphone_contact_id": contact.contact_id})
                logger.info(
                    "Linked client %s to OpenPhone contact %s", client.id, contact.contact_id
                )
            return ResolvedClient(client=client, created=False)

        enriched = await self.enrich(contact)
        phone = normalize_phone_number(enriched.phone) or enriched.phone
        name = normalize_name(enriched.name) or phone or UNKNOWN_CONTACT_NAME
        created = await self._clients.create_client_from_openphone_contact(
            NewClient(
                name=name,
                phone=phone,
                email=enriched.email,
                openphone_contact_id=enriched.contact_id,
            )
        )
        if created.id is None:
            raise ClientResolutionError(f"Client created for {name!r} was returned without an id")
        self._metrics.client_created()
        logger.info("Created client %s (%s) from OpenPhone contact", created.id, name)
        return ResolvedClient(client=created, created=True)

    async def _find_existing(
        self,
        contact: ExternalContact,
        normalized_phone: str | None,
    ) -> Client | None:
        if contact.contact_id:
            client = await self._clients.find_client_by_openphone_contact_id(contact.contact_id)
            if client is not None:
                return client

        name = normalize_name(contact.name)
        if name:
            client = await self._clients.find_client_by_name(name)
            if client is not None:
                return client

        if normalized_phone:
            return await self._clients.find_client_by_phone_numbers([normalized_phone])
        return None

    async def enrich(self, contact: ExternalContact) -> ExternalContact:
        """Fill name/email/contact id from OpenPhone; never raises provider errors."""
        provider_contact: Mapping[str, Any] | None = None
        if contact.contact_id:
            try:
                provider_contact = await self._provider.get_contact(contact.contact_id)
            except OpenPhoneError as exc:
                self._metrics.provider_error("get_contact")
                logger.warning(
                    "Could not fetch OpenPhone contact %s: %s", contact.contact_id, exc
                )
        elif contact.phone:
            provider_contact = await self._search_by_phone(contact.phone)

        if not provider_contact:
            return contact

        return ExternalContact(
            name=contact_display_name(provider_contact) or contact.name,
            phone=contact.phone or next(iter(contact_phone_numbers(provider_contact)), None),
            contact_id=contact.contact_id or as_non_empty_string(provider_contact.get("id")),
            email=contact_primary_email(provider_contact) or contact.email,
        )

    async def _search_by_phone(self, phone: str) -> Mapping[str, Any] | None:
        query = normalize_phone_number(phone)
        if query is None:
            return None
        try:
            candidates = await self._provider.search_contacts(query, CONTACT_SEARCH_LIMIT)
        except OpenPhoneError as exc:
            self._metrics.provider_error("search_contacts")
            logger.warning("OpenPhone contact search for %s failed: %s", query, exc)
            return None
        for candidate in candidates:
            if any(phones_match(query, number) for number in contact_phone_numbers(candidate)):
                return candidate
        return None
