"""Persistence contracts consumed by the sync engine.

The engine never talks to a database directly.  It depends on the two
protocols below; :mod:`commsync.storage.postgres` provides the asyncpg
implementation and the test suite provides in-memory doubles.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date, datetime
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from commsync.sync.extractors import CommunicationType

UpsertAction = Literal["created", "updated"]


class Client(BaseModel):
    """Internal client entity as seen by the sync engine."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str
    phone: str | None = None
    email: str | None = None
    openphone_contact_id: str | None = None


class NewClient(BaseModel):
    """Fields used to create a client from an OpenPhone contact."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    phone: str | None = None
    email: str | None = None
    openphone_contact_id: str | None = None


class CommunicationRecordInput(BaseModel):
    """Canonical communication record keyed by one external OpenPhone id."""

    model_config = ConfigDict(extra="forbid")

    client_id: str
    client_name: str
    communication_date: date
    communication_type: CommunicationType
    subject: str | None = None
    notes: str
    source: str
    external_call_id: str | None = None
    external_conversation_id: str | None = None
    external_event_timestamp: datetime

    @model_validator(mode="after")
    def _exactly_one_external_id(self) -> CommunicationRecordInput:
        if (self.external_call_id is None) == (self.external_conversation_id is None):
            raise ValueError(
                "exactly one of external_call_id / external_conversation_id must be set"
            )
        return self


class UpsertResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: UpsertAction
    id: str


ClientBatchCallback = Callable[[list[Client]], Awaitable[None]]


class ClientRepository(Protocol):
    """Client lookups and writes needed for contact resolution."""

    async def find_client_by_openphone_contact_id(self, contact_id: str) -> Client | None:
        ...

    async def find_client_by_name(self, name: str) -> Client | None:
        ...

    async def find_client_by_phone_numbers(self, phone_numbers: list[str]) -> Client | None:
        ...

    async def attach_openphone_contact_id(self, client_id: str, contact_id: str) -> None:
        ...

    async def create_client_from_openphone_contact(self, new_client: NewClient) -> Client:
        ...

    async def batch_process_clients(self, batch_size: int, callback: ClientBatchCallback) -> int:
        """Invoke *callback* with successive batches; return the batch count."""
        ...


class CommunicationRepository(Protocol):
    """Idempotent write contract for communication records.

    Implementations must enforce uniqueness of the external id at the
    storage layer (upsert-on-conflict), not only in application code.
    """

    async def upsert_communication(self, record: CommunicationRecordInput) -> UpsertResult:
        ...


class ReadinessProbe(Protocol):
    async def health_check(self) -> None:
        """Raise ``DatabaseUnavailableError`` when storage cannot be used."""
        ...
