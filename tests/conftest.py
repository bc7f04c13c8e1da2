"""Shared test fixtures for the commsync test suite.

Provides in-memory doubles for the persistence protocols and a scripted
``TelephonyProvider``, plus a session-scoped PostgreSQL testcontainer for
the integration tests (skipped when Docker is unavailable).
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

import pytest

from commsync.db import DatabaseUnavailableError
from commsync.openphone.client import OpenPhoneError, ProviderPage, TelephonyProvider
from commsync.phone import normalize_phone_number
from commsync.storage.repositories import (
    Client,
    ClientBatchCallback,
    CommunicationRecordInput,
    NewClient,
    UpsertResult,
)

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from commsync.db import Database

docker_available = shutil.which("docker") is not None


# ---------------------------------------------------------------------------
# Persistence doubles
# ---------------------------------------------------------------------------


class InMemoryClientRepository:
    def __init__(self, clients: list[Client] | None = None) -> None:
        self.clients: list[Client] = []
        self.attached: list[tuple[str, str]] = []
        self.created: list[NewClient] = []
        self.batch_sizes: list[int] = []
        for client in clients or []:
            self.add(client)

    def add(self, client: Client) -> Client:
        if client.id is None:
            client = client.model_copy(update={"id": f"client-{len(self.clients) + 1}"})
        self.clients.append(client)
        return client

    async def find_client_by_openphone_contact_id(self, contact_id: str) -> Client | None:
        return next((c for c in self.clients if c.openphone_contact_id == contact_id), None)

    async def find_client_by_name(self, name: str) -> Client | None:
        return next((c for c in self.clients if c.name.lower() == name.lower()), None)

    async def find_client_by_phone_numbers(self, phone_numbers: list[str]) -> Client | None:
        wanted = {normalize_phone_number(number) for number in phone_numbers}
        return next(
            (c for c in self.clients if c.phone and normalize_phone_number(c.phone) in wanted),
            None,
        )

    async def attach_openphone_contact_id(self, client_id: str, contact_id: str) -> None:
        self.attached.append((client_id, contact_id))
        self.clients = [
            c.model_copy(update={"openphone_contact_id": contact_id}) if c.id == client_id else c
            for c in self.clients
        ]

    async def create_client_from_openphone_contact(self, new_client: NewClient) -> Client:
        self.created.append(new_client)
        return self.add(Client(**new_client.model_dump()))

    async def batch_process_clients(self, batch_size: int, callback: ClientBatchCallback) -> int:
        self.batch_sizes.append(batch_size)
        snapshot = list(self.clients)
        batches = 0
        for index in range(0, len(snapshot), batch_size):
            await callback(snapshot[index : index + batch_size])
            batches += 1
        return batches


class InMemoryCommunicationRepository:
    def __init__(self) -> None:
        self.records: dict[str, CommunicationRecordInput] = {}
        self.ids: dict[str, str] = {}
        self.writes: list[CommunicationRecordInput] = []

    async def upsert_communication(self, record: CommunicationRecordInput) -> UpsertResult:
        self.writes.append(record)
        key = (
            f"call:{record.external_call_id}"
            if record.external_call_id is not None
            else f"conversation:{record.external_conversation_id}"
        )
        existing = self.records.get(key)
        if existing is not None:
            self.records[key] = existing.model_copy(
                update={
                    "notes": record.notes,
                    "communication_date": record.communication_date,
                    "external_event_timestamp": record.external_event_timestamp,
                }
            )
            return UpsertResult(action="updated", id=self.ids[key])
        self.records[key] = record
        self.ids[key] = f"comm-{len(self.ids) + 1}"
        return UpsertResult(action="created", id=self.ids[key])


class ReadinessDouble:
    def __init__(self) -> None:
        self.available = True
        self.checks = 0

    async def health_check(self) -> None:
        self.checks += 1
        if not self.available:
            raise DatabaseUnavailableError("database is down")


# ---------------------------------------------------------------------------
# Provider double
# ---------------------------------------------------------------------------


class ProviderDouble(TelephonyProvider):
    """Scripted provider.

    Call pages are keyed by ``(phone_number_id, participant)``; page tokens
    are the string index of the next page.  Conversation pages are shared by
    every chunk.
    """

    def __init__(self) -> None:
        self.phone_numbers: list[dict[str, Any]] = [
            {"id": "PN1", "number": "+15550000001"},
        ]
        self.call_pages: dict[tuple[str, str], list[ProviderPage]] = {}
        self.conversation_pages: list[ProviderPage] = []
        self.calls_by_id: dict[str, dict[str, Any]] = {}
        self.contacts_by_id: dict[str, dict[str, Any]] = {}
        self.search_results: list[dict[str, Any]] = []
        self.fail_list_calls_for: set[tuple[str, str]] = set()
        self.fail_conversations_for: set[str] = set()
        self.fail_phone_numbers = False
        self.fail_get_call = False
        self.fail_contacts = False
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    async def list_calls(
        self,
        *,
        phone_number_id: str,
        participants: list[str],
        created_after: datetime,
        created_before: datetime,
        max_results: int,
        page_token: str | None = None,
    ) -> ProviderPage:
        key = (phone_number_id, participants[0])
        self.requests.append(
            {
                "op": "list_calls",
                "key": key,
                "page_token": page_token,
                "max_results": max_results,
                "created_after": created_after,
                "created_before": created_before,
            }
        )
        if key in self.fail_list_calls_for:
            raise OpenPhoneError(f"list_calls failed for {key}")
        pages = self.call_pages.get(key, [])
        index = 0 if page_token is None else int(page_token)
        return pages[index] if index < len(pages) else ProviderPage()

    async def list_conversations(
        self,
        *,
        phone_numbers: list[str],
        updated_after: datetime,
        updated_before: datetime,
        max_results: int,
        page_token: str | None = None,
        exclude_inactive: bool = True,
    ) -> ProviderPage:
        self.requests.append(
            {
                "op": "list_conversations",
                "phone_numbers": list(phone_numbers),
                "page_token": page_token,
                "max_results": max_results,
                "exclude_inactive": exclude_inactive,
            }
        )
        if phone_numbers[0] in self.fail_conversations_for:
            raise OpenPhoneError(f"list_conversations failed for chunk at {phone_numbers[0]}")
        index = 0 if page_token is None else int(page_token)
        pages = self.conversation_pages
        return pages[index] if index < len(pages) else ProviderPage()

    async def get_call(self, call_id: str) -> dict[str, Any]:
        self.requests.append({"op": "get_call", "call_id": call_id})
        if self.fail_get_call or call_id not in self.calls_by_id:
            raise OpenPhoneError(f"call {call_id} not available")
        return self.calls_by_id[call_id]

    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        self.requests.append({"op": "get_contact", "contact_id": contact_id})
        if self.fail_contacts or contact_id not in self.contacts_by_id:
            raise OpenPhoneError(f"contact {contact_id} not available")
        return self.contacts_by_id[contact_id]

    async def search_contacts(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        self.requests.append({"op": "search_contacts", "query": query, "limit": limit})
        if self.fail_contacts:
            raise OpenPhoneError("contact search failed")
        return self.search_results[:limit]

    async def list_phone_numbers(self) -> list[dict[str, Any]]:
        self.requests.append({"op": "list_phone_numbers"})
        if self.fail_phone_numbers:
            raise OpenPhoneError("phone numbers unavailable")
        return self.phone_numbers

    async def aclose(self) -> None:
        self.closed = True

    def ops(self, name: str) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["op"] == name]


@pytest.fixture
def provider() -> ProviderDouble:
    return ProviderDouble()


@pytest.fixture
def client_repo() -> InMemoryClientRepository:
    return InMemoryClientRepository()


@pytest.fixture
def communication_repo() -> InMemoryCommunicationRepository:
    return InMemoryCommunicationRepository()


@pytest.fixture
def readiness() -> ReadinessDouble:
    return ReadinessDouble()


# ---------------------------------------------------------------------------
# PostgreSQL testcontainer
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"commsync_test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh database with the commsync schema for one test.

    Tests use this as::

        async with provisioned_database() as db:
            ...
    """
    import asyncpg

    from commsync.db import Database
    from commsync.migrations import run_migrations

    host = postgres_container.get_container_host_ip()
    port = int(postgres_container.get_exposed_port(5432))
    user = postgres_container.username
    password = postgres_container.password

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Database]:
        db_name = _unique_test_db_name()
        admin = await asyncpg.connect(
            host=host, port=port, user=user, password=password, database="postgres"
        )
        try:
            await admin.execute(f'CREATE DATABASE "{db_name}"')
        finally:
            await admin.close()

        await run_migrations(f"postgresql://{user}:{password}@{host}:{port}/{db_name}")
        db = Database(
            db_name=db_name,
            host=host,
            port=port,
            user=user,
            password=password,
            min_pool_size=1,
            max_pool_size=3,
        )
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
