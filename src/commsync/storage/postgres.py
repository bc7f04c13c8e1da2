"""asyncpg implementations of the sync engine's persistence contracts."""

from __future__ import annotations

import logging
import re
from typing import Any

import asyncpg

from commsync.db import Database
from commsync.storage.repositories import (
    Client,
    ClientBatchCallback,
    CommunicationRecordInput,
    NewClient,
    UpsertResult,
)

logger = logging.getLogger(__name__)

_NON_DIGIT = re.compile(r"\D")

_CLIENT_COLUMNS = "id::text AS id, client_name, phone, email, openphone_contact_id"

_UPSERT_BY_CALL_ID = """
    INSERT INTO communications (
        client_id, client_name, communication_date, communication_type, subject,
        notes, source, openphone_call_id, openphone_event_timestamp
    )
    VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9)
    ON CONFLICT (openphone_call_id) DO UPDATE SET
        notes = EXCLUDED.notes,
        communication_date = EXCLUDED.communication_date,
        openphone_event_timestamp = EXCLUDED.openphone_event_timestamp,
        updated_at = now()
    RETURNING id::text AS id, (xmax = 0) AS inserted
"""

_UPSERT_BY_CONVERSATION_ID = """
    INSERT INTO communications (
        client_id, client_name, communication_date, communication_type, subject,
        notes, source, openphone_conversation_id, openphone_event_timestamp
    )
    VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9)
    ON CONFLICT (openphone_conversation_id) DO UPDATE SET
        notes = EXCLUDED.notes,
        communication_date = EXCLUDED.communication_date,
        openphone_event_timestamp = EXCLUDED.openphone_event_timestamp,
        updated_at = now()
    RETURNING id::text AS id, (xmax = 0) AS inserted
"""


def _client_from_row(row: asyncpg.Record | None) -> Client | None:
    if row is None:
        return None
    return Client(
        id=row["id"],
        name=row["client_name"],
        phone=row["phone"],
        email=row["email"],
        openphone_contact_id=row["openphone_contact_id"],
    )


class PostgresClientRepository:
    """Client lookups against the ``clients`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def find_client_by_openphone_contact_id(self, contact_id: str) -> Client | None:
        row = await self._db.fetchrow(
            f"SELECT {_CLIENT_COLUMNS} FROM clients WHERE openphone_contact_id = $1",
            contact_id,
        )
        return _client_from_row(row)

    async def find_client_by_name(self, name: str) -> Client | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_CLIENT_COLUMNS} FROM clients
            WHERE lower(client_name) = lower($1)
            ORDER BY created_at, id
            LIMIT 1
            """,
            name,
        )
        return _client_from_row(row)

    async def find_client_by_phone_numbers(self, phone_numbers: list[str]) -> Client | None:
        """Match stored phones either verbatim or by their digits."""
        if not phone_numbers:
            return None
        digits = [_NON_DIGIT.sub("", number) for number in phone_numbers]
        # 10-digit stored numbers carry no country code.
        digits.extend(d[1:] for d in list(digits) if len(d) == 11 and d.startswith("1"))
        row = await self._db.fetchrow(
            f"""
            SELECT {_CLIENT_COLUMNS} FROM clients
            WHERE phone = ANY($1::text[])
               OR regexp_replace(phone, '\\D', '', 'g') = ANY($2::text[])
            ORDER BY created_at, id
            LIMIT 1
            """,
            phone_numbers,
            [d for d in digits if d],
        )
        return _client_from_row(row)

    async def attach_openphone_contact_id(self, client_id: str, contact_id: str) -> None:
        await self._db.execute(
            """
            UPDATE clients
            SET openphone_contact_id = $2, updated_at = now()
            WHERE id = $1::uuid AND openphone_contact_id IS NULL
            """,
            client_id,
            contact_id,
        )

    async def create_client_from_openphone_contact(self, new_client: NewClient) -> Client:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO clients (client_name, phone, email, openphone_contact_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (openphone_contact_id) DO UPDATE
                SET updated_at = now()
            RETURNING {_CLIENT_COLUMNS}
            """,
            new_client.name,
            new_client.phone,
            new_client.email,
            new_client.openphone_contact_id,
        )
        client = _client_from_row(row)
        if client is None:
            raise RuntimeError("INSERT INTO clients returned no row")
        return client

    async def batch_process_clients(self, batch_size: int, callback: ClientBatchCallback) -> int:
        """Walk all clients in stable order, ``batch_size`` at a time.

        Returns the number of batches handed to *callback*.
        """
        offset = 0
        batches = 0
        while True:
            rows = await self._db.fetch(
                f"""
                SELECT {_CLIENT_COLUMNS} FROM clients
                ORDER BY created_at, id
                LIMIT $1 OFFSET $2
                """,
                batch_size,
                offset,
            )
            if not rows:
                break
            await callback([client for client in map(_client_from_row, rows) if client])
            batches += 1
            if len(rows) < batch_size:
                break
            offset += batch_size
        return batches


class PostgresCommunicationRepository:
    """Idempotent writes to the ``communications`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert_communication(self, record: CommunicationRecordInput) -> UpsertResult:
        if record.external_call_id is not None:
            query, external_id = _UPSERT_BY_CALL_ID, record.external_call_id
        else:
            query, external_id = _UPSERT_BY_CONVERSATION_ID, record.external_conversation_id

        args: list[Any] = [
            record.client_id,
            record.client_name,
            record.communication_date,
            record.communication_type,
            record.subject,
            record.notes,
            record.source,
            external_id,
            record.external_event_timestamp,
        ]
        row = await self._db.fetchrow(query, *args)
        if row is None:
            raise RuntimeError("communications upsert returned no row")
        return UpsertResult(action="created" if row["inserted"] else "updated", id=row["id"])
