"""Cursor-paginated import of calls and conversations from OpenPhone.

OpenPhone's list-calls endpoint requires one workspace number and the
participant numbers, so calls are fetched per ``(phone_number_id,
client_phone)`` pair, walking clients in batches.  Conversations are listed
for up to 50 workspace numbers at a time.  Each page is walked until the
provider stops returning a ``nextPageToken``.

A provider failure abandons only the current pair or chunk.  Anything raised
by the apply callback (persistence errors included) propagates.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from commsync.core.metrics import SyncMetrics
from commsync.openphone.client import MAX_PAGE_SIZE, OpenPhoneError, TelephonyProvider
from commsync.phone import normalize_phone_number
from commsync.storage.repositories import Client, ClientRepository
from commsync.sync.extractors import chunked, clamp
from commsync.sync.records import RecordOutcome

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_BATCH_SIZE = 50
DEFAULT_PHONE_NUMBER_CHUNK_SIZE = 50


class RecordApplyFn(Protocol):
    """Callback invoked for each fetched call or conversation."""

    async def __call__(self, record: dict[str, Any]) -> RecordOutcome | None:
        """Resolve the client for *record* and upsert it."""
        ...


@dataclass
class FetchStats:
    records_processed: int = 0
    creations: int = 0
    updates: int = 0
    clients_created: int = 0

    def tally(self, outcome: RecordOutcome | None) -> None:
        if outcome is None:
            return
        if outcome.action == "created":
            self.creations += 1
        else:
            self.updates += 1
        if outcome.client_created:
            self.clients_created += 1

    def merge(self, other: FetchStats) -> None:
        self.records_processed += other.records_processed
        self.creations += other.creations
        self.updates += other.updates
        self.clients_created += other.clients_created


class PaginatedFetcher:
    """Walks provider list endpoints and hands each record to a callback."""

    def __init__(
        self,
        *,
        provider: TelephonyProvider,
        client_batch_size: int = DEFAULT_CLIENT_BATCH_SIZE,
        phone_number_chunk_size: int = DEFAULT_PHONE_NUMBER_CHUNK_SIZE,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._client_batch_size = client_batch_size
        self._phone_number_chunk_size = phone_number_chunk_size
        self._metrics = metrics or SyncMetrics()

    async def import_calls(
        self,
        *,
        clients: ClientRepository,
        phone_number_ids: Sequence[str],
        start: datetime,
        end: datetime,
        page_size: int,
        apply_call: RecordApplyFn,
    ) -> FetchStats:
        """Fetch calls for every (workspace number, client phone) pair."""
        stats = FetchStats()
        if not phone_number_ids:
            logger.info("No OpenPhone numbers available; skipping call import")
            return stats

        async def _process_batch(batch: list[Client]) -> None:
            for client in batch:
                client_phone = normalize_phone_number(client.phone)
                if client_phone is None:
                    continue
                for phone_number_id in phone_number_ids:
                    pair_stats = await self.fetch_calls_for_pair(
                        phone_number_id=phone_number_id,
                        client_phone=client_phone,
                        start=start,
                        end=end,
                        page_size=page_size,
                        apply_call=apply_call,
                    )
                    stats.merge(pair_stats)

        batches = await clients.batch_process_clients(self._client_batch_size, _process_batch)
        logger.info(
            "Call import finished: batches=%d calls=%d created=%d updated=%d",
            batches,
            stats.records_processed,
            stats.creations,
            stats.updates,
        )
        return stats

    async def fetch_calls_for_pair(
        self,
        *,
        phone_number_id: str,
        client_phone: str,
        start: datetime,
        end: datetime,
        page_size: int,
        apply_call: RecordApplyFn,
    ) -> FetchStats:
        stats = FetchStats()
        page_token: str | None = None
        max_results = clamp(page_size, 1, MAX_PAGE_SIZE)

        while True:
            try:
                page = await self._provider.list_calls(
                    phone_number_id=phone_number_id,
                    participants=[client_phone],
                    created_after=start,
                    created_before=end,
                    max_results=max_results,
                    page_token=page_token,
                )
            except OpenPhoneError as exc:
                self._metrics.provider_error("list_calls")
                logger.warning(
                    "Failed to list calls for phone_number_id=%s participant=%s: %s",
                    phone_number_id,
                    client_phone,
                    exc,
                )
                break

            stats.records_processed += len(page.data)
            self._metrics.records_fetched("call", len(page.data))
            for call in page.data:
                stats.tally(await apply_call(call))

            page_token = page.next_page_token
            if page_token is None:
                break

        return stats

    async def import_conversations(
        self,
        *,
        phone_number_ids: Sequence[str],
        start: datetime,
        end: datetime,
        page_size: int,
        apply_conversation: RecordApplyFn,
    ) -> FetchStats:
        """Fetch conversations updated in ``[start, end)`` for all workspace numbers."""
        stats = FetchStats()
        max_results = clamp(page_size, 1, MAX_PAGE_SIZE)

        for chunk in chunked(list(phone_number_ids), self._phone_number_chunk_size):
            page_token: str | None = None
            while True:
                try:
                    page = await self._provider.list_conversations(
                        phone_numbers=chunk,
                        updated_after=start,
                        updated_before=end,
                        max_results=max_results,
                        page_token=page_token,
                        exclude_inactive=True,
                    )
                except OpenPhoneError as exc:
                    self._metrics.provider_error("list_conversations")
                    logger.warning(
                        "Failed to list conversations for %d phone numbers: %s", len(chunk), exc
                    )
                    break

                stats.records_processed += len(page.data)
                self._metrics.records_fetched("conversation", len(page.data))
                for conversation in page.data:
                    stats.tally(await apply_conversation(conversation))

                page_token = page.next_page_token
                if page_token is None:
                    break

        logger.info(
            "Conversation import finished: conversations=%d created=%d updated=%d",
            stats.records_processed,
            stats.creations,
            stats.updates,
        )
        return stats
