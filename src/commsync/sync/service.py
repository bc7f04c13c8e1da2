"""Communications sync orchestration.

:class:`CommunicationsSyncService` is the single entry point for both input
shapes:

- ``sync_communications`` polls OpenPhone over a time window (default: the
  last 24 hours) and upserts every call and conversation it finds;
- ``handle_webhook_event`` applies one pushed event.

Both check database readiness first; :class:`DatabaseUnavailableError` is
the only failure a webhook delivery surfaces to its caller.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Collection, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, model_validator

from commsync.config import CommsyncConfig, SyncConfig
from commsync.core.logging import bind_sync_run
from commsync.core.metrics import SyncMetrics
from commsync.core.telemetry import sync_span
from commsync.db import Database, DatabaseUnavailableError
from commsync.openphone.client import OpenPhoneClient, OpenPhoneError, TelephonyProvider
from commsync.phone import normalize_phone_number
from commsync.storage.postgres import PostgresClientRepository, PostgresCommunicationRepository
from commsync.storage.repositories import (
    ClientRepository,
    CommunicationRepository,
    ReadinessProbe,
)
from commsync.sync.errors import CommunicationsSyncError
from commsync.sync.events import (
    CallEvent,
    CallSummaryEvent,
    ConversationEvent,
    parse_event,
)
from commsync.sync.extractors import as_non_empty_string, format_call_summary_payload
from commsync.sync.fetcher import PaginatedFetcher
from commsync.sync.records import (
    CommunicationRecordUpserter,
    RecordOutcome,
    call_id_of,
    conversation_id_of,
)
from commsync.sync.resolver import ContactResolver, extract_contact

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncOptions(BaseModel):
    """Parameters for one bulk sync run.  Unset dates default to the lookback window."""

    model_config = ConfigDict(extra="forbid")

    start_date: datetime | None = None
    end_date: datetime | None = None
    include_calls: bool = True
    include_messages: bool = True
    page_size: int = 100

    @model_validator(mode="after")
    def _window_is_ordered(self) -> SyncOptions:
        if self.start_date and self.end_date and _aware(self.start_date) >= _aware(self.end_date):
            raise ValueError("start_date must be before end_date")
        return self


class SyncResult(BaseModel):
    calls_processed: int = 0
    conversations_processed: int = 0
    communications_created: int = 0
    communications_updated: int = 0
    clients_created: int = 0


class Memoized(Generic[T]):
    """Caches the result of an async loader until refreshed."""

    def __init__(self, loader: Callable[[], Awaitable[T]]) -> None:
        self._loader = loader
        self._value: T | None = None
        self._loaded = False

    async def get(self, *, refresh: bool = False) -> T:
        if refresh or not self._loaded:
            self._value = await self._loader()
            self._loaded = True
        return self._value  # type: ignore[return-value]

    def clear(self) -> None:
        self._value = None
        self._loaded = False


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def own_phone_numbers(phone_numbers: list[dict[str, Any]]) -> frozenset[str]:
    """Normalized E.164 numbers of the workspace's own lines."""
    numbers: set[str] = set()
    for entry in phone_numbers:
        for key in ("number", "phoneNumber", "formattedNumber"):
            normalized = normalize_phone_number(entry.get(key))
            if normalized is not None:
                numbers.add(normalized)
    return frozenset(numbers)


class CommunicationsSyncService:
    """Reconciles OpenPhone calls and conversations into communication records."""

    def __init__(
        self,
        *,
        provider: TelephonyProvider,
        clients: ClientRepository,
        communications: CommunicationRepository,
        readiness: ReadinessProbe,
        settings: SyncConfig | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._clients = clients
        self._readiness = readiness
        self._settings = settings or SyncConfig()
        self._metrics = metrics or SyncMetrics()
        self._resolver = ContactResolver(clients=clients, provider=provider, metrics=self._metrics)
        self._upserter = CommunicationRecordUpserter(
            communications, source=self._settings.source, metrics=self._metrics
        )
        self._fetcher = PaginatedFetcher(
            provider=provider,
            client_batch_size=self._settings.client_batch_size,
            phone_number_chunk_size=self._settings.phone_number_chunk_size,
            metrics=self._metrics,
        )
        self._phone_numbers: Memoized[list[dict[str, Any]]] = Memoized(
            self._provider.list_phone_numbers
        )

    @property
    def provider(self) -> TelephonyProvider:
        return self._provider

    async def ensure_ready(self) -> None:
        await self._readiness.health_check()

    async def provider_phone_numbers(self, *, refresh: bool = False) -> list[dict[str, Any]]:
        return await self._phone_numbers.get(refresh=refresh)

    async def aclose(self) -> None:
        await self._provider.aclose()

    # ------------------------------------------------------------------
    # Bulk sync
    # ------------------------------------------------------------------

    def _resolve_window(self, options: SyncOptions) -> tuple[datetime, datetime]:
        end = _aware(options.end_date) if options.end_date else datetime.now(UTC)
        start = (
            _aware(options.start_date)
            if options.start_date
            else end - timedelta(hours=self._settings.lookback_hours)
        )
        if start >= end:
            raise ValueError("start_date must be before end_date")
        return start, end

    async def sync_communications(self, options: SyncOptions | None = None) -> SyncResult:
        options = options or SyncOptions()
        if "page_size" not in options.model_fields_set:
            options = options.model_copy(update={"page_size": self._settings.page_size})
        start, end = self._resolve_window(options)
        run_id = bind_sync_run()

        with sync_span("sync_communications") as span:
            span.set_attribute("commsync.sync_run", run_id)
            await self.ensure_ready()
            logger.info(
                "Starting OpenPhone sync %s: window=[%s, %s) calls=%s messages=%s",
                run_id,
                start.isoformat(),
                end.isoformat(),
                options.include_calls,
                options.include_messages,
            )

            try:
                phone_numbers = await self.provider_phone_numbers(refresh=True)
            except OpenPhoneError as exc:
                self._metrics.provider_error("list_phone_numbers")
                raise CommunicationsSyncError(
                    f"Could not list OpenPhone phone numbers: {exc}"
                ) from exc

            phone_number_ids = [
                number_id
                for number_id in (as_non_empty_string(entry.get("id")) for entry in phone_numbers)
                if number_id
            ]
            own_numbers = own_phone_numbers(phone_numbers)
            result = SyncResult()

            if options.include_calls:

                async def _apply_call(call: dict[str, Any]) -> RecordOutcome | None:
                    return await self.process_call_record(call, own_numbers=own_numbers)

                call_stats = await self._fetcher.import_calls(
                    clients=self._clients,
                    phone_number_ids=phone_number_ids,
                    start=start,
                    end=end,
                    page_size=options.page_size,
                    apply_call=_apply_call,
                )
                result.calls_processed += call_stats.records_processed
                result.communications_created += call_stats.creations
                result.communications_updated += call_stats.updates
                result.clients_created += call_stats.clients_created

            if options.include_messages:

                async def _apply_conversation(
                    conversation: dict[str, Any],
                ) -> RecordOutcome | None:
                    return await self.process_conversation_record(
                        conversation, own_numbers=own_numbers
                    )

                conversation_stats = await self._fetcher.import_conversations(
                    phone_number_ids=phone_number_ids,
                    start=start,
                    end=end,
                    page_size=options.page_size,
                    apply_conversation=_apply_conversation,
                )
                result.conversations_processed += conversation_stats.records_processed
                result.communications_created += conversation_stats.creations
                result.communications_updated += conversation_stats.updates
                result.clients_created += conversation_stats.clients_created

        logger.info(
            "OpenPhone sync %s finished: calls=%d conversations=%d created=%d updated=%d "
            "clients_created=%d",
            run_id,
            result.calls_processed,
            result.conversations_processed,
            result.communications_created,
            result.communications_updated,
            result.clients_created,
        )
        return result

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook_event(self, raw_event: Any) -> None:
        """Apply one webhook delivery.

        Failures are logged and dropped so the provider does not retry
        forever, except :class:`DatabaseUnavailableError`, which propagates.
        """
        with sync_span("handle_webhook_event"):
            await self.ensure_ready()

            parsed = parse_event(raw_event)
            event = parsed.event
            self._metrics.webhook_event(event.kind)

            if event.kind == "unknown":
                if parsed.diagnostics:
                    logger.warning(
                        "Dropping OpenPhone webhook event %s: %s",
                        event.event_type,
                        "; ".join(parsed.diagnostics),
                    )
                else:
                    logger.info("Ignoring unhandled OpenPhone webhook event: %s", event.event_type)
                return

            try:
                own_numbers = await self._webhook_own_numbers()
                if isinstance(event, CallSummaryEvent):
                    await self._handle_call_summary(event, own_numbers)
                elif isinstance(event, CallEvent):
                    await self.process_call_record(event.call, own_numbers=own_numbers)
                elif isinstance(event, ConversationEvent):
                    await self.process_conversation_record(
                        event.conversation, own_numbers=own_numbers
                    )
            except DatabaseUnavailableError:
                raise
            except Exception:
                logger.exception("Failed to process OpenPhone webhook event %s", event.event_type)

    async def _webhook_own_numbers(self) -> frozenset[str]:
        try:
            return own_phone_numbers(await self.provider_phone_numbers())
        except OpenPhoneError as exc:
            self._metrics.provider_error("list_phone_numbers")
            logger.warning("Could not load OpenPhone phone numbers for webhook: %s", exc)
            return frozenset()

    async def _handle_call_summary(
        self,
        event: CallSummaryEvent,
        own_numbers: Collection[str],
    ) -> None:
        try:
            call = await self._provider.get_call(event.call_id)
        except OpenPhoneError as exc:
            self._metrics.provider_error("get_call")
            logger.warning("Could not fetch call %s for summary event: %s", event.call_id, exc)
            return

        if call_id_of(call) is None:
            call = {**call, "id": event.call_id}
        await self.process_call_record(
            call,
            own_numbers=own_numbers,
            notes_override=format_call_summary_payload(event.payload),
        )

    # ------------------------------------------------------------------
    # Per-record processing
    # ------------------------------------------------------------------

    async def process_call_record(
        self,
        call: Mapping[str, Any],
        *,
        own_numbers: Collection[str] = (),
        notes_override: str | None = None,
    ) -> RecordOutcome | None:
        if call_id_of(call) is None:
            logger.warning("Skipping OpenPhone call without an id")
            return None
        contact = extract_contact(call, own_numbers=own_numbers)
        resolved = await self._resolver.resolve(contact)
        result = await self._upserter.upsert_call(
            call,
            client=resolved.client,
            contact=contact,
            notes_override=notes_override,
        )
        if result is None:
            return None
        return RecordOutcome(action=result.action, id=result.id, client_created=resolved.created)

    async def process_conversation_record(
        self,
        conversation: Mapping[str, Any],
        *,
        own_numbers: Collection[str] = (),
    ) -> RecordOutcome | None:
        if conversation_id_of(conversation) is None:
            logger.warning("Skipping OpenPhone conversation without an id")
            return None
        contact = extract_contact(conversation, own_numbers=own_numbers)
        resolved = await self._resolver.resolve(contact)
        result = await self._upserter.upsert_conversation(conversation, client=resolved.client)
        if result is None:
            return None
        return RecordOutcome(action=result.action, id=result.id, client_created=resolved.created)


def build_service(config: CommsyncConfig, db: Database) -> CommunicationsSyncService:
    """Wire the OpenPhone client and PostgreSQL repositories into a service."""
    provider = OpenPhoneClient(
        api_key=config.openphone.api_key,
        base_url=config.openphone.base_url,
        timeout_seconds=config.openphone.timeout_seconds,
        requests_per_minute=config.openphone.requests_per_minute,
        retry_attempts=config.openphone.retry_attempts,
        retry_delay_seconds=config.openphone.retry_delay_seconds,
    )
    return CommunicationsSyncService(
        provider=provider,
        clients=PostgresClientRepository(db),
        communications=PostgresCommunicationRepository(db),
        readiness=db,
        settings=config.sync,
    )
