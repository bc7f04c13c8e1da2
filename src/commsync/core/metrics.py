"""OpenTelemetry metrics instruments for the communications sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once at process startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  commsync.sync.records_fetched   Counter  (label: kind=call|conversation)
      Records returned by provider list endpoints.

  commsync.sync.upserts           Counter  (labels: kind, action=created|updated)
      Communication records written.

  commsync.sync.clients_created   Counter
      Clients created while resolving external contacts.

  commsync.provider.errors        Counter  (label: operation)
      Provider failures that were logged and skipped.

  commsync.webhook.events         Counter  (label: kind)
      Webhook events received, by parsed variant.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "commsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Recording helpers for one sync engine instance."""

    def __init__(self, meter: metrics.Meter | None = None) -> None:
        meter = meter or get_meter()
        self._records_fetched = meter.create_counter(
            name="commsync.sync.records_fetched",
            description="Records returned by OpenPhone list endpoints",
            unit="records",
        )
        self._upserts = meter.create_counter(
            name="commsync.sync.upserts",
            description="Communication records created or updated",
            unit="records",
        )
        self._clients_created = meter.create_counter(
            name="commsync.sync.clients_created",
            description="Clients created from OpenPhone contacts",
            unit="clients",
        )
        self._provider_errors = meter.create_counter(
            name="commsync.provider.errors",
            description="OpenPhone failures logged and skipped",
            unit="errors",
        )
        self._webhook_events = meter.create_counter(
            name="commsync.webhook.events",
            description="Webhook events received by parsed kind",
            unit="events",
        )

    def records_fetched(self, kind: str, count: int) -> None:
        if count:
            self._records_fetched.add(count, {"kind": kind})

    def upsert(self, kind: str, action: str) -> None:
        self._upserts.add(1, {"kind": kind, "action": action})

    def client_created(self) -> None:
        self._clients_created.add(1)

    def provider_error(self, operation: str) -> None:
        self._provider_errors.add(1, {"operation": operation})

    def webhook_event(self, kind: str) -> None:
        self._webhook_events.add(1, {"kind": kind})
