"""commsync HTTP API: FastAPI application factory.

Routes:
- ``GET /api/health``: liveness plus database readiness
- ``POST /webhooks/openphone``: signed OpenPhone webhook deliveries
- ``POST /api/sync``: run a bulk sync over a time window

The lifespan handler builds one :class:`CommunicationsSyncService` (with its
database pool and OpenPhone client) and tears it down on shutdown.  Tests
pass a prebuilt service instead.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from commsync import __version__
from commsync.api.middleware import error_response, register_error_handlers
from commsync.api.signatures import canonicalize_body, verify_webhook_signature
from commsync.config import CommsyncConfig, resolve_config
from commsync.core.telemetry import extract_trace_context, sync_span
from commsync.db import Database, DatabaseUnavailableError
from commsync.sync.service import (
    CommunicationsSyncService,
    SyncOptions,
    SyncResult,
    build_service,
)

logger = logging.getLogger(__name__)


def _service(request: Request) -> CommunicationsSyncService:
    return request.app.state.service


def create_app(
    config: CommsyncConfig | None = None,
    *,
    service: CommunicationsSyncService | None = None,
    webhook_secret: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration.  Resolved via :func:`resolve_config` at startup
        when neither *config* nor *service* is given.
    service:
        Prebuilt sync service.  When set, the lifespan handler neither opens
        a database pool nor closes the service.
    webhook_secret:
        Overrides ``config.webhook.secret``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            yield
            return

        resolved = config or resolve_config()
        db = Database.from_config(resolved.database)
        await db.connect()
        app.state.service = build_service(resolved, db)
        app.state.webhook_secret = webhook_secret or resolved.webhook.secret
        if app.state.webhook_secret is None:
            logger.warning("No webhook secret configured; webhook signatures are not verified")
        try:
            yield
        finally:
            await app.state.service.aclose()
            await db.close()

    app = FastAPI(
        title="commsync API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    if service is not None:
        app.state.service = service
        app.state.webhook_secret = webhook_secret
    register_error_handlers(app)

    @app.get("/api/health")
    async def health(request: Request):
        try:
            await _service(request).ensure_ready()
        except DatabaseUnavailableError:
            return JSONResponse(status_code=503, content={"status": "degraded"})
        return {"status": "ok"}

    @app.post("/webhooks/openphone")
    async def openphone_webhook(request: Request):
        raw = await request.body()
        body = canonicalize_body(raw)

        if not verify_webhook_signature(request.headers, body.text, request.app.state.webhook_secret):
            logger.warning("Rejected OpenPhone webhook with invalid signature")
            return error_response(401, "INVALID_SIGNATURE", "Invalid signature")

        if not body.is_json or not isinstance(body.parsed, dict):
            return error_response(400, "INVALID_PAYLOAD", "Invalid webhook payload")

        with sync_span("webhook", context=extract_trace_context(request.headers)):
            await _service(request).handle_webhook_event(body.parsed)
        return {"success": True}

    @app.post("/api/sync", response_model=SyncResult)
    async def run_sync(request: Request, options: SyncOptions | None = Body(default=None)):
        return await _service(request).sync_communications(options)

    return app
