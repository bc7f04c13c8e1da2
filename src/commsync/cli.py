"""Command-line entry points for running syncs, serving webhooks and migrating."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
import uvicorn

from commsync import __version__
from commsync.config import CommsyncConfig, ConfigError, resolve_config
from commsync.core.logging import configure_logging
from commsync.core.metrics import init_metrics
from commsync.core.telemetry import init_telemetry
from commsync.db import Database, DatabaseUnavailableError
from commsync.migrations import run_migrations
from commsync.sync.errors import CommunicationsSyncError
from commsync.sync.service import SyncOptions, SyncResult, build_service

logger = logging.getLogger(__name__)

_SERVICE_NAME = "commsync"


def _load(ctx: click.Context) -> CommsyncConfig:
    config_path: Path | None = ctx.obj.get("config_path")
    try:
        config = resolve_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    return config


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to commsync.toml (defaults to $COMMSYNC_CONFIG or ./commsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """commsync: reconcile OpenPhone calls and conversations with client records."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--start", "start", type=click.DateTime(), default=None, help="Window start (UTC)")
@click.option("--end", "end", type=click.DateTime(), default=None, help="Window end (UTC)")
@click.option("--no-calls", is_flag=True, help="Skip call import")
@click.option("--no-messages", is_flag=True, help="Skip conversation import")
@click.option("--page-size", type=click.IntRange(1, 100), default=None, help="Records per page")
@click.pass_context
def sync(
    ctx: click.Context,
    start: datetime | None,
    end: datetime | None,
    no_calls: bool,
    no_messages: bool,
    page_size: int | None,
) -> None:
    """Run one bulk sync over a time window (default: the last 24 hours)."""
    config = _load(ctx)
    try:
        options = SyncOptions(
            start_date=start,
            end_date=end,
            include_calls=not no_calls,
            include_messages=not no_messages,
            page_size=page_size or config.sync.page_size,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    try:
        result = asyncio.run(_run_sync(config, options))
    except (DatabaseUnavailableError, CommunicationsSyncError) as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps(result.model_dump(), indent=2))


async def _run_sync(config: CommsyncConfig, options: SyncOptions) -> SyncResult:
    init_telemetry(_SERVICE_NAME)
    init_metrics(_SERVICE_NAME)
    db = Database.from_config(config.database)
    await db.connect()
    service = build_service(config, db)
    try:
        return await service.sync_communications(options)
    finally:
        await service.aclose()
        await db.close()


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8080, show_default=True, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the webhook receiver and sync API."""
    from commsync.api.app import create_app

    config = _load(ctx)
    init_telemetry(f"{_SERVICE_NAME}-api")
    init_metrics(f"{_SERVICE_NAME}-api")
    app = create_app(config)
    click.echo(f"commsync API listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=config.logging.level.lower())


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Apply database migrations."""
    config = _load(ctx)
    asyncio.run(run_migrations(config.database.url))
    click.echo("Migrations applied")
