from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import typer
from loguru import logger

from .errors import ConfigurationError, EntryDecodeError
from .error_capture import ErrorCaptureLog
from .relay import CdcRelay
from .settings import RelaySettings, load_settings
from .sources import iter_entries

app = typer.Typer(help="CDC relay CLI (config check, replay, error inspection)")


@app.command("check-config")
def check_config():
    """Load settings from the environment and print a summary."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    typer.echo(json.dumps(settings.summary(), indent=2, default=str))
    logger.success("Configuration OK")


@app.command("replay")
def replay(
    path: str = typer.Argument(..., help="NDJSON file of entries"),
    bootstrap_servers: Optional[str] = typer.Option(
        None, "--bootstrap-servers", help="Overrides CDC_RELAY_BOOTSTRAP_SERVERS"
    ),
):
    """Stream an entry file through the relay into Kafka."""
    overrides = {"bootstrap_servers": bootstrap_servers} if bootstrap_servers else {}
    try:
        settings = load_settings(**overrides)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        submitted, health = asyncio.run(_replay_async(settings, path))
    except (EntryDecodeError, OSError) as e:
        logger.error(f"Replay failed: {e}")
        sys.exit(1)

    logger.success(f"Replayed {path}: {submitted} messages")
    typer.echo(json.dumps({"messages": submitted, "sink": health.sink}, indent=2))


async def _replay_async(settings, path: str):
    async with CdcRelay(settings) as relay:
        submitted = await relay.submit_many(iter_entries(path))
    return submitted, relay.health()


@app.command("errors")
def errors(
    file: Optional[str] = typer.Option(
        None, "--file", envvar="CDC_RELAY_SEND_ERROR_FILE", help="Error-capture file"
    ),
    limit: int = typer.Option(20, "--limit", help="Number of trailing lines to show"),
):
    """Show the most recent payloads captured after failed sends."""
    if file is None:
        file = RelaySettings.model_fields["send_error_file"].default

    log = ErrorCaptureLog(file, mkdirs=False)
    lines = log.tail(limit)
    if not lines:
        logger.info(f"No captured errors in {log.path}")
        return
    for line in lines:
        typer.echo(line)


if __name__ == "__main__":
    app()
