"""Client-side CLI commands: sync, status, health."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from .main import main


def _build_config(server: str | None, token: str | None):
    from fedswarm.config import ClientConfig

    config = ClientConfig()
    if server:
        config.server_url = server
    if token:
        config.auth_token = token
    return config


def _load_patterns(path: str | None) -> list[dict[str, Any]]:
    """Read local patterns from a JSON list or ``{"patterns": [...]}``."""
    if not path:
        return []
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read patterns from {path}: {e}") from None
    if isinstance(data, dict):
        data = data.get("patterns", [])
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must hold a list of patterns")
    return data


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@main.command()
@click.option("--server", "-s", default=None, help="Service URL (default: $FEDSWARM_SERVER_URL)")
@click.option("--token", envvar="FEDSWARM_TOKEN", default=None, help="Bearer token for the service")
@click.option(
    "--patterns",
    "-P",
    "patterns_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file with local patterns to share",
)
@click.option(
    "--interval",
    type=click.Choice(["session", "hourly", "daily"]),
    default="session",
    help="'session' runs one cycle; 'hourly'/'daily' keep syncing until interrupted",
)
def sync(server: str | None, token: str | None, patterns_path: str | None, interval: str) -> None:
    """Run a full sync cycle: flush, upload, download, merge.

    \b
    Examples:
        fedswarm sync -P patterns.json
        fedswarm sync -P patterns.json --interval hourly
    """
    from fedswarm.client import SwarmClient, SyncOrchestrator, SyncStateStore
    from fedswarm.exceptions import ConfigurationError

    config = _build_config(server, token)
    patterns = _load_patterns(patterns_path)

    async def run() -> dict[str, Any]:
        async with SwarmClient(config) as client:
            orchestrator = SyncOrchestrator(
                client, SyncStateStore.from_config(config), lambda: patterns
            )
            result = await orchestrator.force_sync()
            if interval != "session":
                await orchestrator.schedule_sync(interval)
                click.echo(f"Syncing {interval}, press Ctrl+C to stop.")
                try:
                    await asyncio.Event().wait()
                finally:
                    await orchestrator.stop()
            return asdict(result)

    try:
        result = asyncio.run(run())
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None
    except KeyboardInterrupt:
        click.echo("\nSync stopped.")
        return

    _echo_json(result)
    if not result["success"]:
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Show the persisted sync state of this installation."""
    from fedswarm.client import OfflineQueue, SyncStateStore

    config = _build_config(None, None)
    state = SyncStateStore.from_config(config).load().to_dict()
    state["queuedUploads"] = len(OfflineQueue(config.queue_path, config.max_queue_size))
    state["clientId"] = config.client_id
    _echo_json(state)


@main.command()
@click.option("--server", "-s", default=None, help="Service URL (default: $FEDSWARM_SERVER_URL)")
@click.option("--token", envvar="FEDSWARM_TOKEN", default=None, help="Bearer token for the service")
def health(server: str | None, token: str | None) -> None:
    """Check whether the aggregation service is reachable."""
    from fedswarm.client import SwarmClient
    from fedswarm.exceptions import ConfigurationError

    config = _build_config(server, token)

    async def run():
        async with SwarmClient(config) as client:
            return await client.check_health()

    try:
        result = asyncio.run(run())
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None

    _echo_json(asdict(result))
    if result.status != "healthy":
        raise SystemExit(1)
