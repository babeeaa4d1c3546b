"""Aggregation service CLI command."""

import click

from .main import main


@main.command()
@click.option("--host", default=None, help="Host to bind to (default: $HOST or 0.0.0.0)")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to (default: $PORT or 8080)")
@click.option(
    "--token",
    envvar="FEDSWARM_SERVER_TOKEN",
    default=None,
    help="Bearer token clients must present. Without one only loopback clients are served.",
)
@click.option("--fedavg-window", default=None, type=int, help="Snapshots folded into the global weights")
@click.option("--rate-limit", default=None, type=int, help="Requests per IP per window")
@click.option("--no-rate-limit", is_flag=True, help="Disable rate limiting")
@click.option("--store-path", default=None, help="JSON file to persist snapshots (default: in-memory)")
def serve(
    host: str | None,
    port: int | None,
    token: str | None,
    fedavg_window: int | None,
    rate_limit: int | None,
    no_rate_limit: bool,
    store_path: str | None,
) -> None:
    """Start the aggregation service.

    Options not given fall back to the environment (PORT, HOST,
    FEDAVG_WINDOW, RATE_LIMIT, FEDSWARM_STORE_PATH, ...).

    \b
    Examples:
        fedswarm serve                         Loopback-only service on 8080
        fedswarm serve --port 9000 --token s3  Token-protected service
    """
    # Import here to avoid slow startup
    from fedswarm.config import ServerConfig
    from fedswarm.exceptions import ConfigurationError
    from fedswarm.server.app import run_server

    try:
        config = ServerConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if token:
        config.auth_token = token
    if fedavg_window is not None:
        config.fedavg_window = fedavg_window
    if rate_limit is not None:
        config.rate_limit_requests = rate_limit
    if no_rate_limit:
        config.rate_limit_enabled = False
    if store_path:
        config.store_path = store_path

    try:
        run_server(config)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
