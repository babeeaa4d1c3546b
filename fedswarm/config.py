"""Configuration models for fedswarm clients and the aggregation service."""

from __future__ import annotations

import hashlib
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigurationError

# Environment variables
SERVER_URL_ENV_VAR = "FEDSWARM_SERVER_URL"
CLIENT_TOKEN_ENV_VAR = "FEDSWARM_TOKEN"
ALLOWED_HOSTS_ENV_VAR = "FEDSWARM_ALLOWED_HOSTS"
HOME_ENV_VAR = "FEDSWARM_HOME"
CLIENT_ID_ENV_VAR = "FEDSWARM_CLIENT_ID"

DEFAULT_SERVER_URL = "http://127.0.0.1:8080"
DEFAULT_HOME_DIR = ".fedswarm"
API_PREFIX = "/api/v1"

# Hosts a client may always talk to, whatever the configuration says
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")

MAX_UPLOAD_BYTES = 5 * 1024 * 1024

# Merge ratio applied when no explicit ratio is given: [local, global]
DEFAULT_MERGE_RATIO = (0.3, 0.7)

# Sync intervals in seconds; "session" means hook-driven only
SYNC_INTERVALS: dict[str, int | None] = {
    "session": None,
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
}
DEFAULT_SYNC_INTERVAL = "session"


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer", details={"value": raw}
        ) from None


def get_default_home() -> str:
    """Get the directory holding client-local state.

    Checks FEDSWARM_HOME first, falls back to ~/.fedswarm.
    """
    env_path = os.environ.get(HOME_ENV_VAR, "").strip()
    if env_path:
        return env_path
    return str(Path.home() / DEFAULT_HOME_DIR)


def generate_client_id() -> str:
    """Derive a stable, anonymized installation id.

    Uses hostname and uid so the id survives restarts without identifying
    the user. SHA256[:16] keeps collisions negligible.
    """
    env_id = os.environ.get(CLIENT_ID_ENV_VAR, "").strip()
    if env_id:
        return env_id
    machine_info = f"{socket.gethostname()}:{os.getuid() if hasattr(os, 'getuid') else 'unknown'}"
    return hashlib.sha256(machine_info.encode()).hexdigest()[:16]


@dataclass
class ClientConfig:
    """Configuration for the transport client and local persistence."""

    # Server
    server_url: str = field(
        default_factory=lambda: os.environ.get(SERVER_URL_ENV_VAR, "").strip() or DEFAULT_SERVER_URL
    )
    auth_token: str | None = field(
        default_factory=lambda: os.environ.get(CLIENT_TOKEN_ENV_VAR) or None
    )
    allowed_hosts: list[str] = field(default_factory=lambda: _env_list(ALLOWED_HOSTS_ENV_VAR))
    client_id: str = field(default_factory=generate_client_id)

    # Timeouts (seconds)
    request_timeout_seconds: float = 30.0
    health_timeout_seconds: float = 10.0

    # Retry
    max_retries: int = 3  # Retries after the first attempt
    retry_base_delay_ms: int = 1000
    retry_jitter_ms: int = 500

    # Upload limits
    max_upload_bytes: int = MAX_UPLOAD_BYTES

    # Local state (None = in-memory only)
    home_dir: str | None = field(default_factory=get_default_home)
    max_queue_size: int = 100

    @property
    def queue_path(self) -> str | None:
        return str(Path(self.home_dir) / "offline-queue.json") if self.home_dir else None

    @property
    def state_path(self) -> str | None:
        return str(Path(self.home_dir) / "sync-state.json") if self.home_dir else None

    @property
    def merged_weights_path(self) -> str | None:
        return str(Path(self.home_dir) / "merged-weights.json") if self.home_dir else None


@dataclass
class ServerConfig:
    """Aggregation service configuration."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Limits
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    fedavg_window: int = 50
    max_versions: int = 100
    max_telemetry: int = 10000

    # Rate limiting (sliding window, per IP)
    rate_limit_enabled: bool = True
    rate_limit_requests: int = 60
    rate_limit_window_ms: int = 60000

    # Security
    auth_token: str | None = None  # None = loopback clients only
    cors_allowed_origins: list[str] | None = None  # None = localhost origins only

    # Persistence (None = in-memory only)
    store_path: str | None = None

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Build a config from the process environment."""
        origins = _env_list("CORS_ALLOWED_ORIGINS")
        return cls(
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", MAX_UPLOAD_BYTES),
            fedavg_window=_env_int("FEDAVG_WINDOW", 50),
            rate_limit_requests=_env_int("RATE_LIMIT", 60),
            rate_limit_window_ms=_env_int("RATE_LIMIT_WINDOW_MS", 60000),
            auth_token=os.environ.get("FEDSWARM_SERVER_TOKEN") or None,
            cors_allowed_origins=origins or None,
            store_path=os.environ.get("FEDSWARM_STORE_PATH") or None,
        )
