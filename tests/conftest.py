"""Shared pytest fixtures for fedswarm tests."""

import pytest

from fedswarm.config import ClientConfig, ServerConfig
from fedswarm.models import CommandPattern, ErrorPattern, TeamPattern, ToolPattern


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep every test away from the real home directory and environment."""
    for name in (
        "FEDSWARM_SERVER_URL",
        "FEDSWARM_TOKEN",
        "FEDSWARM_ALLOWED_HOSTS",
        "FEDSWARM_SERVER_TOKEN",
        "FEDSWARM_STORE_PATH",
        "CORS_ALLOWED_ORIGINS",
        "PORT",
        "HOST",
        "RATE_LIMIT",
        "RATE_LIMIT_WINDOW_MS",
        "FEDAVG_WINDOW",
        "MAX_UPLOAD_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FEDSWARM_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("FEDSWARM_CLIENT_ID", "test-client")
    yield


@pytest.fixture
def client_config():
    """In-memory client config with instant retries."""
    return ClientConfig(
        server_url="http://127.0.0.1:8080",
        client_id="client-a",
        retry_base_delay_ms=0,
        retry_jitter_ms=0,
        home_dir=None,
    )


@pytest.fixture
def server_config():
    return ServerConfig(rate_limit_enabled=False)


@pytest.fixture
def tool_pattern():
    """The canonical eligible tool statistic."""
    return ToolPattern(category="Read", confidence=0.6, sample_size=5, success_rate=0.8, avg_ms=250)


@pytest.fixture
def mixed_patterns(tool_pattern):
    """One eligible pattern of every kind plus two ineligible ones."""
    return [
        tool_pattern,
        ErrorPattern(
            category="ENOENT",
            confidence=0.7,
            sample_size=4,
            message="no such file or directory: config.json",
            recoverable=True,
        ),
        CommandPattern(
            category="build",
            confidence=0.9,
            sample_size=10,
            duration_ms=30000,
            files_modified=5,
            tests_pass=False,
        ),
        TeamPattern(category="pair", confidence=0.5, sample_size=3, size=2, duration_ms=120000),
        # Below the sample size floor
        ToolPattern(category="Grep", confidence=0.9, sample_size=2, success_rate=1.0),
        # Below the confidence floor
        ToolPattern(category="Bash", confidence=0.39, sample_size=50, success_rate=0.5),
    ]


@pytest.fixture
def loopback_peer():
    """ASGI client address that passes the loopback-only auth gate."""
    return ("127.0.0.1", 50123)
