"""End-to-end scenarios: two installations sharing through one service."""

import httpx
import pytest

pytest.importorskip("fastapi")

from fedswarm.client.orchestrator import SyncOrchestrator
from fedswarm.client.queue import OfflineQueue
from fedswarm.client.state import SyncStateStore
from fedswarm.client.transport import SwarmClient
from fedswarm.codec import unpack_weights
from fedswarm.config import ClientConfig, ServerConfig
from fedswarm.models import ToolPattern
from fedswarm.server.app import create_app


class SwitchableTransport(httpx.AsyncBaseTransport):
    """Routes to the in-process service only while ``online`` is set."""

    def __init__(self, inner: httpx.AsyncBaseTransport):
        self.inner = inner
        self.online = False

    async def handle_async_request(self, request):
        if not self.online:
            raise httpx.ConnectError("Connection refused")
        return await self.inner.handle_async_request(request)


@pytest.fixture
def app():
    return create_app(ServerConfig(rate_limit_enabled=False))


def installation(client_id, home_dir=None):
    return ClientConfig(
        server_url="http://127.0.0.1:8080",
        client_id=client_id,
        retry_base_delay_ms=0,
        retry_jitter_ms=0,
        home_dir=home_dir,
    )


class TestSharing:
    @pytest.mark.asyncio
    async def test_pattern_reaches_second_installation(self, app, loopback_peer, tool_pattern):
        """A uploads Read at 0.8, B pulls it and merges it with its own 0.8."""
        alice = SwarmClient(
            installation("alice"), transport=httpx.ASGITransport(app=app, client=loopback_peer)
        )
        bob = SwarmClient(
            installation("bob"), transport=httpx.ASGITransport(app=app, client=loopback_peer)
        )

        upload = await SyncOrchestrator(alice, pattern_source=lambda: [tool_pattern]).on_session_end()
        assert upload.uploaded is True
        assert upload.version == "v1"

        download = await bob.download_latest_weights()
        assert download.version == "v1"
        (shared,) = unpack_weights(download.weights)
        assert isinstance(shared, ToolPattern)
        assert shared.category == "Read"
        assert shared.success_rate == 0.8
        assert shared.source == "swarm-global"

        bob_state = SyncStateStore()
        start = await SyncOrchestrator(bob, bob_state, lambda: [tool_pattern]).on_session_start()
        assert start.downloaded is True
        merged = bob_state.load_merged_weights()["weights"]["tools"]["Read"]
        assert merged["successRate"] == 0.8
        assert merged["sampleSize"] == 10

        stats = await alice.get_contribution_stats("alice")
        assert (stats.uploads, stats.rank) == (1, 1)
        await alice.aclose()
        await bob.aclose()

    @pytest.mark.asyncio
    async def test_global_weights_follow_sample_sizes(self, app, loopback_peer):
        small = ToolPattern(category="Read", confidence=0.6, sample_size=3, success_rate=0.0)
        large = ToolPattern(category="Read", confidence=0.6, sample_size=27, success_rate=1.0)

        for name, pattern in (("small", small), ("large", large)):
            client = SwarmClient(
                installation(name), transport=httpx.ASGITransport(app=app, client=loopback_peer)
            )
            await SyncOrchestrator(client, pattern_source=lambda p=pattern: [p]).on_session_end()

        read = app.state.store.get_global_weights()["tools"]["Read"]
        assert read["successRate"] == 0.9
        assert read["sampleSize"] == 30


class TestOfflineRecovery:
    @pytest.mark.asyncio
    async def test_queued_upload_delivered_after_restart(self, app, loopback_peer, tool_pattern, tmp_path):
        home = str(tmp_path / "client")
        config = installation("carol", home_dir=home)

        transport = SwitchableTransport(httpx.ASGITransport(app=app, client=loopback_peer))
        offline = SwarmClient(config, transport=transport)
        orchestrator = SyncOrchestrator(offline, SyncStateStore.from_config(config), lambda: [tool_pattern])

        ended = await orchestrator.on_session_end()
        assert ended.uploaded is False
        assert ended.queued is True
        assert SyncStateStore.from_config(config).load().pending_uploads == 1
        assert app.state.store.current_version is None
        await offline.aclose()

        # New process: the queue is reloaded from disk
        transport.online = True
        restarted = SwarmClient(config, transport=transport)
        assert len(restarted.queue) == 1
        orchestrator = SyncOrchestrator(
            restarted, SyncStateStore.from_config(config), lambda: [tool_pattern]
        )

        result = await orchestrator.perform_sync()

        assert result.success is True
        assert result.flushed == 1
        assert result.uploaded is True
        assert result.merged is True
        assert result.version == "v2"
        assert len(OfflineQueue(config.queue_path)) == 0
        state = SyncStateStore.from_config(config).load()
        assert state.pending_uploads == 0
        assert state.current_version == "v2"
        assert app.state.store.get_client_stats("carol")["uploads"] == 2
        await restarted.aclose()
