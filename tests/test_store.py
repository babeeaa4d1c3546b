"""Tests for the versioned weight store."""

import json

from fedswarm.codec import compute_checksum
from fedswarm.server.store import WeightStore, compute_diff


def tool_weights(rate, size=5, key="Read"):
    return {"tools": {key: {"successRate": rate, "sampleSize": size}}}


class TestVersioning:
    """Snapshot versions and retention."""

    def test_versions_increase(self):
        store = WeightStore()
        first = store.ingest(tool_weights(0.5), {"clientId": "a"})
        second = store.ingest(tool_weights(0.6), {"clientId": "a"})
        assert (first.version, second.version) == ("v1", "v2")
        assert store.current_version == "v2"

    def test_snapshot_metadata(self):
        store = WeightStore()
        snapshot = store.ingest(tool_weights(0.5), {"clientId": "a", "sampleSize": 5})
        assert snapshot.metadata["version"] == "v1"
        assert snapshot.metadata["storedAt"] == snapshot.timestamp
        assert snapshot.metadata["clientId"] == "a"

    def test_oldest_evicted_and_versions_never_reused(self):
        store = WeightStore(max_versions=2)
        for rate in (0.1, 0.2, 0.3):
            store.ingest(tool_weights(rate))
        assert store.get_snapshot("v1") is None
        assert [s.version for s in store.recent_snapshots(None)] == ["v2", "v3"]
        assert store.ingest(tool_weights(0.4)).version == "v4"

    def test_store_weights_does_not_refold(self):
        store = WeightStore()
        store.store_weights(tool_weights(0.5))
        assert store.current_version == "v1"
        assert store.get_latest() is None


class TestGlobalWeights:
    """FedAvg refolding and latest/diff reads."""

    def test_no_weights_before_first_upload(self):
        store = WeightStore()
        assert store.get_latest() is None
        assert store.get_weights_since("v1") is None

    def test_latest_has_checksum(self):
        store = WeightStore()
        store.ingest(tool_weights(0.8))
        latest = store.get_latest()
        assert latest["version"] == "v1"
        assert latest["weights"] == tool_weights(0.8)
        assert latest["checksum"] == compute_checksum(latest["weights"])

    def test_fedavg_over_window(self):
        store = WeightStore(fedavg_window=2)
        store.ingest(tool_weights(1.0, size=100))
        store.ingest(tool_weights(0.0, size=1))
        store.ingest(tool_weights(1.0, size=1))
        # Only the last two snapshots count
        assert store.get_global_weights()["tools"]["Read"] == {"successRate": 0.5, "sampleSize": 2}

    def test_since_known_version_includes_diff(self):
        store = WeightStore(fedavg_window=1)
        store.ingest({"tools": {"A": {"successRate": 0.1}, "B": {"successRate": 0.2}}})
        store.ingest({"tools": {"A": {"successRate": 0.9}, "C": {"successRate": 0.3}}})

        result = store.get_weights_since("v1")
        assert result["version"] == "v2"
        diff = result["diff"]
        assert diff["added"]["tools"] == {"C": {"successRate": 0.3}}
        assert diff["changed"]["tools"] == {"A": {"successRate": 0.9}}
        assert diff["removed"]["tools"] == {"B": True}
        assert diff["added"]["errors"] == {}

    def test_since_unknown_version_is_full_payload(self):
        store = WeightStore()
        store.ingest(tool_weights(0.5))
        result = store.get_weights_since("v99")
        assert "diff" not in result
        assert result["weights"] == tool_weights(0.5)

    def test_compute_diff_unchanged(self):
        weights = tool_weights(0.5)
        diff = compute_diff(weights, json.loads(json.dumps(weights)))
        assert diff["changed"]["tools"] == {}
        assert diff["added"]["tools"] == {}


class TestClients:
    """Contribution counters and rank."""

    def test_unknown_client(self):
        assert WeightStore().get_client_stats("nobody") is None

    def test_counters(self):
        store = WeightStore()
        store.ingest(tool_weights(0.5), {"clientId": "a"})
        store.record_download("a")
        store.record_download("a")
        stats = store.get_client_stats("a")
        assert stats["uploads"] == 1
        assert stats["downloads"] == 2
        assert stats["rank"] == 1
        assert stats["firstSeen"]
        assert stats["lastUpload"]

    def test_ties_share_rank(self):
        store = WeightStore()
        for client_id in ("a", "a", "b", "b", "c"):
            store.ingest(tool_weights(0.5), {"clientId": client_id})
        assert store.get_client_stats("a")["rank"] == 1
        assert store.get_client_stats("b")["rank"] == 1
        assert store.get_client_stats("c")["rank"] == 3

    def test_download_only_client(self):
        store = WeightStore()
        store.ingest(tool_weights(0.5), {"clientId": "a"})
        store.record_download("reader")
        stats = store.get_client_stats("reader")
        assert stats["uploads"] == 0
        assert stats["rank"] == 2

    def test_anonymous_uploads(self):
        store = WeightStore()
        store.ingest(tool_weights(0.5), {})
        assert store.get_client_stats("anonymous")["uploads"] == 1

    def test_record_download_ignores_missing_id(self):
        store = WeightStore()
        store.record_download(None)
        assert store.get_server_info()["totalClients"] == 0


class TestTelemetryAndInfo:
    def test_telemetry_ring_buffer(self):
        store = WeightStore(max_telemetry=3)
        for i in range(5):
            store.store_telemetry({"n": i})
        summary = store.get_telemetry_summary()
        assert summary["totalRecords"] == 3
        assert [r["n"] for r in summary["recentRecords"]] == [2, 3, 4]
        assert all("receivedAt" in r for r in summary["recentRecords"])

    def test_server_info(self):
        store = WeightStore()
        store.ingest(tool_weights(0.5), {"clientId": "a"})
        store.store_telemetry({"sessions": 1})
        info = store.get_server_info()
        assert info["totalClients"] == 1
        assert info["totalVersions"] == 1
        assert info["currentVersion"] == "v1"
        assert info["totalTelemetry"] == 1
        assert info["uptime"] >= 0
        assert "memoryUsageMB" in info

    def test_current_version_none_when_empty(self):
        assert WeightStore().get_server_info()["currentVersion"] is None


class TestPersistence:
    """Optional JSON persistence."""

    def test_reload_from_disk(self, tmp_path):
        path = tmp_path / "store.json"
        store = WeightStore(path=path)
        store.ingest(tool_weights(0.5), {"clientId": "a"})
        store.ingest(tool_weights(0.7), {"clientId": "b"})

        reloaded = WeightStore(path=path)
        assert reloaded.current_version == "v2"
        assert reloaded.get_global_weights() == store.get_global_weights()
        assert reloaded.get_client_stats("b")["uploads"] == 1
        assert reloaded.ingest(tool_weights(0.1)).version == "v3"

    def test_corrupted_file_starts_fresh(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        store = WeightStore(path=path)
        assert store.current_version is None
        store.ingest(tool_weights(0.5))
        assert json.loads(path.read_text())["versionCounter"] == 1
