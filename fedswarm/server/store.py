"""Versioned weight storage for the aggregation service.

Holds every accepted snapshot (bounded, oldest evicted), the current global
weights, per-client contribution counters and a telemetry ring buffer.
Versions are ``v1``, ``v2``, ... from a monotonic counter and are never
reused, even after eviction.

Single writer per process: the counter lives in this object, so running
several replicas against one store file is not supported.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..codec import compute_checksum
from ..exceptions import StorageError
from ..models import CATEGORIES, WeightSnapshot, utc_now_iso
from ..persistence import read_json, write_json
from .fedavg import federated_average

try:
    import resource
except ImportError:  # Windows
    resource = None  # type: ignore

logger = logging.getLogger(__name__)

DEFAULT_MAX_VERSIONS = 100
DEFAULT_MAX_TELEMETRY = 10000
DEFAULT_FEDAVG_WINDOW = 50


@dataclass
class ClientRecord:
    """Contribution counters for one client id."""

    uploads: int = 0
    downloads: int = 0
    first_seen: str | None = None
    last_upload: str | None = None
    last_download: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uploads": self.uploads,
            "downloads": self.downloads,
            "firstSeen": self.first_seen,
            "lastUpload": self.last_upload,
            "lastDownload": self.last_download,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientRecord:
        return cls(
            uploads=data.get("uploads") or 0,
            downloads=data.get("downloads") or 0,
            first_seen=data.get("firstSeen"),
            last_upload=data.get("lastUpload"),
            last_download=data.get("lastDownload"),
        )


def is_weight_set(weights: Any) -> bool:
    """True for a mapping whose known categories each map keys to entry dicts."""
    if not isinstance(weights, dict):
        return False
    for category in CATEGORIES:
        entries = weights.get(category)
        if entries is None:
            continue
        if not isinstance(entries, dict):
            return False
        if not all(isinstance(entry, dict) for entry in entries.values()):
            return False
    return True


def compute_diff(old_weights: dict[str, Any] | None, new_weights: dict[str, Any] | None) -> dict[str, Any]:
    """Per-category ``added`` / ``changed`` / ``removed`` between two weight sets.

    Removed keys map to True since their old values are of no use to a client.
    """
    diff: dict[str, dict[str, dict[str, Any]]] = {"added": {}, "changed": {}, "removed": {}}

    for category in CATEGORIES:
        old_category = (old_weights or {}).get(category) or {}
        new_category = (new_weights or {}).get(category) or {}

        added = {key: value for key, value in new_category.items() if key not in old_category}
        changed = {
            key: value
            for key, value in new_category.items()
            if key in old_category and compute_checksum(old_category[key]) != compute_checksum(value)
        }
        removed = {key: True for key in old_category if key not in new_category}

        diff["added"][category] = added
        diff["changed"][category] = changed
        diff["removed"][category] = removed

    return diff


def _memory_usage_mb() -> int | None:
    if resource is None:
        return None
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(peak / divisor)


class WeightStore:
    """Thread-safe store of snapshots, global weights and client counters.

    Usage:
        store = WeightStore(fedavg_window=50)
        snapshot = store.ingest(weights, {"clientId": "abc", "sampleSize": 12})
        latest = store.get_weights_since("v3")
    """

    def __init__(
        self,
        *,
        max_versions: int = DEFAULT_MAX_VERSIONS,
        max_telemetry: int = DEFAULT_MAX_TELEMETRY,
        fedavg_window: int = DEFAULT_FEDAVG_WINDOW,
        path: str | Path | None = None,
    ) -> None:
        self._max_versions = max_versions
        self._fedavg_window = fedavg_window
        self._path = Path(path) if path else None

        self._versions: OrderedDict[str, WeightSnapshot] = OrderedDict()
        self._global_weights: dict[str, Any] | None = None
        self._version_counter = 0
        self._clients: dict[str, ClientRecord] = {}
        self._telemetry: deque[dict[str, Any]] = deque(maxlen=max_telemetry)
        self._started_at = time.time()
        self._lock = threading.Lock()

        self._load_from_disk()

    # =========================================================================
    # Weights
    # =========================================================================

    @property
    def current_version(self) -> str | None:
        with self._lock:
            return self._current_version_locked()

    def _current_version_locked(self) -> str | None:
        return f"v{self._version_counter}" if self._version_counter else None

    def store_weights(self, weights: dict[str, Any], metadata: dict[str, Any] | None = None) -> WeightSnapshot:
        """Record a snapshot without recomputing the global weights."""
        with self._lock:
            snapshot = self._store_locked(weights, metadata or {})
        self._save()
        return snapshot

    def _store_locked(self, weights: dict[str, Any], metadata: dict[str, Any]) -> WeightSnapshot:
        self._version_counter += 1
        version = f"v{self._version_counter}"
        timestamp = utc_now_iso()

        snapshot = WeightSnapshot(
            weights=weights,
            metadata={**metadata, "version": version, "storedAt": timestamp},
            version=version,
            timestamp=timestamp,
        )
        self._versions[version] = snapshot
        while len(self._versions) > self._max_versions:
            self._versions.popitem(last=False)

        client_id = metadata.get("clientId") or "anonymous"
        record = self._clients.get(client_id) or ClientRecord(first_seen=timestamp)
        record.uploads += 1
        record.last_upload = timestamp
        self._clients[client_id] = record

        return snapshot

    def ingest(self, weights: dict[str, Any], metadata: dict[str, Any] | None = None) -> WeightSnapshot:
        """Store an upload and refold the global weights over the recent window."""
        with self._lock:
            snapshot = self._store_locked(weights, metadata or {})
            recent = list(self._versions.values())[-self._fedavg_window :]
            self._global_weights = federated_average(recent)
        self._save()

        logger.info(
            f"Stored {snapshot.version} from {snapshot.metadata.get('clientId', 'anonymous')}, "
            f"merged {len(recent)} snapshot(s)"
        )
        return snapshot

    def set_global_weights(self, weights: dict[str, Any] | None) -> None:
        with self._lock:
            self._global_weights = weights
        self._save()

    def get_global_weights(self) -> dict[str, Any] | None:
        with self._lock:
            return self._global_weights

    def get_snapshot(self, version: str) -> WeightSnapshot | None:
        with self._lock:
            return self._versions.get(version)

    def recent_snapshots(self, limit: int | None = DEFAULT_FEDAVG_WINDOW) -> list[WeightSnapshot]:
        """Retained snapshots, oldest first, at most ``limit`` of them."""
        with self._lock:
            snapshots = list(self._versions.values())
        return snapshots[-limit:] if limit else snapshots

    def get_latest(self) -> dict[str, Any] | None:
        """``{weights, version, checksum}`` or None before the first upload."""
        with self._lock:
            return self._latest_locked()

    def _latest_locked(self) -> dict[str, Any] | None:
        if self._global_weights is None:
            return None
        return {
            "weights": self._global_weights,
            "version": self._current_version_locked(),
            "checksum": compute_checksum(self._global_weights),
        }

    def get_weights_since(self, since_version: str | None) -> dict[str, Any] | None:
        """Latest weights, plus a diff when ``since_version`` is still retained."""
        with self._lock:
            latest = self._latest_locked()
            if latest is None:
                return None
            since = self._versions.get(since_version) if since_version else None
            if since is None:
                return latest
            return {**latest, "diff": compute_diff(since.weights, latest["weights"])}

    # =========================================================================
    # Clients
    # =========================================================================

    def record_download(self, client_id: str | None) -> None:
        if not client_id:
            return
        with self._lock:
            now = utc_now_iso()
            record = self._clients.get(client_id) or ClientRecord(first_seen=now)
            record.downloads += 1
            record.last_download = now
            self._clients[client_id] = record
        self._save()

    def get_client_stats(self, client_id: str) -> dict[str, Any] | None:
        """Counters and upload rank for a client, None if never seen.

        Clients with equal upload counts share a rank.
        """
        with self._lock:
            record = self._clients.get(client_id)
            if record is None:
                return None
            upload_counts = sorted((r.uploads for r in self._clients.values()), reverse=True)
            rank = upload_counts.index(record.uploads) + 1
            return {
                "uploads": record.uploads,
                "downloads": record.downloads,
                "rank": rank,
                "firstSeen": record.first_seen,
                "lastUpload": record.last_upload,
            }

    # =========================================================================
    # Telemetry
    # =========================================================================

    def store_telemetry(self, stats: dict[str, Any]) -> None:
        with self._lock:
            self._telemetry.append({**stats, "receivedAt": utc_now_iso()})

    def get_telemetry_summary(self, recent: int = 10) -> dict[str, Any]:
        with self._lock:
            records = list(self._telemetry)
        return {"totalRecords": len(records), "recentRecords": records[-recent:]}

    # =========================================================================
    # Health
    # =========================================================================

    def get_server_info(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime": round(time.time() - self._started_at),
                "totalClients": len(self._clients),
                "totalVersions": len(self._versions),
                "currentVersion": self._current_version_locked(),
                "totalTelemetry": len(self._telemetry),
                "memoryUsageMB": _memory_usage_mb(),
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def export_state(self) -> dict[str, Any]:
        with self._lock:
            return {
                "versionCounter": self._version_counter,
                "globalWeights": self._global_weights,
                "versions": [snapshot.to_dict() for snapshot in self._versions.values()],
                "clients": {cid: record.to_dict() for cid, record in self._clients.items()},
            }

    def _save(self) -> None:
        if self._path is None:
            return
        # Serialize under lock, write outside it
        data = self.export_state()
        try:
            write_json(self._path, data)
        except StorageError as e:
            logger.warning(f"Failed to persist weight store: {e}")

    def _load_from_disk(self) -> None:
        if self._path is None:
            return
        data = read_json(self._path)
        if not isinstance(data, dict):
            return

        versions = [
            WeightSnapshot.from_dict(item)
            for item in data.get("versions") or []
            if isinstance(item, dict) and item.get("version")
        ]
        self._versions = OrderedDict(
            (snapshot.version, snapshot) for snapshot in versions[-self._max_versions :]
        )
        self._version_counter = int(data.get("versionCounter") or 0)
        self._global_weights = data.get("globalWeights")
        self._clients = {
            cid: ClientRecord.from_dict(record)
            for cid, record in (data.get("clients") or {}).items()
            if isinstance(record, dict)
        }
        logger.info(
            f"Loaded weight store from {self._path}: {len(self._versions)} snapshot(s), "
            f"current {self._current_version_locked()}"
        )
