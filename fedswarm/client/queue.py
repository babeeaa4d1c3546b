"""Bounded, persisted FIFO of uploads waiting for connectivity."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from ..exceptions import StorageError
from ..models import OfflineQueueEntry
from ..persistence import read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE_SIZE = 100


class OfflineQueue:
    """Offline upload queue.

    Entries are kept oldest first; when the cap is reached the oldest entry
    is dropped. With a ``path`` every change is written through to disk so
    queued uploads survive restarts. ``lock`` serializes enqueue and flush.
    """

    def __init__(self, path: str | Path | None = None, max_size: int = DEFAULT_MAX_QUEUE_SIZE):
        self._path = Path(path) if path else None
        self._max_size = max_size
        self._entries: list[OfflineQueueEntry] = self._load()
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def max_size(self) -> int:
        return self._max_size

    def snapshot(self) -> list[OfflineQueueEntry]:
        """Copy of the queued entries, oldest first."""
        return list(self._entries)

    async def enqueue(self, entry: OfflineQueueEntry) -> int:
        """Append an entry, evicting the oldest past the cap. Returns the new length."""
        async with self.lock:
            self._entries.append(entry)
            overflow = len(self._entries) - self._max_size
            if overflow > 0:
                del self._entries[:overflow]
                logger.warning(f"Offline queue full, dropped {overflow} oldest upload(s)")
            self._save()
            return len(self._entries)

    def replace(self, entries: list[OfflineQueueEntry]) -> None:
        """Overwrite the queue contents. Caller must hold ``lock``."""
        self._entries = list(entries)[-self._max_size :] if self._max_size > 0 else []
        self._save()

    async def clear(self) -> None:
        async with self.lock:
            self.replace([])

    def _load(self) -> list[OfflineQueueEntry]:
        if self._path is None:
            return []
        data = read_json(self._path, default=[])
        if not isinstance(data, list):
            return []
        entries = [OfflineQueueEntry.from_dict(item) for item in data if isinstance(item, dict)]
        return entries[-self._max_size :] if self._max_size > 0 else []

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            write_json(self._path, [entry.to_dict() for entry in self._entries])
        except StorageError as e:
            # Entries stay queued in memory
            logger.warning(f"Failed to persist offline queue: {e}")
