"""Persisted sync bookkeeping and the last merged weight set."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ..config import ClientConfig
from ..exceptions import StorageError
from ..models import SyncState, utc_now_iso
from ..persistence import read_json, write_json

logger = logging.getLogger(__name__)


class SyncStateStore:
    """Load and save ``SyncState`` and merged weights.

    Without paths everything lives in memory, which is what tests and
    throwaway clients use. Write failures are logged, never raised: losing a
    bookkeeping update must not abort a sync that already talked to the
    service.
    """

    def __init__(
        self,
        state_path: str | Path | None = None,
        merged_weights_path: str | Path | None = None,
    ):
        self._state_path = Path(state_path) if state_path else None
        self._merged_path = Path(merged_weights_path) if merged_weights_path else None
        self._state: dict[str, Any] = {}
        self._merged: dict[str, Any] | None = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> SyncStateStore:
        return cls(config.state_path, config.merged_weights_path)

    def load(self) -> SyncState:
        """Current state. Missing or corrupted files yield defaults."""
        if self._state_path is None:
            return SyncState.from_dict(self._state)
        data = read_json(self._state_path, default={})
        return SyncState.from_dict(data if isinstance(data, dict) else {})

    def save(self, state: SyncState) -> None:
        self._state = state.to_dict()
        if self._state_path is None:
            return
        try:
            write_json(self._state_path, self._state)
        except StorageError as e:
            logger.warning(f"Failed to save sync state: {e}")

    def save_merged_weights(
        self,
        weights: dict[str, Any],
        *,
        local_version: str | None = None,
        global_version: str | None = None,
    ) -> None:
        self._merged = {
            "weights": weights,
            "mergedAt": utc_now_iso(),
            "localVersion": local_version,
            "globalVersion": global_version,
        }
        if self._merged_path is None:
            return
        try:
            write_json(self._merged_path, self._merged)
        except StorageError as e:
            logger.warning(f"Failed to save merged weights: {e}")

    def load_merged_weights(self) -> dict[str, Any] | None:
        """The last merged document ``{weights, mergedAt, localVersion, globalVersion}``."""
        if self._merged_path is None:
            return self._merged
        data = read_json(self._merged_path)
        return data if isinstance(data, dict) else None
