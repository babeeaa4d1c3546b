"""Sync lifecycle: session hooks, full cycles and the interval timer.

A full cycle runs in this order:

    1. flush the offline queue
    2. package local patterns and upload them
    3. download global weights (delta since the current version)
    4. merge global into local and persist the result

Only one cycle runs at a time per orchestrator; a concurrent request is
rejected rather than queued.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from ..codec import merge_weights, package_patterns, unpack_weights, validate_ratio
from ..config import DEFAULT_SYNC_INTERVAL, SYNC_INTERVALS
from ..exceptions import ConfigurationError
from ..models import (
    LocalPattern,
    PackageResult,
    ScheduleResult,
    SessionEndResult,
    SessionStartResult,
    SyncState,
    SyncResult,
    UploadResult,
    utc_now_iso,
)
from .state import SyncStateStore
from .transport import SwarmClient, Transform

logger = logging.getLogger(__name__)

PatternList = Iterable[Union[LocalPattern, dict[str, Any]]]
PatternSource = Callable[[], Union[PatternList, Awaitable[PatternList]]]


class SyncOrchestrator:
    """Drives uploads and downloads for one installation.

    Args:
        client: Transport to the aggregation service.
        state_store: Where sync bookkeeping and merged weights live.
        pattern_source: Callable (sync or async) returning the current local
            patterns. Without one, nothing is ever uploaded.
        merge_ratio: ``[local, global]`` blend, default ``[0.3, 0.7]``.
        scrub_pii: Replacement for the default PII scrubber.
        add_noise: Optional differential-privacy transform applied after
            scrubbing.
        intervals: Override of the interval table (name -> seconds).
    """

    def __init__(
        self,
        client: SwarmClient,
        state_store: SyncStateStore | None = None,
        pattern_source: PatternSource | None = None,
        *,
        merge_ratio: Sequence[float] | None = None,
        scrub_pii: Transform | None = None,
        add_noise: Transform | None = None,
        intervals: dict[str, float | None] | None = None,
    ):
        self._client = client
        self._state = state_store or SyncStateStore()
        self._pattern_source = pattern_source
        self._merge_ratio = validate_ratio(merge_ratio)
        self._scrub_pii = scrub_pii
        self._add_noise = add_noise
        self._intervals = dict(intervals if intervals is not None else SYNC_INTERVALS)

        self._sync_in_progress = False
        self._timer: asyncio.Task[None] | None = None

    @property
    def is_busy(self) -> bool:
        return self._sync_in_progress

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _package(self) -> PackageResult:
        patterns: Any = []
        if self._pattern_source is not None:
            patterns = self._pattern_source()
            if inspect.isawaitable(patterns):
                patterns = await patterns
        return package_patterns(patterns or [])

    async def _upload(self, packaged: PackageResult, state: SyncState) -> UploadResult:
        metadata = {
            "version": state.current_version,
            "sampleSize": packaged.metadata.sample_size,
            "checksum": packaged.checksum,
        }
        return await self._client.upload_weights(
            packaged.weights, metadata, scrub_pii=self._scrub_pii, add_noise=self._add_noise
        )

    # =========================================================================
    # Session hooks
    # =========================================================================

    async def on_session_start(self) -> SessionStartResult:
        """Pull the latest global weights and merge them into local ones."""
        state = self._state.load()
        result = await self._client.download_latest_weights(state.current_version)

        if not (result.success and result.weights):
            return SessionStartResult(downloaded=False, version=state.current_version)

        state.last_download = utc_now_iso()
        state.total_downloads += 1
        local_version = state.current_version
        if result.version:
            state.current_version = result.version

        packaged = await self._package()
        merged = merge_weights(packaged.weights, result.weights, self._merge_ratio)
        self._state.save_merged_weights(
            merged, local_version=local_version, global_version=result.version
        )
        self._state.save(state)

        logger.info(f"Session start: merged global weights {result.version}")
        return SessionStartResult(downloaded=True, version=result.version)

    async def on_session_end(self) -> SessionEndResult:
        """Deliver queued uploads, then upload this session's patterns."""
        state = self._state.load()
        await self._client.flush_offline_queue()

        packaged = await self._package()
        if packaged.metadata.packaged_count == 0:
            state.pending_uploads = len(self._client.queue)
            self._state.save(state)
            return SessionEndResult(uploaded=False, version=state.current_version)

        result = await self._upload(packaged, state)
        if result.success:
            state.last_upload = utc_now_iso()
            state.total_uploads += 1
            if result.version:
                state.current_version = result.version
        state.pending_uploads = len(self._client.queue)
        self._state.save(state)

        return SessionEndResult(
            uploaded=result.success, version=state.current_version, queued=result.queued
        )

    # =========================================================================
    # Full cycle
    # =========================================================================

    async def force_sync(self) -> SyncResult:
        """Run a full cycle now."""
        return await self.perform_sync()

    async def perform_sync(self) -> SyncResult:
        # Claimed before the first await so racing callers are rejected
        if self._sync_in_progress:
            return SyncResult(success=False, error="Sync already in progress")
        self._sync_in_progress = True

        try:
            state = self._state.load()
            uploaded = downloaded = merged = False
            version = state.current_version

            flush = await self._client.flush_offline_queue()

            packaged = await self._package()
            if packaged.metadata.packaged_count > 0:
                upload = await self._upload(packaged, state)
                if upload.success:
                    uploaded = True
                    state.last_upload = utc_now_iso()
                    state.total_uploads += 1
                    if upload.version:
                        version = upload.version

            download = await self._client.download_latest_weights(state.current_version)
            if download.success and download.weights:
                downloaded = True
                state.last_download = utc_now_iso()
                state.total_downloads += 1
                if download.version:
                    version = download.version

                if unpack_weights(download.weights):
                    merged_weights = merge_weights(
                        packaged.weights, download.weights, self._merge_ratio
                    )
                    self._state.save_merged_weights(
                        merged_weights,
                        local_version=state.current_version,
                        global_version=download.version,
                    )
                    merged = True

            state.current_version = version
            state.pending_uploads = len(self._client.queue)
            self._state.save(state)

            logger.info(
                f"Sync complete: uploaded={uploaded} downloaded={downloaded} "
                f"merged={merged} flushed={flush.flushed} version={version}"
            )
            return SyncResult(
                success=True,
                uploaded=uploaded,
                downloaded=downloaded,
                merged=merged,
                flushed=flush.flushed,
                version=version,
            )

        except Exception as e:
            logger.error(f"Sync failed: {e}")
            return SyncResult(success=False, error=str(e))

        finally:
            self._sync_in_progress = False

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_sync(self, interval: str | None = None) -> ScheduleResult:
        """Arm the interval timer, replacing any existing one.

        ``session`` disarms the timer and leaves syncing to the session hooks.

        Raises:
            ConfigurationError: If the interval is unknown.
        """
        interval = interval or DEFAULT_SYNC_INTERVAL
        if interval not in self._intervals:
            raise ConfigurationError(
                f"Unknown sync interval '{interval}'",
                details={"valid_intervals": list(self._intervals)},
            )

        self.cancel_sync()
        state = self._state.load()
        state.interval = interval
        seconds = self._intervals[interval]

        if not seconds:
            state.next_sync = None
            self._state.save(state)
            return ScheduleResult(scheduled=False, interval=interval)

        next_sync = (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()
        state.next_sync = next_sync
        self._timer = asyncio.create_task(self._run_timer(interval, seconds))
        self._state.save(state)

        logger.info(f"Next {interval} sync at {next_sync}")
        return ScheduleResult(scheduled=True, interval=interval, next_sync=next_sync)

    async def _run_timer(self, interval: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        await self.perform_sync()
        # Detach before re-arming so schedule_sync doesn't cancel this task
        self._timer = None
        await self.schedule_sync(interval)

    def cancel_sync(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def start(self, interval: str | None = None) -> ScheduleResult:
        """Arm the timer with ``interval`` or the persisted one."""
        return await self.schedule_sync(interval or self._state.load().interval)

    async def stop(self) -> None:
        timer = self._timer
        self.cancel_sync()
        if timer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await timer

    def get_status(self) -> dict[str, Any]:
        """Persisted state plus live orchestrator flags."""
        status = self._state.load().to_dict()
        status["syncInProgress"] = self._sync_in_progress
        status["scheduled"] = self.is_scheduled
        status["queuedUploads"] = len(self._client.queue)
        return status
