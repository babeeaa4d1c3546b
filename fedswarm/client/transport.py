"""HTTP transport between an installation and the aggregation service.

All exchanges go through ``SwarmClient._request``: authenticated, bounded
retries with exponential backoff and jitter, typed failures. Public methods
turn those failures into result records so callers never have to handle
network exceptions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import httpx

from ..codec import compute_checksum, require_checksum
from ..config import API_PREFIX, LOOPBACK_HOSTS, ClientConfig
from ..exceptions import (
    ConfigurationError,
    ConnectivityError,
    FedSwarmError,
    IntegrityError,
    RequestRejectedError,
    ServiceUnavailableError,
    TransportError,
    ValidationError,
)
from ..models import (
    ContributionStats,
    DownloadResult,
    FlushResult,
    HealthResult,
    OfflineQueueEntry,
    PackagedWeights,
    UploadResult,
    utc_now_iso,
)
from ..privacy import scrub_pii as default_scrub_pii
from .queue import OfflineQueue

logger = logging.getLogger(__name__)

Transform = Callable[[dict[str, Any]], dict[str, Any]]


def validate_server_url(url: str, allowed_hosts: list[str] | None = None) -> str:
    """Check a service URL against the host allow-list.

    Only http(s) URLs whose host is loopback or explicitly allowed are
    accepted, so a tampered configuration cannot point uploads elsewhere.

    Returns:
        The URL without a trailing slash.

    Raises:
        ConfigurationError: If the scheme or host is not allowed.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(
            "Server URL must use http or https", details={"url": url, "scheme": parsed.scheme}
        )

    allowed = {host.lower() for host in (*LOOPBACK_HOSTS, *(allowed_hosts or []))}
    host = (parsed.hostname or "").lower()
    if host not in allowed:
        raise ConfigurationError(
            f"Server host '{host}' is not in the allowed host list",
            details={"allowed_hosts": sorted(allowed)},
        )

    return url.rstrip("/")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


class SwarmClient:
    """Async client for the aggregation service.

    Usage:
        async with SwarmClient(ClientConfig()) as client:
            result = await client.upload_weights(package.weights, {"sampleSize": 12})
            if result.queued:
                ...  # delivered later by flush_offline_queue()
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        queue: OfflineQueue | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or ClientConfig()
        self.base_url = validate_server_url(self.config.server_url, self.config.allowed_hosts)
        self.queue = queue or OfflineQueue(self.config.queue_path, self.config.max_queue_size)

        headers = {"Accept": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"

        self._http = httpx.AsyncClient(
            base_url=f"{self.base_url}{API_PREFIX}",
            headers=headers,
            timeout=self.config.request_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> SwarmClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def _backoff_ms(self, attempt: int) -> float:
        return self.config.retry_base_delay_ms * (2**attempt) + random.uniform(
            0, self.config.retry_jitter_ms
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a request with retry and exponential backoff.

        Raises:
            ConnectivityError: The service stayed unreachable.
            ServiceUnavailableError: 5xx or 429 until the retry ceiling.
            RequestRejectedError: Terminal 4xx (never retried).
            ValidationError: The response body was not a JSON object.
        """
        last_error: TransportError | None = None

        for attempt in range(self.config.max_retries + 1):
            retry_after_ms = 0.0
            try:
                response = await self._http.request(method, path, json=json_body, params=params)
            except httpx.TransportError as e:
                last_error = ConnectivityError(
                    f"Service unreachable: {str(e) or type(e).__name__}", details={"path": path}
                )
            else:
                status = response.status_code
                if status == 429 or status >= 500:
                    last_error = ServiceUnavailableError(
                        _error_message(response), details={"path": path}, status_code=status
                    )
                    retry_after = response.headers.get("Retry-After", "")
                    if status == 429 and retry_after.isdigit():
                        retry_after_ms = int(retry_after) * 1000
                elif status >= 400:
                    # Don't retry client errors (4xx)
                    raise RequestRejectedError(
                        _error_message(response), details={"path": path}, status_code=status
                    )
                else:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise ValidationError(
                            "Response is not valid JSON", details={"path": path}
                        ) from e
                    if not isinstance(data, dict):
                        raise ValidationError("Response is not a JSON object", details={"path": path})
                    return data

            if attempt >= self.config.max_retries:
                break

            delay_ms = max(self._backoff_ms(attempt), retry_after_ms)
            logger.warning(
                f"Request failed (attempt {attempt + 1}), retrying in {delay_ms:.0f}ms: {last_error}"
            )
            await asyncio.sleep(delay_ms / 1000)

        assert last_error is not None
        raise last_error

    # =========================================================================
    # Upload
    # =========================================================================

    async def upload_weights(
        self,
        weights: PackagedWeights | dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        scrub_pii: Transform | None = None,
        add_noise: Transform | None = None,
    ) -> UploadResult:
        """Upload a weight set.

        The payload is PII-scrubbed (the default scrubber unless one is
        given), then noised if ``add_noise`` is set, then checksummed. When
        the service cannot be reached the processed payload is queued for
        ``flush_offline_queue``.
        """
        if isinstance(weights, PackagedWeights):
            weights = weights.to_dict()
        if not isinstance(weights, dict):
            return UploadResult(success=False, error="Invalid weights data")

        size = len(json.dumps(weights).encode())
        if size > self.config.max_upload_bytes:
            return UploadResult(
                success=False,
                error=f"Payload too large: {size} bytes (max {self.config.max_upload_bytes})",
            )

        processed = (scrub_pii or default_scrub_pii)(weights)
        if add_noise is not None:
            processed = add_noise(processed)

        upload_metadata = dict(metadata or {})
        upload_metadata.setdefault("clientId", self.config.client_id)
        upload_metadata["checksum"] = compute_checksum(processed)
        upload_metadata["uploadedAt"] = utc_now_iso()

        try:
            result = await self._post_weights(processed, upload_metadata)
        except TransportError as e:
            if not e.transient:
                return UploadResult(success=False, error=str(e))
            await self.queue.enqueue(OfflineQueueEntry(weights=processed, metadata=upload_metadata))
            logger.info(f"Upload queued for later delivery ({len(self.queue)} pending): {e}")
            return UploadResult(success=False, queued=True, error=str(e))
        except ValidationError as e:
            return UploadResult(success=False, error=str(e))

        return result

    async def _post_weights(self, weights: dict[str, Any], metadata: dict[str, Any]) -> UploadResult:
        data = await self._request(
            "POST", "/weights", json_body={"weights": weights, "metadata": metadata}
        )
        logger.info(f"Uploaded weights as {data.get('version')}")
        return UploadResult(
            success=True, version=data.get("version"), timestamp=data.get("timestamp")
        )

    async def flush_offline_queue(self) -> FlushResult:
        """Replay queued uploads oldest first.

        Payloads are sent exactly as queued. Delivered entries are removed,
        entries that still cannot be delivered stay queued, and entries the
        service rejects are dropped and reported in ``errors``.
        """
        result = FlushResult()

        async with self.queue.lock:
            pending = self.queue.snapshot()
            if not pending:
                return result

            kept: list[OfflineQueueEntry] = []
            for entry in pending:
                try:
                    await self._post_weights(entry.weights, entry.metadata)
                    result.flushed += 1
                except TransportError as e:
                    if e.transient:
                        kept.append(entry)
                    else:
                        result.errors.append(str(e))
                except ValidationError as e:
                    result.errors.append(str(e))

            self.queue.replace(kept)
            result.remaining = len(kept)

        if result.flushed:
            logger.info(f"Flushed {result.flushed} queued upload(s), {result.remaining} remaining")
        return result

    # =========================================================================
    # Download
    # =========================================================================

    async def download_latest_weights(self, current_version: str | None = None) -> DownloadResult:
        """Fetch the global weights, with a diff when ``current_version`` is known."""
        params: dict[str, Any] = {"clientId": self.config.client_id}
        if current_version:
            params["since"] = current_version

        try:
            data = await self._request("GET", "/weights/latest", params=params)
            weights = data.get("weights")
            checksum = data.get("checksum")
            if checksum and weights is not None:
                require_checksum(weights, checksum)
        except IntegrityError as e:
            logger.warning(f"Discarding downloaded weights: {e}")
            return DownloadResult(success=False, error=e.message)
        except FedSwarmError as e:
            return DownloadResult(success=False, error=str(e))

        return DownloadResult(
            success=True,
            weights=weights,
            version=data.get("version"),
            diff=data.get("diff"),
        )

    # =========================================================================
    # Telemetry, health, stats
    # =========================================================================

    async def report_telemetry(self, stats: dict[str, Any]) -> bool:
        """Best-effort telemetry report. Returns True when delivered."""
        if not isinstance(stats, dict):
            return False
        try:
            await self._request(
                "POST", "/telemetry", json_body={"stats": stats, "reportedAt": utc_now_iso()}
            )
        except FedSwarmError as e:
            logger.debug(f"Telemetry not delivered: {e}")
            return False
        return True

    async def check_health(self) -> HealthResult:
        """Single-shot health probe (no retries)."""
        start = time.perf_counter()
        try:
            response = await self._http.get(
                "/health", timeout=self.config.health_timeout_seconds
            )
        except httpx.TransportError:
            return HealthResult(
                status="unreachable", latency_ms=round((time.perf_counter() - start) * 1000)
            )

        latency_ms = round((time.perf_counter() - start) * 1000)
        if not response.is_success:
            return HealthResult(status="degraded", latency_ms=latency_ms)

        try:
            info = response.json()
        except ValueError:
            info = {}
        return HealthResult(
            status="healthy", latency_ms=latency_ms, info=info if isinstance(info, dict) else {}
        )

    async def get_contribution_stats(self, client_id: str | None) -> ContributionStats:
        if not client_id:
            return ContributionStats(success=False, error="Client ID required")

        try:
            data = await self._request("GET", f"/stats/{client_id}")
        except FedSwarmError as e:
            return ContributionStats(success=False, error=str(e))

        return ContributionStats(
            success=True,
            uploads=data.get("uploads") or 0,
            downloads=data.get("downloads") or 0,
            rank=data.get("rank"),
        )
