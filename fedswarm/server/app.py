"""Aggregation service.

Every request passes the same gates in order: CORS preflight, then
authentication, then the per-IP rate limiter. Every response carries the
CORS origin and the security headers.

Endpoints (all under /api/v1):
    POST /weights          Upload a weight snapshot
    GET  /weights/latest   Current global weights, optional diff
    POST /telemetry        Best-effort usage statistics
    GET  /health           Service health
    GET  /stats/{clientId} Contribution counters and rank

Usage:
    fedswarm serve --port 8080
"""

from __future__ import annotations

import hmac
import json
import logging
import math
import re
import threading
import time
from collections import deque
from collections.abc import Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..codec import verify_checksum
from ..config import API_PREFIX, ServerConfig
from .store import WeightStore, is_weight_set

logger = logging.getLogger("fedswarm.server")

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1", "::ffff:127.0.0.1"})
LOCALHOST_ORIGIN = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")
DEFAULT_ORIGIN = "http://localhost"

SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-store",
}
ALLOW_METHODS = "GET, POST, OPTIONS"
ALLOW_HEADERS = "Content-Type, Accept, Authorization"
PREFLIGHT_MAX_AGE = "86400"


# =============================================================================
# Rate limiting
# =============================================================================


class SlidingWindowRateLimiter:
    """Per-key sliding window limiter.

    Each key keeps the timestamps of its accepted requests; timestamps older
    than the window are pruned on every check. Keys idle for two windows are
    swept at most once per window.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_ms / 1000
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def check(self, key: str) -> tuple[bool, float]:
        """Check if request is allowed. Returns (allowed, retry_after_seconds)."""
        now = self._clock()
        with self._lock:
            self._sweep(now)

            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = self.window_seconds - (now - hits[0]) if hits else self.window_seconds
                return False, max(retry_after, 0.0)

            hits.append(now)
            return True, 0.0

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        stale_after = self.window_seconds * 2
        for key in [k for k, hits in self._hits.items() if not hits or now - hits[-1] > stale_after]:
            del self._hits[key]
        self._last_sweep = now

    def stats(self) -> dict:
        with self._lock:
            return {
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
                "active_keys": len(self._hits),
            }


# =============================================================================
# Request gates
# =============================================================================


def resolve_allowed_origin(origin: str | None, allowed_origins: list[str] | None) -> str:
    """Origin to echo in Access-Control-Allow-Origin."""
    if allowed_origins:
        if origin and origin in allowed_origins:
            return origin
        return allowed_origins[0]
    if origin and LOCALHOST_ORIGIN.match(origin):
        return origin
    return DEFAULT_ORIGIN


def is_loopback(request: Request) -> bool:
    host = request.client.host if request.client else ""
    return host in LOOPBACK_ADDRESSES


def authenticate(request: Request, token: str | None) -> bool:
    """Bearer token when configured, otherwise loopback peers only."""
    if token:
        header = request.headers.get("authorization", "")
        return hmac.compare_digest(header.encode(), f"Bearer {token}".encode())
    return is_loopback(request)


def rate_limit_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


# =============================================================================
# Application
# =============================================================================


def create_app(config: ServerConfig | None = None, store: WeightStore | None = None) -> FastAPI:
    """Create FastAPI application."""
    config = config or ServerConfig()
    store = store or WeightStore(
        max_versions=config.max_versions,
        max_telemetry=config.max_telemetry,
        fedavg_window=config.fedavg_window,
        path=config.store_path,
    )
    limiter = (
        SlidingWindowRateLimiter(config.rate_limit_requests, config.rate_limit_window_ms)
        if config.rate_limit_enabled
        else None
    )

    app = FastAPI(
        title="fedswarm",
        description="Federated aggregation service for shared experience weights",
        version=__version__,
    )
    app.state.config = config
    app.state.store = store
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def request_gates(request: Request, call_next):
        origin = resolve_allowed_origin(request.headers.get("origin"), config.cors_allowed_origins)

        if request.method == "OPTIONS":
            return Response(
                status_code=204,
                headers={
                    "Access-Control-Allow-Origin": origin,
                    "Access-Control-Allow-Methods": ALLOW_METHODS,
                    "Access-Control-Allow-Headers": ALLOW_HEADERS,
                    "Access-Control-Max-Age": PREFLIGHT_MAX_AGE,
                },
            )

        if not authenticate(request, config.auth_token):
            response: Response = JSONResponse({"error": "Unauthorized"}, status_code=401)
        else:
            allowed, retry_after = limiter.check(rate_limit_key(request)) if limiter else (True, 0.0)
            if not allowed:
                logger.warning(f"Rate limit exceeded for {rate_limit_key(request)}")
                response = JSONResponse(
                    {"error": "Rate limit exceeded"},
                    status_code=429,
                    headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
                )
            else:
                try:
                    response = await call_next(request)
                except Exception:
                    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
                    response = JSONResponse({"error": "Internal server error"}, status_code=500)

        response.headers["Access-Control-Allow-Origin"] = origin
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = "Not found" if exc.status_code == 404 else exc.detail
        return JSONResponse({"error": message}, status_code=exc.status_code)

    # Weights
    @app.post(f"{API_PREFIX}/weights")
    async def upload_weights(request: Request):
        """Store an uploaded snapshot and refold the global weights."""
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > config.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Request body exceeds size limit")

        raw = await request.body()
        if len(raw) > config.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Request body exceeds size limit")

        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON in request body")

        weights = body.get("weights") if isinstance(body, dict) else None
        if not is_weight_set(weights):
            raise HTTPException(status_code=400, detail="Missing or invalid weights field")

        metadata = body.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}

        checksum = metadata.get("checksum")
        if checksum not in (None, "") and not verify_checksum(weights, checksum):
            logger.warning(f"Rejected upload from {metadata.get('clientId')}: checksum mismatch")
            raise HTTPException(status_code=400, detail="Checksum verification failed")

        snapshot = store.ingest(weights, metadata)
        return {"success": True, "version": snapshot.version, "timestamp": snapshot.timestamp}

    @app.get(f"{API_PREFIX}/weights/latest")
    async def download_weights(
        since: str | None = None,
        client_id: str | None = Query(default=None, alias="clientId"),
    ):
        """Current global weights, plus a diff when ``since`` is a known version."""
        if client_id:
            store.record_download(client_id)

        result = store.get_weights_since(since) if since else store.get_latest()
        if result is None:
            return {"weights": None, "version": None, "message": "No weights available yet"}
        return result

    # Telemetry
    @app.post(f"{API_PREFIX}/telemetry")
    async def telemetry(request: Request):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON in request body")

        stats = body.get("stats") if isinstance(body, dict) else None
        if not isinstance(stats, dict):
            raise HTTPException(status_code=400, detail="Missing or invalid stats field")

        store.store_telemetry(stats)
        return {"success": True}

    # Health & stats
    @app.get(f"{API_PREFIX}/health")
    @app.get("/")
    async def health():
        return {"status": "healthy", **store.get_server_info()}

    @app.get(f"{API_PREFIX}/stats/{{client_id}}")
    async def client_stats(client_id: str):
        stats = store.get_client_stats(client_id)
        if stats is None:
            return {
                "uploads": 0,
                "downloads": 0,
                "rank": None,
                "message": "No contributions found for this client",
            }
        return stats

    return app


def run_server(config: ServerConfig | None = None) -> None:
    """Run the aggregation service."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    config = config or ServerConfig.from_env()
    app = create_app(config)

    auth_mode = "bearer token" if config.auth_token else "loopback only"
    if config.rate_limit_enabled:
        rate_limit = f"{config.rate_limit_requests} req / {config.rate_limit_window_ms} ms"
    else:
        rate_limit = "DISABLED"
    print(f"""
fedswarm aggregation service {__version__}
  Listening:     http://{config.host}:{config.port}{API_PREFIX}
  Auth:          {auth_mode}
  Rate limit:    {rate_limit}
  FedAvg window: {config.fedavg_window} snapshots
  Store:         {config.store_path or "in-memory"}
""")

    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


if __name__ == "__main__":
    run_server()
