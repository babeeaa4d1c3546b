"""Tests for the aggregation service."""

import pytest

pytest.importorskip("fastapi")

import httpx
from fastapi.testclient import TestClient

from fedswarm.codec import compute_checksum
from fedswarm.config import ServerConfig
from fedswarm.server.app import (
    SECURITY_HEADERS,
    SlidingWindowRateLimiter,
    create_app,
    resolve_allowed_origin,
)

TOKEN = "s3cret-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def tool_weights(rate, size=5):
    return {"tools": {"Read": {"successRate": rate, "sampleSize": size}}}


@pytest.fixture
def app():
    return create_app(ServerConfig(auth_token=TOKEN, rate_limit_enabled=False))


@pytest.fixture
def client(app):
    return TestClient(app, headers=AUTH)


class TestUpload:
    """POST /api/v1/weights."""

    def test_accepts_snapshot(self, client):
        weights = tool_weights(0.8)
        response = client.post(
            "/api/v1/weights",
            json={"weights": weights, "metadata": {"clientId": "a", "checksum": compute_checksum(weights)}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["version"] == "v1"
        assert data["timestamp"]

    def test_versions_increase(self, client):
        client.post("/api/v1/weights", json={"weights": tool_weights(0.5)})
        response = client.post("/api/v1/weights", json={"weights": tool_weights(0.6)})
        assert response.json()["version"] == "v2"

    def test_checksum_mismatch(self, client):
        response = client.post(
            "/api/v1/weights",
            json={"weights": tool_weights(0.8), "metadata": {"checksum": "0" * 64}},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Checksum verification failed"}

    def test_invalid_json(self, client):
        response = client.post(
            "/api/v1/weights", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON in request body"}

    @pytest.mark.parametrize("body", [{}, {"weights": "x"}, {"weights": None}, [1, 2]])
    def test_missing_weights(self, client, body):
        response = client.post("/api/v1/weights", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing or invalid weights field"}

    @pytest.mark.parametrize(
        "weights",
        [
            {"tools": [1, 2]},
            {"tools": "Read"},
            {"errors": {"abc": 0.5}},
            {"tools": {"Read": {"successRate": 0.8}}, "commands": {"test": None}},
        ],
    )
    def test_malformed_categories_rejected(self, client, app, weights):
        response = client.post("/api/v1/weights", json={"weights": weights})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing or invalid weights field"}
        assert app.state.store.current_version is None

    def test_malformed_upload_does_not_block_later_uploads(self, client):
        assert client.post("/api/v1/weights", json={"weights": tool_weights(0.8)}).status_code == 200
        assert client.post("/api/v1/weights", json={"weights": {"tools": [1, 2]}}).status_code == 400

        response = client.post("/api/v1/weights", json={"weights": tool_weights(0.4)})

        assert response.status_code == 200
        assert response.json()["version"] == "v2"
        assert client.get("/api/v1/weights/latest", params={"since": "v1"}).status_code == 200

    @pytest.mark.parametrize("checksum", [123, ["abc"], {"sha": "abc"}])
    def test_non_string_checksum_rejected(self, client, checksum):
        response = client.post(
            "/api/v1/weights",
            json={"weights": tool_weights(0.8), "metadata": {"checksum": checksum}},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Checksum verification failed"}

    def test_unexpected_error_is_json(self, client, app, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(app.state.store, "ingest", broken)
        response = client.post(
            "/api/v1/weights", json={"weights": tool_weights(0.8)}, headers={"Origin": "http://localhost:3000"}
        )

        assert response.status_code == 500
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"error": "Internal server error"}
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_oversized_body(self):
        app = create_app(ServerConfig(auth_token=TOKEN, rate_limit_enabled=False, max_upload_bytes=64))
        client = TestClient(app, headers=AUTH)
        response = client.post("/api/v1/weights", json={"weights": {"tools": {"x" * 100: {}}}})
        assert response.status_code == 413
        assert response.json() == {"error": "Request body exceeds size limit"}


class TestDownload:
    """GET /api/v1/weights/latest."""

    def test_no_weights_yet(self, client):
        response = client.get("/api/v1/weights/latest")
        assert response.status_code == 200
        assert response.json() == {
            "weights": None,
            "version": None,
            "message": "No weights available yet",
        }

    def test_latest(self, client):
        client.post("/api/v1/weights", json={"weights": tool_weights(0.8)})
        data = client.get("/api/v1/weights/latest").json()
        assert data["version"] == "v1"
        assert data["weights"] == tool_weights(0.8)
        assert data["checksum"] == compute_checksum(data["weights"])

    def test_diff_since_known_version(self, client):
        client.post("/api/v1/weights", json={"weights": tool_weights(0.8)})
        client.post("/api/v1/weights", json={"weights": {"teams": {"pair": {"effectiveness": 0.5}}}})
        data = client.get("/api/v1/weights/latest", params={"since": "v1"}).json()
        assert data["version"] == "v2"
        assert data["diff"]["added"]["teams"] == {"pair": {"effectiveness": 0.5}}

    def test_since_unknown_version(self, client):
        client.post("/api/v1/weights", json={"weights": tool_weights(0.8)})
        data = client.get("/api/v1/weights/latest", params={"since": "v42"}).json()
        assert "diff" not in data
        assert data["version"] == "v1"

    def test_download_counted(self, client, app):
        client.get("/api/v1/weights/latest", params={"clientId": "reader"})
        assert app.state.store.get_client_stats("reader")["downloads"] == 1


class TestTelemetryAndStats:
    def test_telemetry(self, client, app):
        response = client.post("/api/v1/telemetry", json={"stats": {"sessions": 3}})
        assert response.json() == {"success": True}
        assert app.state.store.get_telemetry_summary()["totalRecords"] == 1

    def test_telemetry_requires_stats(self, client):
        response = client.post("/api/v1/telemetry", json={"stats": [1]})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing or invalid stats field"}

    def test_health(self, client):
        for path in ("/api/v1/health", "/"):
            data = client.get(path).json()
            assert data["status"] == "healthy"
            assert data["totalVersions"] == 0
            assert "uptime" in data

    def test_stats_known_client(self, client):
        client.post("/api/v1/weights", json={"weights": tool_weights(0.8), "metadata": {"clientId": "a"}})
        data = client.get("/api/v1/stats/a").json()
        assert data["uploads"] == 1
        assert data["rank"] == 1

    def test_stats_unknown_client(self, client):
        data = client.get("/api/v1/stats/ghost").json()
        assert data["uploads"] == 0
        assert data["downloads"] == 0
        assert data["rank"] is None
        assert data["message"]

    def test_not_found_is_json(self, client):
        response = client.get("/api/v1/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}


class TestAuth:
    """Bearer token or loopback-only access."""

    def test_missing_token_rejected(self, app):
        response = TestClient(app).get("/api/v1/health")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_wrong_token_rejected(self, app):
        response = TestClient(app).get("/api/v1/health", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_error_responses_carry_security_headers(self, app):
        response = TestClient(app).get("/api/v1/health")
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_non_loopback_rejected_without_token(self):
        app = create_app(ServerConfig(rate_limit_enabled=False))
        # TestClient reports its peer as "testclient"
        assert TestClient(app).get("/api/v1/health").status_code == 401

    @pytest.mark.asyncio
    async def test_loopback_allowed_without_token(self, loopback_peer):
        app = create_app(ServerConfig(rate_limit_enabled=False))
        transport = httpx.ASGITransport(app=app, client=loopback_peer)
        async with httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1") as http:
            response = await http.get("/api/v1/health")
        assert response.status_code == 200

    def test_preflight_skips_auth(self, app):
        response = TestClient(app).options(
            "/api/v1/weights", headers={"Origin": "http://localhost:3000"}
        )
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        assert "POST" in response.headers["Access-Control-Allow-Methods"]
        assert "Authorization" in response.headers["Access-Control-Allow-Headers"]


class TestRateLimit:
    """Per-IP sliding window."""

    def test_one_over_the_limit(self):
        app = create_app(ServerConfig(auth_token=TOKEN, rate_limit_requests=3))
        client = TestClient(app, headers=AUTH)
        statuses = [client.get("/api/v1/health").status_code for _ in range(4)]
        assert statuses == [200, 200, 200, 429]

        response = client.get("/api/v1/health")
        assert response.json() == {"error": "Rate limit exceeded"}
        assert int(response.headers["Retry-After"]) >= 1

    def test_forwarded_for_keys_are_separate(self):
        app = create_app(ServerConfig(auth_token=TOKEN, rate_limit_requests=1))
        client = TestClient(app, headers=AUTH)
        first = client.get("/api/v1/health", headers={"X-Forwarded-For": "10.0.0.1"})
        second = client.get("/api/v1/health", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.9"})
        again = client.get("/api/v1/health", headers={"X-Forwarded-For": "10.0.0.1"})
        assert (first.status_code, second.status_code, again.status_code) == (200, 200, 429)

    def test_disabled(self, app):
        client = TestClient(app, headers=AUTH)
        assert all(client.get("/api/v1/health").status_code == 200 for _ in range(70))


class TestSlidingWindowRateLimiter:
    def test_window_slides(self):
        now = [100.0]
        limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=1000, clock=lambda: now[0])
        assert limiter.check("a") == (True, 0.0)
        now[0] = 100.5
        assert limiter.check("a") == (True, 0.0)

        allowed, retry_after = limiter.check("a")
        assert allowed is False
        assert retry_after == pytest.approx(0.5)

        now[0] = 101.0
        assert limiter.check("a")[0] is True

    def test_idle_keys_swept(self):
        now = [0.0]
        limiter = SlidingWindowRateLimiter(max_requests=5, window_ms=1000, clock=lambda: now[0])
        limiter.check("a")
        now[0] = 5.0
        limiter.check("b")
        assert limiter.stats()["active_keys"] == 1


class TestOrigins:
    def test_localhost_origin_echoed(self):
        assert resolve_allowed_origin("http://127.0.0.1:5173", None) == "http://127.0.0.1:5173"

    def test_foreign_origin_falls_back(self):
        assert resolve_allowed_origin("https://evil.example", None) == "http://localhost"

    def test_configured_origins(self):
        allowed = ["https://a.example", "https://b.example"]
        assert resolve_allowed_origin("https://b.example", allowed) == "https://b.example"
        assert resolve_allowed_origin("https://c.example", allowed) == "https://a.example"

    def test_response_headers(self, client):
        response = client.get("/api/v1/health", headers={"Origin": "http://localhost:8000"})
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:8000"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
