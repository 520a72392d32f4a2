import re
from datetime import datetime, timezone

import pytest
from httpx import AsyncClient, ASGITransport

from app.api.health import healthz, utc_timestamp
from app.core.config import Settings
from app.main import create_app


@pytest.mark.anyio
async def test_health_endpoint(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert data["message"] == "Server is running"


@pytest.mark.anyio
async def test_health_timestamp_is_iso8601_utc(client: AsyncClient):
    response = await client.get("/health")
    timestamp = response.json()["timestamp"]

    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", timestamp)
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    assert abs((datetime.now(timezone.utc) - parsed).total_seconds()) < 60


def test_utc_timestamp_suffix():
    assert utc_timestamp().endswith("Z")


def test_healthz():
    assert healthz() == {"status": "ok"}


@pytest.mark.anyio
async def test_readyz_db_ok(client: AsyncClient):
    res = await client.get('/readyz')
    assert res.status_code == 200
    assert res.json() == {"status": "ready"}


@pytest.mark.anyio
@pytest.mark.parametrize("method,path", [
    ("GET", "/does-not-exist"),
    ("POST", "/api/nothing/here"),
    ("GET", "/api/documents/1/unknown"),
])
async def test_unknown_route_returns_404_envelope(client: AsyncClient, method, path):
    response = await client.request(method, path)
    assert response.status_code == 404
    assert response.json() == {"status": "error", "message": "Route not found"}


@pytest.mark.anyio
async def test_request_id_header(client: AsyncClient):
    response = await client.get("/health")
    assert response.headers.get("X-Request-ID")

    response = await client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


@pytest.mark.anyio
async def test_security_headers(client: AsyncClient):
    response = await client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
    assert response.headers["Referrer-Policy"] == "no-referrer"
    assert "default-src 'self'" in response.headers["Content-Security-Policy"]


@pytest.mark.anyio
async def test_docs_have_no_csp(client: AsyncClient):
    response = await client.get("/openapi.json")
    assert response.status_code == 200
    assert "Content-Security-Policy" not in response.headers


@pytest.mark.anyio
async def test_oversized_body_rejected(client: AsyncClient):
    body = b"x" * (10 * 1024 * 1024 + 1)
    response = await client.post(
        "/api/auth/login",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 413
    assert response.json() == {"status": "error", "message": "Request entity too large"}


@pytest.mark.anyio
async def test_large_responses_are_compressed(client: AsyncClient):
    response = await client.get("/openapi.json", headers={"Accept-Encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers.get("Content-Encoding") == "gzip"
    # httpx decodes transparently
    assert response.json()["info"]["title"]


@pytest.mark.anyio
async def test_small_responses_are_not_compressed(client: AsyncClient):
    response = await client.get("/health", headers={"Accept-Encoding": "gzip"})
    assert "Content-Encoding" not in response.headers


@pytest.mark.anyio
async def test_validation_error_envelope(client: AsyncClient):
    response = await client.post("/api/auth/login", json={"identifier": "someone"})
    assert response.status_code == 422
    data = response.json()
    assert data["status"] == "error"
    assert data["message"] == "Validation error"
    assert any(error["field"].endswith("password") for error in data["errors"])


class TestCors:
    @pytest.mark.anyio
    async def test_default_origin(self):
        app = create_app(Settings(_env_file=None))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/health", headers={"Origin": "http://localhost:3000"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert response.headers["access-control-allow-credentials"] == "true"

    @pytest.mark.anyio
    async def test_client_url_origin(self):
        app = create_app(Settings(_env_file=None, CLIENT_URL="https://docs.example.com"))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            allowed = await ac.get("/health", headers={"Origin": "https://docs.example.com"})
            denied = await ac.get("/health", headers={"Origin": "http://localhost:3000"})
        assert allowed.headers["access-control-allow-origin"] == "https://docs.example.com"
        assert "access-control-allow-origin" not in denied.headers

    @pytest.mark.anyio
    async def test_preflight(self):
        app = create_app(Settings(_env_file=None, CLIENT_URL="https://docs.example.com"))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.options(
                "/api/documents/",
                headers={
                    "Origin": "https://docs.example.com",
                    "Access-Control-Request-Method": "POST",
                },
            )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://docs.example.com"

    def test_comma_separated_origins(self):
        config = Settings(_env_file=None, CLIENT_URL="https://a.example.com, https://b.example.com")
        assert config.cors_origins == ["https://a.example.com", "https://b.example.com"]
