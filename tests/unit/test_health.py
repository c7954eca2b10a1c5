"""Tests for the health check, CORS headers, and the error envelope.

Exercises the FastAPI app through an async HTTP client to verify the
health payload, CORS origin filtering, and that VoiceFeedError, request
validation, and unexpected exceptions all map onto ``{detail, code, timestamp}``.
"""

import pytest
from fastapi import APIRouter
from httpx import ASGITransport, AsyncClient

from voicefeed.api.app import create_app
from voicefeed.core.exceptions import ClipTooLongError


@pytest.fixture
def app(settings, backend):
    """Fresh application bound to the test backend, with failing probe routes."""
    app = create_app(settings, backend=backend)
    app.state.backend = backend

    probes = APIRouter(prefix="/probe")

    @probes.get("/domain")
    async def _domain():
        raise ClipTooLongError(200, 180)

    @probes.get("/crash")
    async def _crash():
        raise RuntimeError("kaboom")

    @probes.get("/typed")
    async def _typed(count: int):
        return {"count": count}

    app.include_router(probes)
    return app


@pytest.fixture
async def client(app):
    """AsyncClient talking to the app in-process."""
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def test_health_returns_200(client):
    """GET /health returns status, version, backend name, and timestamp."""
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["version"] == "0.1.0"
    assert body["backend"] == "local"
    assert "timestamp" in body


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


async def test_cors_allows_dev_frontend(client):
    resp = await client.options(
        "/health",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert resp.headers.get("access-control-allow-origin") == "http://localhost:3000"


async def test_cors_rejects_unknown_origin(client):
    resp = await client.options(
        "/health",
        headers={
            "Origin": "http://evil.example.com",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert resp.headers.get("access-control-allow-origin") is None


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


async def test_domain_error_envelope(client):
    resp = await client.get("/probe/domain")
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "CLIP_TOO_LONG"
    assert body["detail"] == "Audio is 200s long; the limit is 180s"
    assert "timestamp" in body


async def test_validation_error_envelope(client):
    resp = await client.get("/probe/typed", params={"count": "many"})
    assert resp.status_code == 422
    assert resp.json()["code"] == "VALIDATION_ERROR"


async def test_unexpected_error_envelope(client):
    resp = await client.get("/probe/crash")
    assert resp.status_code == 500
    body = resp.json()
    assert body["code"] == "INTERNAL_ERROR"
    assert "kaboom" not in body["detail"]


async def test_unauthenticated_request(client):
    resp = await client.get("/api/v1/memos")
    assert resp.status_code == 401
    assert resp.json()["code"] == "UNAUTHENTICATED"
