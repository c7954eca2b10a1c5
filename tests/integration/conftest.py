"""Shared fixtures for integration tests.

Two ways into the app:

- ``async_client``: httpx over ASGITransport, sharing the test's event loop
  and the started ``backend`` fixture (the lifespan does not run).
- ``test_client``: Starlette TestClient running the full lifespan in its
  own loop; the app builds its own backend from ``settings``. WebSocket
  tests use this one.
"""

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from voicefeed.api.app import create_app


@pytest.fixture
def app(settings, backend):
    """Application bound to the started test backend."""
    app = create_app(settings, backend=backend)
    app.state.backend = backend
    return app


@pytest.fixture
async def async_client(app):
    """Async HTTP client for the in-process app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_client(settings):
    """TestClient with the full lifespan (backend created from settings)."""
    with TestClient(create_app(settings)) as client:
        yield client


@pytest.fixture
def sign_in():
    """Helper returning a bearer header for a freshly signed-in e-mail (sync client)."""

    def _sign_in(client: TestClient, email: str = "alice@example.com") -> tuple[str, dict]:
        code = client.post("/api/v1/auth/sign-in", json={"email": email}).json()["dev_code"]
        token = client.post("/api/v1/auth/verify", json={"email": email, "code": code}).json()[
            "access_token"
        ]
        return token, {"Authorization": f"Bearer {token}"}

    return _sign_in
