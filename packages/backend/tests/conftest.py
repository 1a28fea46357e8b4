"""Test fixtures — one in-memory runtime per test.

Learn: Testing pattern for the delivery core:

1. Each test gets a fresh InMemoryNotificationStore and registry, wired
   by the same assemble() the real lifespan uses.
2. The app is built with create_app(runtime), so its lifespan never
   connects to Redis or a database.
3. HTTP routes are exercised through httpx's ASGITransport; WebSocket
   sessions through Starlette's TestClient (see test_websocket.py).
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fakes import (
    InMemoryNotificationStore,
    InMemoryPresenceRegistry,
    make_settings,
)
from pulse_notify.main import create_app
from pulse_notify.runtime import assemble


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def store():
    return InMemoryNotificationStore()


@pytest.fixture()
def registry():
    return InMemoryPresenceRegistry()


@pytest.fixture()
def runtime(settings, store, registry):
    return assemble(settings, store=store, registry=registry)


@pytest.fixture()
def app(runtime):
    return create_app(runtime)


@pytest_asyncio.fixture()
async def client(app):
    """HTTP client talking to the app in-process."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
