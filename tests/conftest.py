"""
Pytest configuration and shared fixtures.

Tests run against InMemoryDocumentStore instead of a MongoDB server; it
implements the same filter/update dialect and change-feed semantics and can
simulate outages (set_available) and revoked access (deny).

Fixtures:
- store / container: a fresh store and fully wired ServiceContainer per test
- direct / broadcast: sample conversations
- client: httpx AsyncClient over ASGITransport bound to the app
- make_token / auth_headers: HS256 bearer tokens
- eventually: poll until a condition holds
"""

import asyncio
from datetime import datetime, timedelta, timezone

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from choptso.config import Settings, settings
from choptso.core.rate_limit import limiter
from choptso.db.memory import InMemoryDocumentStore
from choptso.dependencies import ServiceContainer


def _test_settings() -> Settings:
    # Fast backoff so outage tests finish quickly
    return Settings(
        STORE_BACKEND="memory",
        REDIS_URL="",
        WRITE_BACKOFF_BASE_SECONDS=0.01,
        RECONNECT_BACKOFF_BASE_SECONDS=0.01,
        RECONNECT_BACKOFF_MAX_SECONDS=0.05,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest_asyncio.fixture
async def container(store):
    container = ServiceContainer(config=_test_settings(), store=store)
    yield container
    container.typing.close()
    await container.registry.close()
    await store.close()


@pytest_asyncio.fixture
async def direct(container):
    """Pairwise conversation between alice and bob."""
    return await container.conversations.open_direct("alice", "bob")


@pytest_asyncio.fixture
async def broadcast(container):
    """Broadcast owned by xavier with recipients yara and zoe."""
    return await container.conversations.create_broadcast(
        "xavier", ["yara", "zoe"], "Announcements"
    )


@pytest.fixture
def make_token():
    def _make_token(user_id: str, name: str = None, scope: str = "", expires_in: int = 3600,
                    token_type: str = "access", secret: str = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "name": name or user_id.title(),
            "scope": scope,
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
        }
        return jwt.encode(
            payload, secret or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
        )
    return _make_token


@pytest.fixture
def auth_headers(make_token):
    """``auth_headers("alice")`` -> Authorization header for alice."""
    def _auth_headers(user_id: str, **kwargs) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}
    return _auth_headers


@pytest_asyncio.fixture
async def client(container):
    """
    Async HTTP client bound to the app with the test container.

    ASGITransport does not run the lifespan, so the container is installed
    on app.state directly.
    """
    from choptso.main import app

    app.state.container = container
    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


@pytest.fixture
def eventually():
    async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(interval)
    return _eventually
