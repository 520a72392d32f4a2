import pytest
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport

from app.main import app, hub
from app.core.security import create_access_token, get_password_hash
from app.db.database import Base, async_engine, async_session
from app.db.models import User


@pytest.fixture(scope="session")
async def test_engine():
    """The application's own engine, pointed at an on-disk SQLite file by backend/conftest.py."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_engine

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await async_engine.dispose()


@pytest.fixture
async def clean_tables(test_engine):
    """Ensure DB is empty before each test by deleting from all tables (keep schema intact)."""
    async with test_engine.begin() as conn:
        # delete in reverse order to respect FK constraints
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    yield


@pytest.fixture
async def test_session(clean_tables):
    async with async_session() as session:
        yield session


@pytest.fixture
async def client(clean_tables):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def realtime(monkeypatch):
    """Reset the shared hub and replace Socket.IO transport calls with mocks."""
    hub.sessions.clear()
    hub.presence.clear()
    hub.cursors.clear()
    hub.connections.clear()
    for name in ("emit", "enter_room", "leave_room", "close_room"):
        monkeypatch.setattr(hub.sio, name, AsyncMock())
    yield hub
    hub.sessions.clear()
    hub.presence.clear()
    hub.cursors.clear()
    hub.connections.clear()


@pytest.fixture
def make_user(clean_tables):
    """Create a user directly in the database. Returns (user, token)."""
    async def _make(username: str = "alice", password: str = "password123", is_active: bool = True):
        async with async_session() as db:
            user = User(
                username=username,
                email=f"{username}@example.com",
                hashed_password=get_password_hash(password),
                display_name=username.capitalize(),
                is_active=is_active,
            )
            db.add(user)
            await db.commit()
            await db.refresh(user)
        token = create_access_token(data={"sub": str(user.id), "username": username})
        return user, token

    return _make


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return auth


def emitted(mock: AsyncMock, event: str):
    """Payload/kwargs pairs of every emit of `event` on a mocked sio.emit."""
    calls = []
    for call in mock.call_args_list:
        if call.args and call.args[0] == event:
            payload = call.args[1] if len(call.args) > 1 else call.kwargs.get("data")
            calls.append((payload, call.kwargs))
    return calls


@pytest.fixture
def events():
    return emitted
