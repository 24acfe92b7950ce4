"""Pytest configuration and shared fixtures for API tests."""

import os
import re
import tempfile

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test DB before app imports so config/engine use it
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), f"account_guard_test_{os.getpid()}.db"),
)
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("GLOBAL_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

from app.core.auth import create_access_token, hash_password
from app.db import Base, async_session_maker, engine, init_db
from app.main import app
from app.models.user import User
from app.services.notifications import Notification, NotificationDispatcher

TOKEN_IN_LINK = re.compile(r"token=([A-Za-z0-9_\-]+)")


class Outbox:
    """Notification sink that records messages instead of sending them."""

    def __init__(self) -> None:
        self.messages: list[Notification] = []
        self.dispatcher: NotificationDispatcher | None = None

    async def send(self, recipient: str, subject: str, body: str) -> None:
        self.messages.append(Notification(recipient, subject, body))

    async def flush(self) -> list[Notification]:
        await self.dispatcher.drain()
        return self.messages

    async def last_token(self, recipient: str) -> str:
        """Token from the link in the latest message sent to recipient."""
        await self.flush()
        for message in reversed(self.messages):
            if message.recipient == recipient:
                return TOKEN_IN_LINK.search(message.body).group(1)
        raise AssertionError(f"no message sent to {recipient}")


async def _delete_all():
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())


@pytest_asyncio.fixture
async def clean_db():
    """Create tables if needed and empty them so the test starts clean."""
    await init_db()
    await _delete_all()
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def outbox():
    """Swap the app's notification dispatcher for one delivering into an Outbox."""
    box = Outbox()
    dispatcher = NotificationDispatcher(box.send, workers=1, queue_size=50)
    box.dispatcher = dispatcher
    previous = app.state.notifications
    app.state.notifications = dispatcher
    dispatcher.start()
    yield box
    await dispatcher.stop()
    app.state.notifications = previous


@pytest_asyncio.fixture
async def client(clean_db, outbox):
    """Yield AsyncClient against the app with a fresh rate limiter state."""
    app.state.auth_limiter.reset()
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.state.auth_limiter.reset()


async def create_user(email: str, password: str, *, enabled: bool = True, username: str | None = None) -> User:
    async with async_session_maker() as session:
        user = User(
            email=email,
            username=username,
            password_hash=hash_password(password),
            enabled=enabled,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def test_user(clean_db):
    """Verified user committed to the DB: (user, password)."""
    user = await create_user("test@test.com", "password123", username="tester")
    return user, "password123"


@pytest_asyncio.fixture
async def unverified_user(clean_db):
    user = await create_user("pending@test.com", "password123", enabled=False)
    return user, "password123"


@pytest_asyncio.fixture
async def auth_headers(test_user):
    """Authorization header with an access token for test_user."""
    user, _ = test_user
    token = create_access_token(user.email)
    return {"Authorization": f"Bearer {token}"}
