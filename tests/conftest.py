"""
Shared fixtures.

Every test gets its own SQLite file so concurrent transactions behave like
they would against a real server (separate connections, real locking).
"""

import os

# Set test environment variables before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./studio-test.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("TELEGRAM_TOKEN", "TEST_TOKEN")
os.environ.setdefault("INIT_DATA_MAX_AGE_SECONDS", "0")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import get_settings
from database import build_engine, build_session_factory, get_session, init_db
from identity import create_access_token
from main import app, get_notifier, get_reservations
from models import Account, Role
from reservations import ReservationEngine


class RecordingNotifier:
    """Stands in for the Telegram notifier and remembers every event."""

    def __init__(self):
        self.events = []

    async def booked(self, day, hours, actor):
        self.events.append(("booked", day, list(hours), actor.id))

    async def cancelled_by_owner(self, day, hours, actor):
        self.events.append(("cancelled_by_owner", day, list(hours), actor.id))

    async def cancelled_by_admin(self, day, hours_by_owner, owners):
        for owner in owners:
            self.events.append(("cancelled_by_admin", day, list(hours_by_owner[owner.id]), owner.id))

    async def access_requested(self, account):
        self.events.append(("access_requested", account.id))

    async def access_granted(self, account):
        self.events.append(("access_granted", account.id))

    async def welcome(self, chat_id):
        self.events.append(("welcome", chat_id))

    def kinds(self):
        return [event[0] for event in self.events]


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(session_factory, notifier):
    return ReservationEngine(session_factory, notifier)


@pytest.fixture
def make_account(session_factory):
    async def _make(telegram_id: int, role: Role = Role.USER, username: str | None = None, photo_url: str | None = None):
        async with session_factory() as session:
            account = Account(
                telegram_id=telegram_id,
                first_name=f"Member {telegram_id}",
                username=username,
                photo_url=photo_url,
                role=role.value,
            )
            session.add(account)
            await session.commit()
            await session.refresh(account)
            return account

    return _make


@pytest_asyncio.fixture
async def user1(make_account):
    return await make_account(1001, Role.USER, username="drummer", photo_url="https://t.me/i/drummer.jpg")


@pytest_asyncio.fixture
async def user2(make_account):
    return await make_account(1002, Role.USER, username="bassist")


@pytest_asyncio.fixture
async def admin(make_account):
    return await make_account(9001, Role.ADMIN, username="owner")


@pytest_asyncio.fixture
async def guest(make_account):
    return await make_account(5001, Role.GUEST, username="newcomer")


@pytest_asyncio.fixture
async def api(session_factory, engine, notifier):
    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_reservations] = lambda: engine
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(account: Account) -> dict:
    token = create_access_token(account, secret=get_settings().jwt_secret, ttl_hours=1)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth():
    return auth_headers
