"""
Shared fixtures: a throwaway SQLite database per test, seeded users and
files, fake sockets, and an HTTP client bound to the app with its services
rebuilt on top of the test database.
"""

import os
import sys
from datetime import timedelta
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app import models  # noqa: E402,F401
from app.core.security import create_access_token  # noqa: E402
from app.core.time_utils import utcnow  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.session import configure_sqlite, get_db  # noqa: E402
from app.models.file import File  # noqa: E402
from app.models.group import Group  # noqa: E402
from app.models.presence import UserPresence  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services.delivery_tracker import DeliveryTracker, notifier_sender  # noqa: E402
from app.services.notifier import Notifier  # noqa: E402
from app.services.presence import PresenceService  # noqa: E402
from app.services.retry_scheduler import RetryScheduler  # noqa: E402


class FakeSocket:
    """Stands in for a starlette WebSocket"""

    def __init__(self, fail: bool = False):
        self.accepted = False
        self.fail = fail
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def events(self):
        return [m["event"] for m in self.sent]


@pytest.fixture
def socket_factory():
    return FakeSocket


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def create_user(session_factory):
    async def _create(email: str, name: str | None = None, role: str = "user") -> User:
        async with session_factory() as session:
            user = User(email=email, name=name or email.split("@")[0].title(), role=role, is_active=True)
            session.add(user)
            await session.commit()
            return user
    return _create


@pytest.fixture
def create_file(session_factory):
    async def _create(owner: User, filename: str = "report.pdf") -> File:
        async with session_factory() as session:
            file = File(
                owner_user_id=owner.id,
                filename=filename,
                original_filename=filename,
                size_bytes=2048,
                mime_type="application/pdf",
                url=f"https://files.example.com/{filename}",
            )
            session.add(file)
            await session.commit()
            return file
    return _create


@pytest.fixture
def create_group(session_factory):
    async def _create(creator: User, members=(), name: str = "Team") -> Group:
        async with session_factory() as session:
            loaded = [await session.get(User, m.id) for m in members]
            group = Group(name=name, creator_id=creator.id, members=loaded)
            session.add(group)
            await session.commit()
            return group
    return _create


@pytest.fixture
def mark_online(session_factory):
    async def _mark(user: User, seconds_ago: int = 0) -> None:
        async with session_factory() as session:
            session.add(UserPresence(
                user_id=user.id,
                is_online=True,
                connection_count=1,
                last_seen=utcnow() - timedelta(seconds=seconds_ago),
            ))
            await session.commit()
    return _mark


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        token = create_access_token({"sub": str(user.id), "email": user.email})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def app_services(session_factory):
    notifier = Notifier()
    scheduler = RetryScheduler(session_factory, notifier, attempt_timeout=1.0)
    services = {
        "notifier": notifier,
        "scheduler": scheduler,
        "tracker": DeliveryTracker(sender=notifier_sender(notifier)),
        "presence": PresenceService(notifier, scheduler),
    }
    yield services
    await scheduler.shutdown()
    await notifier.drain()


@pytest.fixture
async def client(session_factory, app_services):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = session_factory
    app.state.notifier = app_services["notifier"]
    app.state.delivery_tracker = app_services["tracker"]
    app.state.retry_scheduler = app_services["scheduler"]
    app.state.presence = app_services["presence"]

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
