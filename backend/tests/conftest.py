"""Pytest fixtures for the BugSnap backend."""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-that-is-long-enough")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from api.deps import get_db, get_sender
from app import create_app
from core import hash_password
from core.config import settings
from models import User
from services import DeliveryReceipt, RateLimiter, set_rate_limiter
from services.auth import (
    FederatedProfile,
    create_user,
    get_github_identity_provider,
    get_google_identity_provider,
)
from services.errors import IdentityProviderError, NotificationDeliveryError

DEFAULT_PASSWORD = "correct-horse-battery"


def _run_alembic_migrations(database_url: str) -> None:
    """Apply Alembic migrations to the given database URL."""
    backend_dir = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_dir / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_dir / "alembic"))

    original_database_url = settings.database_url
    try:
        settings.database_url = database_url
        command.upgrade(alembic_cfg, "head")
    finally:
        settings.database_url = original_database_url


@pytest.fixture(scope="session")
def test_database_url(tmp_path_factory) -> str:
    """Create and migrate a file-backed SQLite database for tests."""
    db_dir = tmp_path_factory.mktemp("sqlite")
    db_path = db_dir / "backend-test.db"
    database_url = f"sqlite+aiosqlite:///{db_path}"
    _run_alembic_migrations(database_url)
    return database_url


@pytest_asyncio.fixture(scope="session")
async def test_engine(test_database_url: str) -> AsyncIterator:
    """Create an async engine bound to the migrated SQLite test database."""
    engine = create_async_engine(
        test_database_url,
        connect_args={"check_same_thread": False},
    )
    yield engine
    await engine.dispose()


@pytest.fixture(scope="session")
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to the test engine."""
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(scope="session")
def app(session_maker) -> Iterator[FastAPI]:
    """Create the FastAPI app with a test database dependency override."""
    application = create_app()

    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    yield application


@pytest_asyncio.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Return an HTTPX async client bound to the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest_asyncio.fixture(autouse=True)
async def clean_database(session_maker) -> AsyncIterator[None]:
    """Clear tables before each test to guarantee isolation."""
    async with session_maker() as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            await session.execute(table.delete())
        await session.commit()
    yield


@pytest_asyncio.fixture()
async def db_session(session_maker) -> AsyncIterator[AsyncSession]:
    """Provide a raw database session to tests."""
    async with session_maker() as session:
        yield session


class _InMemoryRedis:
    def __init__(self) -> None:
        self.data: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        value = self.data.get(key, 0) + 1
        self.data[key] = value
        return value

    async def expire(self, key: str, ttl: int) -> None:  # pragma: no cover - noop
        return None


@pytest.fixture(autouse=True)
def _rate_limiter_stub() -> Iterator[None]:
    limiter = RateLimiter(_InMemoryRedis(), limit=1_000, window_seconds=60)
    set_rate_limiter(limiter)
    yield
    set_rate_limiter(None)


@dataclass(frozen=True)
class SentMessage:
    recipient: str
    subject: str
    body: str
    message_id: str


class RecordingSender:
    """Notification sender that records messages and can fail chosen recipients."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.fail_for: set[str] = set()

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        if recipient in self.fail_for:
            raise NotificationDeliveryError(f"Failed to deliver message to {recipient}")
        message_id = f"<message-{len(self.sent) + 1}@bugsnap.test>"
        self.sent.append(SentMessage(recipient, subject, body, message_id))
        return DeliveryReceipt(message_id=message_id)

    def recipients(self) -> list[str]:
        return [message.recipient for message in self.sent]


@pytest.fixture(autouse=True)
def sender(app: FastAPI) -> Iterator[RecordingSender]:
    recording = RecordingSender()
    app.dependency_overrides[get_sender] = lambda: recording
    yield recording
    app.dependency_overrides.pop(get_sender, None)


class FakeIdentityProvider:
    """Identity provider that maps authorization codes to canned profiles."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.profiles: dict[str, FederatedProfile] = {}
        self.exchanged: list[str] = []

    def authorization_url(self) -> str:
        return f"https://{self.name}.provider.test/authorize?client_id=test"

    async def exchange(self, code: str) -> FederatedProfile:
        self.exchanged.append(code)
        profile = self.profiles.get(code)
        if profile is None:
            raise IdentityProviderError(f"{self.name} login failed")
        return profile


@pytest.fixture()
def google_provider(app: FastAPI) -> Iterator[FakeIdentityProvider]:
    provider = FakeIdentityProvider("google")
    app.dependency_overrides[get_google_identity_provider] = lambda: provider
    yield provider
    app.dependency_overrides.pop(get_google_identity_provider, None)


@pytest.fixture()
def github_provider(app: FastAPI) -> Iterator[FakeIdentityProvider]:
    provider = FakeIdentityProvider("github")
    app.dependency_overrides[get_github_identity_provider] = lambda: provider
    yield provider
    app.dependency_overrides.pop(get_github_identity_provider, None)


MakeUser = Callable[..., Awaitable[User]]


@pytest.fixture()
def make_user(db_session: AsyncSession) -> MakeUser:
    """Return a factory persisting users, with a password unless ``password=None``."""

    async def _make_user(
        email: str,
        name: str | None = None,
        *,
        password: str | None = DEFAULT_PASSWORD,
    ) -> User:
        return await create_user(
            db_session,
            email=email,
            name=name or email.split("@")[0].title(),
            password_hash=hash_password(password) if password is not None else None,
        )

    return _make_user
