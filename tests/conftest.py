"""
tests/conftest.py
Shared fixtures: an in-memory SQLite database built from the ORM metadata,
an httpx client bound to the app with get_db overridden, seeded users, and
a mock in place of the Celery enqueue.
"""

import os

# Settings are read at import time; configure before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from main import app
from shared.models.models import ProviderProfile, User, UserRole
from tests.factories import make_provider, make_user


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncClient:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def notify():
    """Every test runs with the Celery enqueue replaced; assert on notify.delay."""
    with patch("services.notification.dispatcher.send_event_email") as task:
        yield task


# ── Seeded accounts ────────────────────────────────────────────

@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await make_user(db, UserRole.CUSTOMER, name="Asha Customer")


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await make_user(db, UserRole.CUSTOMER, name="Ravi Customer")


@pytest_asyncio.fixture
async def provider_user(db: AsyncSession) -> User:
    return await make_user(db, UserRole.PROVIDER, name="Priya Plumber")


@pytest_asyncio.fixture
async def provider_profile(db: AsyncSession, provider_user: User) -> ProviderProfile:
    return await make_provider(db, provider_user)


@pytest_asyncio.fixture
async def other_provider(db: AsyncSession) -> User:
    user = await make_user(db, UserRole.PROVIDER, name="Kiran Carpenter")
    await make_provider(db, user)
    return user


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, UserRole.ADMIN, name="Admin")
