"""Pytest configuration and shared fixtures for API tests."""

import os
import tempfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test DB before app imports so config/engine use it
_TEST_DB_DIR = tempfile.mkdtemp(prefix="doccontrol-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from doccontrol.core.auth import create_access_token, hash_password
from doccontrol.core.rate_limit import MemoryRateLimitStore
from doccontrol.core.roles import Role
from doccontrol.db import Base, async_session_maker, engine, store_session_maker
from doccontrol.main import app
from doccontrol.models.user import User
from doccontrol.services.token_store import RefreshTokenStore

import doccontrol.models  # noqa: F401 - register tables

TEST_PASSWORD = "password123"


@pytest_asyncio.fixture
async def clean_db():
    """Recreate all tables so every test starts from an empty database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest_asyncio.fixture
async def client(clean_db):
    """Yield AsyncClient with fresh rate limit counters."""
    app.state.rate_limit_store = MemoryRateLimitStore()
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def store(clean_db) -> RefreshTokenStore:
    return RefreshTokenStore(store_session_maker)


@pytest.fixture
def make_user(clean_db):
    """Factory: create a committed user and return it."""

    async def _make(
        email: str = "test@test.com",
        role: Role = Role.USER,
        password: str = TEST_PASSWORD,
        is_active: bool = True,
    ) -> User:
        async with async_session_maker() as session:
            user = User(
                email=email,
                password_hash=hash_password(password),
                role=role,
                is_active=is_active,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    return _make


@pytest_asyncio.fixture
async def test_user(make_user):
    """Create a USER and return (user_id, email, access_token)."""
    user = await make_user()
    return user.id, user.email, create_access_token(user.id, user.role)


@pytest_asyncio.fixture
async def admin_user(make_user):
    """Create an ADMIN and return (user_id, email, access_token)."""
    user = await make_user(email="admin@test.com", role=Role.ADMIN)
    return user.id, user.email, create_access_token(user.id, user.role)


@pytest.fixture
def auth_headers(test_user):
    """Return dict of Authorization header for test_user."""
    _, __, token = test_user
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user):
    _, __, token = admin_user
    return {"Authorization": f"Bearer {token}"}
