"""Pytest configuration and fixtures for GlobalEdge tests.

Tests run against an in-memory SQLite database (aiosqlite) shared through a
StaticPool, so the session a test seeds is the one the app sees.
"""

import os

# Must be set before app.config is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("EMAIL_AUTO_NOTIFY", "false")
os.environ.setdefault("RESEND_API_KEY", "")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.database import Base, get_db
from app.main import app
from app.models import User, UserRole


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    user = User(
        email="owner@example.com",
        full_name="Olive Owner",
        phone="+447700900123",
        hashed_password="!not-a-real-hash",
        role=UserRole.USER,
        is_active=True,
    )
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    user = User(
        email="ops@globaledge.test",
        full_name="Ops Desk",
        hashed_password="!not-a-real-hash",
        role=UserRole.ADMIN,
        is_active=True,
    )
    db_session.add(user)
    await db_session.flush()
    return user


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    token = create_access_token(user_id=test_user.id, role=UserRole.USER.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user: User) -> dict:
    token = create_access_token(user_id=admin_user.id, role=UserRole.ADMIN.value)
    return {"Authorization": f"Bearer {token}"}


# ── Payloads ─────────────────────────────────────────────────────

@pytest.fixture
def parcel_payload() -> dict:
    return {
        "service_type": "parcel",
        "from": "London, UK",
        "to": "Paris, France",
        "recipient_email": "  Rita.Recipient@Example.com ",
        "recipient_address": "12  Rue   de Rivoli,\n75001 Paris",
        "parcel": {
            "weight": 5,
            "length": 30,
            "width": 20,
            "height": 10,
            "value": 120,
            "contents": "Books",
            "level": "standard",
        },
        "contact": {
            "name": "Sam Sender",
            "email": "sam.sender@example.com",
            "phone": "07700 900456",
        },
    }


@pytest.fixture
def freight_payload() -> dict:
    return {
        "service_type": "freight",
        "from": {"city": "Rotterdam", "country": "NL"},
        "to": {"city": "Houston", "state": "TX", "country": "US"},
        "recipient_email": "dock@houston-imports.example",
        "freight": {
            "mode": "air",
            "pallets": 2,
            "weight": 100,
            "incoterm": "DAP",
        },
    }


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "integration: Integration tests")
