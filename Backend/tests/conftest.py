"""
Pytest configuration and fixtures for async database testing.

Each test gets its own file-backed SQLite database (aiosqlite) with the full
schema. A file, rather than :memory:, lets two sessions race each other
through real database locking.
"""
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopbook.core.config import Settings
from shopbook.core.db import Base, build_engine

from helpers import Catalog, create_catalog


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """Engine for a fresh database; schema created up front."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shopbook_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        review_link_secret="test-review-secret",
        public_app_url="https://book.example.com",
        slot_step_minutes=15,
        booking_lead_minutes=30,
        appointment_buffer_minutes=0,
    )


@pytest.fixture
async def catalog(async_session) -> Catalog:
    """One UTC shop, two staff working 09:00-17:00 every day, two services."""
    return await create_catalog(async_session)


@pytest.fixture(scope="function")
async def client(session_factory):
    """
    FastAPI AsyncClient against the test database.

    Every request gets its own session, like get_session does in production,
    so commits made by one request are visible to the next.
    """
    from shopbook.main import app
    from shopbook.core.db import get_session
    from shopbook.rate_limiter import clear_rate_limits

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    clear_rate_limits()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    clear_rate_limits()
