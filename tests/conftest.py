"""
Pytest configuration and fixtures for testing
"""
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base
from database_models import Subscription, User

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_JWT_SECRET = "test-secret-key-for-caller-tokens"

# Create test engine (one shared connection so every session sees the same memory DB)
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    future=True,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

# Create test session factory
TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


@pytest.fixture(autouse=True)
def _settings(monkeypatch):
    """Known auth settings for every test; demo mode off unless a test enables it."""
    monkeypatch.setattr(settings, "jwt_secret_key", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "allow_anonymous_demo", False)
    monkeypatch.setattr(settings, "downsell_discount_cents", 1000)


@pytest.fixture
async def test_db():
    """
    Fixture that provides an isolated, in-memory SQLite database connection for each test.

    This fixture:
    - Creates all tables before the test runs
    - Yields a clean AsyncSession for the test
    - Drops all tables after the test completes
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def make_account(test_db):
    """
    Factory creating a user with one subscription.

    Usage:
        user, subscription = await make_account("u1")
    """
    async def _make(user_id: str, monthly_price: int = 2500, status: str = "active"):
        user = User(id=user_id, email=f"{user_id}@example.com")
        test_db.add(user)
        await test_db.flush()
        subscription = Subscription(user_id=user_id, monthly_price=monthly_price, status=status)
        test_db.add(subscription)
        await test_db.commit()
        return user, subscription

    return _make
