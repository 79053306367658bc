import os

# Must be set before servicebay.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_engine.db")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from servicebay.main import app
from servicebay.database import Base, get_db
from servicebay.api.deps import get_password_hash, create_session_token
from servicebay.models.incentive_rule import IncentiveRule
from servicebay.models.shop import Shop
from servicebay.models.user import User, UserRole, MembershipStatus
from servicebay.services.email_service import MockEmailService
from servicebay.services.notifications import Notifier, get_notifier

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

TEST_PASSWORD = "testpassword123"


@pytest_asyncio.fixture
async def test_engine():
    """Create test database and tables."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def email_service():
    """Records every email instead of sending it."""
    return MockEmailService()


@pytest.fixture
def notifier(email_service):
    return Notifier(email_service)


@pytest_asyncio.fixture
async def client(test_db: AsyncSession, notifier: Notifier):
    """Create test client with overridden database and notifier."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build a Bearer header for a user."""

    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_session_token(user)}"}

    return _headers


@pytest_asyncio.fixture
async def make_shop(test_db: AsyncSession):
    """Create a manager with their shop."""

    async def _make(name="Downtown Auto", code="TG-AB12", email="manager@example.com"):
        manager = User(
            name="Morgan Manager",
            email=email,
            hashed_password=get_password_hash(TEST_PASSWORD),
            role=UserRole.MANAGER.value,
            certifications=[],
            membership_status=MembershipStatus.APPROVED.value,
            is_active=True,
        )
        test_db.add(manager)
        await test_db.flush()

        shop = Shop(name=name, code=code, manager_id=manager.id)
        test_db.add(shop)
        await test_db.flush()
        manager.shop_id = shop.id
        await test_db.commit()
        return manager, shop

    return _make


@pytest_asyncio.fixture
async def make_technician(test_db: AsyncSession):
    """Create a technician; approved members of the shop by default."""

    async def _make(shop, email, certifications=("Engine",), approved=True, name=None, multiplier="1.00"):
        tech = User(
            name=name or email.split("@")[0].title(),
            email=email,
            hashed_password=get_password_hash(TEST_PASSWORD),
            role=UserRole.TECHNICIAN.value,
            certifications=list(certifications),
            shop_id=shop.id if shop else None,
            membership_status=(MembershipStatus.APPROVED if approved else MembershipStatus.PENDING).value,
            is_active=approved,
            bonus_multiplier=Decimal(multiplier),
        )
        test_db.add(tech)
        await test_db.commit()
        await test_db.refresh(tech)
        return tech

    return _make


@pytest_asyncio.fixture
async def shop_with_manager(make_shop):
    return await make_shop()


@pytest.fixture
def manager(shop_with_manager):
    return shop_with_manager[0]


@pytest.fixture
def shop(shop_with_manager):
    return shop_with_manager[1]


@pytest_asyncio.fixture
async def technician(make_technician, shop):
    return await make_technician(shop, "alex@example.com", certifications=["Engine", "Brakes"], name="Alex Tech")


@pytest_asyncio.fixture
async def second_technician(make_technician, shop):
    return await make_technician(shop, "blake@example.com", certifications=["Engine"], name="Blake Tech")


@pytest_asyncio.fixture
async def ev_technician(make_technician, shop):
    return await make_technician(shop, "casey@example.com", certifications=["EV"], name="Casey Tech")


@pytest_asyncio.fixture
async def rule(test_db: AsyncSession, manager, shop):
    """Active shop-wide rule: $10 per 30 minutes saved."""
    rule = IncentiveRule(
        shop_id=shop.id,
        name="Standard",
        time_saved_threshold=30,
        bonus_per_unit=Decimal("10.00"),
        is_active=True,
        applicable_certs=["All"],
        created_by_id=manager.id,
    )
    test_db.add(rule)
    await test_db.commit()
    await test_db.refresh(rule)
    return rule
