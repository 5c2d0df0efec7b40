"""
Pytest fixtures for test database, client, and authentication.

Runs against SQLite (aiosqlite) by default so the suite needs no services.
Point TEST_DATABASE_URL at a PostgreSQL database to also run the
concurrency tests, which need real row locking.
"""

import os
from datetime import date, datetime, time, timedelta, timezone
from typing import AsyncGenerator

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///./scheduling_test.db")

# Settings are read once at import time, so configure before importing the app
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["REDIS_ENABLED"] = "false"
os.environ["CALENDAR_SYNC_ENABLED"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["TOKEN_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.main import app
from app.db.base import Base
from app.db.session import get_db
from app.core.security import Actor, ROLE_CUSTOMER, ROLE_STAFF, create_access_token
from app.models.availability import AvailabilityTemplate
from app.models.booking import Booking
from app.models.session_credit import SessionCredit
from app.models.session_type import SessionType
from app.models.subscription import Subscription
from app.models.user import User
from app.services.policy_service import SchedulingPolicy

IS_POSTGRES = TEST_DATABASE_URL.startswith("postgresql")

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

requires_postgres = pytest.mark.skipif(not IS_POSTGRES, reason="needs PostgreSQL row locking")

CUSTOMER_ID = 1
OTHER_CUSTOMER_ID = 2
STAFF_ID = 100


def upcoming_slot(days_ahead: int = 3, hour: int = 10, policy: SchedulingPolicy = SchedulingPolicy()) -> datetime:
    """A UTC slot start `days_ahead` local days from today at `hour`:00 local."""
    today = policy.local_date(datetime.now(timezone.utc))
    return policy.at_local(today + timedelta(days=days_ahead), time(hour, 0)).astimezone(timezone.utc)


def headers_for(user_id: int, role: str = ROLE_CUSTOMER) -> dict:
    token = create_access_token(data={"sub": str(user_id), "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield session, then drop tables for isolation."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB dependency with the test session."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def customer(db_session: AsyncSession) -> User:
    user = User(id=CUSTOMER_ID, email="pat@example.com", full_name="Pat Rivera", role=ROLE_CUSTOMER)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def other_customer(db_session: AsyncSession) -> User:
    user = User(id=OTHER_CUSTOMER_ID, email="sam@example.com", full_name="Sam Lee", role=ROLE_CUSTOMER)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def staff(db_session: AsyncSession) -> User:
    user = User(id=STAFF_ID, email="coach@example.com", full_name="Coach", role=ROLE_STAFF)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def customer_headers(customer: User) -> dict:
    return headers_for(CUSTOMER_ID)


@pytest.fixture
def other_customer_headers(other_customer: User) -> dict:
    return headers_for(OTHER_CUSTOMER_ID)


@pytest.fixture
def staff_headers(staff: User) -> dict:
    return headers_for(STAFF_ID, ROLE_STAFF)


@pytest.fixture
def customer_actor() -> Actor:
    return Actor(id=CUSTOMER_ID, role=ROLE_CUSTOMER)


@pytest.fixture
def staff_actor() -> Actor:
    return Actor(id=STAFF_ID, role=ROLE_STAFF)


@pytest_asyncio.fixture
async def session_type(db_session: AsyncSession) -> SessionType:
    """60-min individual session, one client per slot."""
    session_type = SessionType(name="60-min Individual", duration_minutes=60, capacity=1, price_cents=9500, version=1)
    db_session.add(session_type)
    await db_session.commit()
    await db_session.refresh(session_type)
    return session_type


@pytest_asyncio.fixture
async def group_session_type(db_session: AsyncSession) -> SessionType:
    session_type = SessionType(name="Small Group", duration_minutes=60, capacity=3, price_cents=4000, version=1)
    db_session.add(session_type)
    await db_session.commit()
    await db_session.refresh(session_type)
    return session_type


@pytest_asyncio.fixture
async def weekly_templates(db_session: AsyncSession) -> list[AvailabilityTemplate]:
    """Open 08:00-18:00 every day of the week."""
    templates = [AvailabilityTemplate(day_of_week=day, start_time=time(8, 0), end_time=time(18, 0)) for day in range(7)]
    db_session.add_all(templates)
    await db_session.commit()
    return templates


async def add_subscription(
    db: AsyncSession,
    customer_id: int,
    tier: str,
    sessions_per_week,
    status: str = "active",
    stripe_subscription_id: str = None,
) -> Subscription:
    subscription = Subscription(
        customer_id=customer_id,
        tier=tier,
        sessions_per_week=sessions_per_week,
        status=status,
        stripe_subscription_id=stripe_subscription_id,
        version=1,
    )
    db.add(subscription)
    await db.commit()
    await db.refresh(subscription)
    return subscription


async def add_credits(
    db: AsyncSession,
    customer_id: int,
    total: int,
    used: int = 0,
    expires_at: datetime = None,
    purchased_at: datetime = None,
) -> SessionCredit:
    credit = SessionCredit(
        customer_id=customer_id,
        total_sessions=total,
        used_sessions=used,
        expires_at=expires_at,
        purchased_at=purchased_at or datetime.now(timezone.utc),
        product_type=f"pack_{total}",
    )
    db.add(credit)
    await db.commit()
    await db.refresh(credit)
    return credit


async def add_booking(
    db: AsyncSession,
    customer_id: int,
    session_type: SessionType,
    start: datetime,
    status: str = "confirmed",
    funding_source: str = "staff",
    credit_id: int = None,
    calendar_event_id: str = None,
) -> Booking:
    """Insert a booking directly, bypassing notice and availability rules."""
    booking = Booking(
        customer_id=customer_id,
        session_type_id=session_type.id,
        start_time=start,
        end_time=start + timedelta(minutes=session_type.duration_minutes),
        status=status,
        funding_source=funding_source,
        credit_id=credit_id,
        calendar_event_id=calendar_event_id,
        calendar_sync_status="pending",
    )
    db.add(booking)
    await db.commit()
    await db.refresh(booking)
    return booking
