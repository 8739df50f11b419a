import os
import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal

os.environ.setdefault("JWT_SECRET", "test-secret-for-unit-tests-minimum-32-chars")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ondemand.auth.service import create_access_token, hash_password
from ondemand.bookings.service import BookingService
from ondemand.database import Base, get_db
from ondemand.dependencies import (
    get_booking_locks,
    get_mechanic_index,
    get_notification_hub,
    get_rating_aggregator,
)
from ondemand.geo.index import IndexedMechanic, MechanicIndex
from ondemand.main import app
from ondemand.models.enums import UserRole
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from ondemand.notifications.hub import NotificationHub
from ondemand.services.ratings import RatingAggregator
from ondemand.utils.keyed_lock import KeyedLock

# Use SQLite for tests (in-memory, one shared connection per test)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

# Reference position used by most mechanic fixtures (lower Manhattan area)
BASE_LAT = 40.0
BASE_LNG = -74.0


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def mechanic_index() -> MechanicIndex:
    return MechanicIndex()


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub(queue_size=10)


@pytest.fixture
def booking_locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def rating_aggregator() -> RatingAggregator:
    return RatingAggregator()


@pytest.fixture
def booking_service(
    db: AsyncSession,
    mechanic_index: MechanicIndex,
    hub: NotificationHub,
    booking_locks: KeyedLock,
    rating_aggregator: RatingAggregator,
) -> BookingService:
    return BookingService(db, mechanic_index, hub, booking_locks, rating_aggregator)


@pytest_asyncio.fixture
async def client(
    db: AsyncSession,
    mechanic_index: MechanicIndex,
    hub: NotificationHub,
    booking_locks: KeyedLock,
    rating_aggregator: RatingAggregator,
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mechanic_index] = lambda: mechanic_index
    app.dependency_overrides[get_notification_hub] = lambda: hub
    app.dependency_overrides[get_booking_locks] = lambda: booking_locks
    app.dependency_overrides[get_rating_aggregator] = lambda: rating_aggregator

    # Reset rate limiter storage between tests to avoid 429 errors
    from ondemand.utils.rate_limit import limiter
    if hasattr(limiter, "_limiter") and hasattr(limiter._limiter, "_storage"):
        limiter._limiter._storage.reset()
    elif hasattr(limiter, "reset"):
        limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def make_user(
    db: AsyncSession,
    email: str,
    role: UserRole,
    name: str = "Test User",
) -> User:
    user = User(
        id=uuid.uuid4(),
        name=name,
        email=email,
        password_hash=hash_password("Password123"),
        role=role,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user


async def make_mechanic(
    db: AsyncSession,
    index: MechanicIndex,
    email: str,
    name: str = "Test Mechanic",
    latitude: float | None = BASE_LAT,
    longitude: float | None = BASE_LNG,
    is_available: bool = True,
    rating_avg: float = 0.0,
    rating_count: int = 0,
) -> tuple[User, MechanicProfile]:
    user = await make_user(db, email, UserRole.MECHANIC, name=name)
    profile = MechanicProfile(
        user_id=user.id,
        latitude=latitude,
        longitude=longitude,
        is_available=is_available,
        rating_avg=rating_avg,
        rating_count=rating_count,
        completed_jobs=0,
        service_radius_km=20,
        specialties=["brakes"],
        hourly_rate=Decimal("50.00"),
        monthly_rate=Decimal("29.99"),
        yearly_rate=Decimal("299.00"),
    )
    db.add(profile)
    await db.flush()
    index.upsert(IndexedMechanic.from_profile(profile, name))
    return user, profile


@pytest_asyncio.fixture
async def customer_user(db: AsyncSession) -> User:
    return await make_user(db, "customer@test.com", UserRole.CUSTOMER, name="Jordan Customer")


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await make_user(db, "other.customer@test.com", UserRole.CUSTOMER, name="Casey Customer")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "dispatch@test.com", UserRole.ADMIN, name="Dispatch Desk")


@pytest_asyncio.fixture
async def mechanic_user(db: AsyncSession, mechanic_index: MechanicIndex) -> User:
    user, _ = await make_mechanic(db, mechanic_index, "mechanic@test.com", name="Sam Mechanic")
    return user


@pytest_asyncio.fixture
async def mechanic_profile(db: AsyncSession, mechanic_user: User) -> MechanicProfile:
    return await db.get(MechanicProfile, mechanic_user.id)


@pytest_asyncio.fixture
async def other_mechanic(db: AsyncSession, mechanic_index: MechanicIndex) -> User:
    user, _ = await make_mechanic(
        db, mechanic_index, "other.mechanic@test.com", name="Alex Mechanic", latitude=40.02, longitude=BASE_LNG
    )
    return user


def token_for(user: User) -> str:
    return create_access_token(str(user.id))


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def user_header(user: User) -> dict[str, str]:
    return auth_header(token_for(user))


def booking_payload(**overrides) -> dict:
    payload = {
        "latitude": 40.01,
        "longitude": BASE_LNG,
        "description": "Car will not start, battery light on",
        "address": "12 Water St",
    }
    payload.update(overrides)
    return payload
