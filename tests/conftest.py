import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Settings are read at import time; tests never touch a real database or Redis
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")

from httpx import ASGITransport, AsyncClient
from sqlalchemy import Table, insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from chroniccare.core.clock import FrozenClock
from chroniccare.core.queue import QueueMessage, QueuePublishError
from chroniccare.core.security import create_access_token
from chroniccare.database import get_db
from chroniccare.dependencies import (
    get_booking_locks,
    get_cache_manager,
    get_clock,
    get_notification_queue,
)
from chroniccare.main import app
from chroniccare.models import (
    facilities,
    medications,
    metadata,
    patients,
    provider_availability,
    providers,
)
from chroniccare.services.conflict_checker import BookingLocks

# Monday
NOW = datetime(2025, 12, 15, 10, 0, tzinfo=UTC)
# Tuesday inside the seeded availability window
BOOKING_START = datetime(2025, 12, 16, 11, 0, tzinfo=UTC)


class FakeQueue:
    """In-memory stand-in for the Redis notification queue."""

    def __init__(self) -> None:
        self.messages: list[QueueMessage] = []
        self.acked: list[QueueMessage] = []
        self.nacked: list[tuple[QueueMessage, bool]] = []
        self.fail_publish = False

    async def publish(self, queue: str, body: dict[str, Any], priority: int = 5) -> str:
        if self.fail_publish:
            raise QueuePublishError("broker unavailable")
        message = QueueMessage(queue=queue, body=body, priority=priority)
        self.messages.append(message)
        return message.id

    async def reserve(self, queue: str, count: int) -> list[QueueMessage]:
        ready = [m for m in self.messages if m.queue == queue]
        ready.sort(key=lambda m: -m.priority)
        taken = ready[:count]
        for message in taken:
            self.messages.remove(message)
        return taken

    async def ack(self, message: QueueMessage) -> None:
        self.acked.append(message)

    async def nack(self, message: QueueMessage, requeue: bool = True) -> None:
        self.nacked.append((message, requeue))

    async def depth(self, queue: str) -> int:
        return len([m for m in self.messages if m.queue == queue])


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed SQLite database, one per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'chroniccare.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def booking_start() -> datetime:
    return BOOKING_START


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def booking_locks() -> BookingLocks:
    return BookingLocks()


@pytest.fixture
def insert_row(db_session: AsyncSession) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Insert a row into any table and return it."""

    async def _insert(table: Table, **values: Any) -> dict[str, Any]:
        result = await db_session.execute(insert(table).values(**values).returning(table))
        row = dict(result.mappings().one())
        await db_session.commit()
        return row

    return _insert


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest_asyncio.fixture
async def facility(insert_row, tenant_id) -> dict[str, Any]:
    return await insert_row(
        facilities,
        tenant_id=tenant_id,
        name="Riverside Clinic",
        facility_type="clinic",
        timezone="UTC",
    )


@pytest_asyncio.fixture
async def provider(insert_row, tenant_id) -> dict[str, Any]:
    return await insert_row(
        providers,
        tenant_id=tenant_id,
        first_name="Grace",
        last_name="Hopper",
        specialty="endocrinology",
        contact_info={"email": "grace.hopper@example.com"},
        default_appointment_durations={"consultation": 30, "follow-up": 30},
    )


@pytest_asyncio.fixture
async def patient(insert_row, tenant_id) -> dict[str, Any]:
    return await insert_row(
        patients,
        tenant_id=tenant_id,
        mrn="MRN-0001",
        first_name="Ada",
        last_name="Lovelace",
        contact_info={"phone": "+15555550100", "email": "ada@example.com"},
        communication_preferences={},
        timezone="UTC",
    )


@pytest_asyncio.fixture
async def availability_rule(insert_row, provider, facility) -> dict[str, Any]:
    """Tuesdays 09:00-12:00 facility time in 30 minute slots."""
    return await insert_row(
        provider_availability,
        provider_id=provider["id"],
        facility_id=facility["id"],
        day_of_week=2,
        start_time=time(9, 0),
        end_time=time(12, 0),
        slot_duration=30,
        effective_from=date(2025, 1, 1),
    )


@pytest_asyncio.fixture
async def medication(insert_row, tenant_id, patient, provider) -> dict[str, Any]:
    return await insert_row(
        medications,
        tenant_id=tenant_id,
        patient_id=patient["id"],
        prescribing_provider_id=provider["id"],
        medication_name="Metformin",
        dosage="500 mg",
        frequency="twice daily",
        instructions="Take with food",
        start_date=date(2025, 12, 15),
        days_supply=30,
        refills_remaining=2,
        status="active",
    )


@pytest.fixture
def appointment_payload(patient, provider, facility) -> dict[str, Any]:
    """Booking request for the seeded directory entries."""
    return {
        "patient_id": str(patient["id"]),
        "provider_id": str(provider["id"]),
        "facility_id": str(facility["id"]),
        "appointment_type": "consultation",
        "scheduled_start": BOOKING_START.isoformat(),
        "duration_minutes": 30,
        "reason": "Quarterly HbA1c review",
    }


@pytest.fixture
def auth_headers(tenant_id) -> dict:
    """Create authentication headers for testing protected endpoints."""
    token_data = {"sub": str(uuid4()), "tenant_id": str(tenant_id)}
    token = create_access_token(data=token_data, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    clock: FrozenClock,
    fake_queue: FakeQueue,
    booking_locks: BookingLocks,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_notification_queue] = lambda: fake_queue
    app.dependency_overrides[get_cache_manager] = lambda: None
    app.dependency_overrides[get_booking_locks] = lambda: booking_locks

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
