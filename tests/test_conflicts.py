import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from chroniccare.core.exceptions import ConflictException, NotFoundException
from chroniccare.models import appointments
from chroniccare.services.conflict_checker import BookingLocks, ConflictChecker, overlaps


@pytest.fixture
def book(insert_row, tenant_id, patient, provider, facility, clock):
    """Insert an appointment row directly, bypassing the lifecycle service."""

    async def _book(start, minutes=30, status="scheduled", provider_id=None):
        return await insert_row(
            appointments,
            tenant_id=tenant_id,
            patient_id=patient["id"],
            provider_id=provider_id or provider["id"],
            facility_id=facility["id"],
            appointment_type="consultation",
            scheduled_start=start,
            scheduled_end=start + timedelta(minutes=minutes),
            duration_minutes=minutes,
            status=status,
            created_at=clock.now(),
            updated_at=clock.now(),
        )

    return _book


def test_overlaps_is_half_open(booking_start):
    """Test touching intervals do not overlap."""
    end = booking_start + timedelta(minutes=30)
    later = end + timedelta(minutes=30)

    assert overlaps(booking_start, end, booking_start + timedelta(minutes=15), later)
    assert not overlaps(booking_start, end, end, later)
    assert not overlaps(end, later, booking_start, end)
    assert overlaps(booking_start, later, booking_start + timedelta(minutes=5), end)


@pytest.mark.asyncio
async def test_find_conflict_returns_overlapping_id(db_session, book, provider, booking_start):
    """Test an overlapping live appointment is reported."""
    existing = await book(booking_start)
    checker = ConflictChecker(db_session)

    conflict = await checker.find_conflict(
        provider["id"], booking_start + timedelta(minutes=10), booking_start + timedelta(minutes=40)
    )

    assert conflict == existing["id"]


@pytest.mark.asyncio
async def test_adjacent_interval_is_free(db_session, book, provider, booking_start):
    """Test an interval starting exactly at the previous end is free."""
    await book(booking_start)
    checker = ConflictChecker(db_session)

    assert not await checker.has_conflict(
        provider["id"], booking_start + timedelta(minutes=30), booking_start + timedelta(minutes=60)
    )
    assert not await checker.has_conflict(
        provider["id"], booking_start - timedelta(minutes=30), booking_start
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["cancelled", "no-show"])
async def test_released_statuses_do_not_block(db_session, book, provider, booking_start, status):
    """Test cancelled and no-show appointments release their time."""
    await book(booking_start, status=status)
    checker = ConflictChecker(db_session)

    assert not await checker.has_conflict(provider["id"], booking_start, booking_start + timedelta(minutes=30))


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["confirmed", "arrived", "in-progress", "completed"])
async def test_other_statuses_block(db_session, book, provider, booking_start, status):
    """Test every non-released status occupies the calendar."""
    await book(booking_start, status=status)
    checker = ConflictChecker(db_session)

    assert await checker.has_conflict(provider["id"], booking_start, booking_start + timedelta(minutes=30))


@pytest.mark.asyncio
async def test_exclude_appointment_being_moved(db_session, book, provider, booking_start):
    """Test the appointment being rescheduled does not conflict with itself."""
    existing = await book(booking_start)
    checker = ConflictChecker(db_session)

    conflict = await checker.find_conflict(
        provider["id"],
        booking_start + timedelta(minutes=15),
        booking_start + timedelta(minutes=45),
        exclude_appointment_id=existing["id"],
    )

    assert conflict is None


@pytest.mark.asyncio
async def test_ensure_available_raises_with_details(db_session, book, provider, booking_start):
    """Test the raised conflict carries the caller's details and the colliding id."""
    existing = await book(booking_start)
    checker = ConflictChecker(db_session)

    with pytest.raises(ConflictException) as exc_info:
        await checker.ensure_available(
            provider["id"],
            booking_start,
            booking_start + timedelta(minutes=30),
            details={"member_index": 2},
        )

    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {
        "member_index": 2,
        "conflicting_appointment_id": str(existing["id"]),
    }


@pytest.mark.asyncio
async def test_booked_intervals_groups_by_provider(db_session, book, provider, booking_start):
    """Test booked intervals are returned per provider in start order."""
    await book(booking_start + timedelta(hours=1))
    await book(booking_start)
    await book(booking_start + timedelta(hours=2), status="cancelled")
    checker = ConflictChecker(db_session)

    booked = await checker.booked_intervals(
        [provider["id"]], booking_start - timedelta(days=1), booking_start + timedelta(days=1)
    )

    assert booked[provider["id"]] == [
        (booking_start, booking_start + timedelta(minutes=30)),
        (booking_start + timedelta(hours=1), booking_start + timedelta(hours=1, minutes=30)),
    ]


@pytest.mark.asyncio
async def test_lock_provider_is_tenant_scoped(db_session, provider, tenant_id):
    """Test a provider of another tenant cannot be locked."""
    checker = ConflictChecker(db_session)
    locked = await checker.lock_provider(tenant_id, provider["id"])
    assert locked["id"] == provider["id"]

    with pytest.raises(NotFoundException):
        await checker.lock_provider(uuid4(), provider["id"])
    await db_session.rollback()


@pytest.mark.asyncio
async def test_booking_locks_serialise_per_provider(provider):
    """Test holders of the same provider lock run one after another."""
    locks = BookingLocks()
    order: list[str] = []

    async def hold(name: str):
        async with locks.hold(provider["id"]):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(hold("a"), hold("b"))

    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
