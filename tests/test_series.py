from datetime import UTC, date, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from chroniccare.core.exceptions import ConflictException, ValidationException
from chroniccare.models import appointment_series, appointments, notifications
from chroniccare.schemas.appointments import AppointmentCreate
from chroniccare.schemas.series import RecurrencePattern, SeriesCreate, SeriesMember
from chroniccare.services.appointment_service import AppointmentService
from chroniccare.services.series_service import (
    MAX_SERIES_MEMBERS,
    SeriesService,
    add_months,
    expand_recurrence,
)


def _member(start: datetime, minutes: int = 30) -> SeriesMember:
    return SeriesMember(appointment_type="therapy", scheduled_start=start, duration_minutes=minutes)


@pytest.fixture
def series_payload(patient, provider, facility, booking_start):
    """Weekly series of three explicit members."""
    return {
        "patient_id": patient["id"],
        "provider_id": provider["id"],
        "facility_id": facility["id"],
        "series_name": "Physiotherapy block",
        "recurrence_pattern": "weekly",
        "series_start_date": booking_start.date(),
        "appointments": [
            {"appointment_type": "therapy", "scheduled_start": booking_start + timedelta(weeks=i), "duration_minutes": 45}
            for i in range(3)
        ],
    }


@pytest.fixture
def series_service(db_session, clock, booking_locks):
    return SeriesService(db_session, clock, None, booking_locks)


async def _count(db_session, table) -> int:
    return (await db_session.execute(select(func.count()).select_from(table))).scalar()


def test_add_months_clamps_to_month_end():
    """Test the 31st becomes the last day of shorter months."""
    start = datetime(2026, 1, 31, 9, 0, tzinfo=UTC)

    assert add_months(start, 1) == datetime(2026, 2, 28, 9, 0, tzinfo=UTC)
    assert add_months(start, 2) == datetime(2026, 3, 31, 9, 0, tzinfo=UTC)
    assert add_months(start, 11) == datetime(2026, 12, 31, 9, 0, tzinfo=UTC)
    assert add_months(start, 12) == datetime(2027, 1, 31, 9, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("pattern", "step"),
    [
        (RecurrencePattern.DAILY, timedelta(days=1)),
        (RecurrencePattern.WEEKLY, timedelta(weeks=1)),
        (RecurrencePattern.BIWEEKLY, timedelta(weeks=2)),
    ],
)
def test_expand_fixed_step_patterns(pattern, step, booking_start):
    """Test fixed-step recurrences advance by the pattern's interval."""
    members = expand_recurrence(pattern, _member(booking_start), occurrences=4)

    assert [m.scheduled_start for m in members] == [booking_start + step * i for i in range(4)]
    assert all(m.duration_minutes == 30 for m in members)


def test_expand_stops_at_until(booking_start):
    """Test expansion never passes the series end."""
    members = expand_recurrence(
        RecurrencePattern.WEEKLY,
        _member(booking_start),
        occurrences=10,
        until=booking_start + timedelta(weeks=2),
    )

    assert len(members) == 3


def test_expand_is_capped(booking_start):
    """Test an open-ended expansion is capped."""
    members = expand_recurrence(RecurrencePattern.DAILY, _member(booking_start), until=booking_start + timedelta(days=400))

    assert len(members) == MAX_SERIES_MEMBERS


def test_expand_custom_requires_explicit_members(booking_start):
    """Test custom recurrences cannot be expanded from a template."""
    with pytest.raises(ValidationException):
        expand_recurrence(RecurrencePattern.CUSTOM, _member(booking_start), occurrences=2)


def test_series_create_requires_members_or_template(patient, provider, facility):
    """Test a series needs either explicit members or a template."""
    with pytest.raises(ValueError):
        SeriesCreate(
            patient_id=patient["id"],
            provider_id=provider["id"],
            facility_id=facility["id"],
            series_name="Empty",
            recurrence_pattern="weekly",
            series_start_date=date(2025, 12, 16),
        )


@pytest.mark.asyncio
async def test_create_series_books_every_member(series_service, db_session, tenant_id, series_payload, booking_start):
    """Test a conflict-free series books all members linked to the series."""
    created = await series_service.create_series(tenant_id, SeriesCreate(**series_payload))

    assert created.total_appointments == 3
    assert created.recurrence_pattern == RecurrencePattern.WEEKLY
    assert [a.scheduled_start for a in created.appointments] == [booking_start + timedelta(weeks=i) for i in range(3)]
    assert all(a.series_id == created.id for a in created.appointments)
    assert all(a.duration_minutes == 45 for a in created.appointments)
    # Each member gets its confirmation
    confirmations = await db_session.execute(
        select(func.count())
        .select_from(notifications)
        .where(notifications.c.notification_type == "appointment_confirmation")
    )
    assert confirmations.scalar() == 3


@pytest.mark.asyncio
async def test_create_series_is_atomic_on_conflict(
    series_service, db_session, clock, booking_locks, tenant_id, series_payload, appointment_payload, booking_start
):
    """Test one colliding member rejects the whole series and names its index."""
    blocker = await AppointmentService(db_session, clock, None, booking_locks).create_appointment(
        tenant_id,
        AppointmentCreate(**{**appointment_payload, "scheduled_start": (booking_start + timedelta(weeks=2)).isoformat()}),
    )
    appointments_before = await _count(db_session, appointments)

    with pytest.raises(ConflictException) as exc_info:
        await series_service.create_series(tenant_id, SeriesCreate(**series_payload))

    assert exc_info.value.details["member_index"] == 2
    assert exc_info.value.details["conflicting_appointment_id"] == str(blocker.id)
    assert await _count(db_session, appointments) == appointments_before
    assert await _count(db_session, appointment_series) == 0


@pytest.mark.asyncio
async def test_create_series_rejects_overlapping_members(series_service, db_session, tenant_id, series_payload, booking_start):
    """Test members of the same series may not overlap each other."""
    series_payload["appointments"][1]["scheduled_start"] = booking_start + timedelta(minutes=15)
    series_payload["recurrence_pattern"] = "custom"

    with pytest.raises(ConflictException) as exc_info:
        await series_service.create_series(tenant_id, SeriesCreate(**series_payload))

    assert exc_info.value.details["member_index"] == 1
    assert await _count(db_session, appointments) == 0


@pytest.mark.asyncio
async def test_create_series_member_outside_range(series_service, tenant_id, series_payload, booking_start):
    """Test a member after the series end date is rejected."""
    series_payload["series_end_date"] = (booking_start + timedelta(weeks=1)).date()

    with pytest.raises(ValidationException) as exc_info:
        await series_service.create_series(tenant_id, SeriesCreate(**series_payload))

    assert exc_info.value.details["member_index"] == 2


@pytest.mark.asyncio
async def test_create_series_from_template(series_service, tenant_id, patient, provider, facility, booking_start):
    """Test a monthly template is expanded into members."""
    data = SeriesCreate(
        patient_id=patient["id"],
        provider_id=provider["id"],
        facility_id=facility["id"],
        series_name="Monthly check-in",
        recurrence_pattern="monthly",
        series_start_date=booking_start.date(),
        template={"appointment_type": "follow-up", "scheduled_start": booking_start, "duration_minutes": 30},
        occurrences=3,
    )

    created = await series_service.create_series(tenant_id, data)

    assert [a.scheduled_start.month for a in created.appointments] == [12, 1, 2]
    assert created.total_appointments == 3


@pytest.mark.asyncio
async def test_create_series_endpoint_conflict(client: AsyncClient, auth_headers, appointment_payload, series_payload, booking_start):
    """Test the batch endpoint reports the failing member."""
    await client.post("/api/v1/appointments/", json=appointment_payload, headers=auth_headers)
    body = {
        **{k: str(v) for k, v in series_payload.items() if k != "appointments"},
        "appointments": [
            {**member, "scheduled_start": member["scheduled_start"].isoformat()}
            for member in series_payload["appointments"]
        ],
    }

    response = await client.post("/api/v1/appointments/batch", json=body, headers=auth_headers)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "APPOINTMENT_CONFLICT"
    assert error["details"]["member_index"] == 0
