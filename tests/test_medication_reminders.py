from datetime import UTC, date, datetime, time
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update

from chroniccare.core.exceptions import NotFoundException, ValidationException
from chroniccare.models import medications, notifications
from chroniccare.services.medication_reminders import (
    MedicationReminderPlanner,
    ReminderFrequency,
    normalise_frequency,
    reminder_horizon,
    reminder_times,
)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Twice daily", ReminderFrequency.TWICE_DAILY),
        ("twice_daily", ReminderFrequency.TWICE_DAILY),
        ("BID", ReminderFrequency.TWICE_DAILY),
        ("every-8-hours", ReminderFrequency.EVERY_8_HOURS),
        ("prn", ReminderFrequency.AS_NEEDED),
        ("with every full moon", None),
        (None, None),
    ],
)
def test_normalise_frequency(text, expected):
    """Test free-text frequencies map onto known schedules."""
    assert normalise_frequency(text) == expected


def test_reminder_times():
    """Test times come from explicit details, then frequency, then the default."""
    assert reminder_times("twice daily") == (time(9), time(21))
    assert reminder_times("as needed") == ()
    assert reminder_times("whenever") == (time(9),)
    assert reminder_times("twice daily", {"times": ["07:30", "19"]}) == (time(7, 30), time(19))


def test_reminder_times_rejects_malformed():
    """Test a malformed explicit time is a validation error."""
    with pytest.raises(ValidationException):
        reminder_times(None, {"times": ["seven"]})


@pytest.mark.parametrize(
    ("fields", "expected"),
    [
        ({"end_date": date(2026, 1, 1), "days_supply": 90}, date(2026, 1, 1)),
        ({"days_supply": 30}, date(2026, 1, 14)),
        ({"is_ongoing": True}, date(2026, 3, 15)),
        ({}, date(2026, 1, 14)),
    ],
)
def test_reminder_horizon(fields, expected):
    """Test the reminder window end for each kind of prescription."""
    assert reminder_horizon({"start_date": date(2025, 12, 15), **fields}) == expected


@pytest.mark.asyncio
async def test_schedule_reminders(db_session, clock, tenant_id, medication):
    """Test dose reminders cover the supply and a refill reminder precedes its end."""
    planner = MedicationReminderPlanner(db_session, clock)

    result = await planner.schedule_reminders(tenant_id, medication["id"])

    # 31 days at 09:00 and 21:00, minus this morning's dose which has passed
    assert result.reminders_scheduled == 61
    assert result.refill_reminder_scheduled is True
    rows = (
        await db_session.execute(
            select(notifications)
            .where(notifications.c.medication_id == medication["id"])
            .order_by(notifications.c.scheduled_send_time)
        )
    ).mappings().all()
    doses = [r for r in rows if r["notification_type"] == "medication_reminder"]
    refill = [r for r in rows if r["notification_type"] == "medication_refill_reminder"]
    assert doses[0]["scheduled_send_time"] == datetime(2025, 12, 15, 21, 0, tzinfo=UTC)
    assert doses[-1]["scheduled_send_time"] == datetime(2026, 1, 14, 21, 0, tzinfo=UTC)
    assert all(r["priority"] == 6 for r in doses)
    assert refill[0]["scheduled_send_time"] == datetime(2026, 1, 7, 9, 0, tzinfo=UTC)
    assert refill[0]["priority"] == 7
    assert refill[0]["template_data"]["refills_remaining"] == 2


@pytest.mark.asyncio
async def test_rescheduling_supersedes_previous_run(db_session, clock, tenant_id, medication):
    """Test a second run replaces the pending reminders instead of duplicating them."""
    planner = MedicationReminderPlanner(db_session, clock)
    await planner.schedule_reminders(tenant_id, medication["id"])

    await planner.schedule_reminders(tenant_id, medication["id"])

    rows = (
        await db_session.execute(select(notifications).where(notifications.c.medication_id == medication["id"]))
    ).mappings().all()
    pending = [r for r in rows if r["delivery_status"] == "pending"]
    superseded = [r for r in rows if r["delivery_status"] == "superseded"]
    assert len(pending) == 62
    assert len(superseded) == 62


@pytest.mark.asyncio
async def test_no_refill_reminder_without_refills(db_session, clock, tenant_id, medication):
    """Test the refill reminder is skipped when no refills remain."""
    await db_session.execute(
        update(medications).where(medications.c.id == medication["id"]).values(refills_remaining=0)
    )
    await db_session.commit()

    result = await MedicationReminderPlanner(db_session, clock).schedule_reminders(tenant_id, medication["id"])

    assert result.refill_reminder_scheduled is False


@pytest.mark.asyncio
async def test_inactive_medication_is_rejected(db_session, clock, tenant_id, medication):
    """Test reminders are only planned for active medications."""
    await db_session.execute(
        update(medications).where(medications.c.id == medication["id"]).values(status="discontinued")
    )
    await db_session.commit()

    with pytest.raises(ValidationException):
        await MedicationReminderPlanner(db_session, clock).schedule_reminders(tenant_id, medication["id"])


@pytest.mark.asyncio
async def test_other_tenant_cannot_schedule(db_session, clock, medication):
    """Test a medication is invisible outside its tenant."""
    with pytest.raises(NotFoundException):
        await MedicationReminderPlanner(db_session, clock).schedule_reminders(uuid4(), medication["id"])


@pytest.mark.asyncio
async def test_schedule_reminders_endpoint(client: AsyncClient, auth_headers, medication):
    """Test the reminders endpoint reports what was scheduled."""
    response = await client.post(f"/api/v1/medications/{medication['id']}/reminders", headers=auth_headers)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["medication_id"] == str(medication["id"])
    assert data["reminders_scheduled"] == 61
    assert data["refill_reminder_scheduled"] is True
