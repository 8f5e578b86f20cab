from datetime import UTC, date, datetime, time, timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from httpx import AsyncClient

from chroniccare.core.exceptions import ValidationException
from chroniccare.core.redis_client import CacheManager
from chroniccare.models import appointments, facilities, provider_availability
from chroniccare.schemas.appointments import AppointmentCreate
from chroniccare.schemas.availability import AvailabilityRule, SlotQuery, sunday_based_weekday
from chroniccare.services.appointment_service import AppointmentService
from chroniccare.services.availability_service import AvailabilityIndex
from chroniccare.services.conflict_checker import ConflictChecker
from chroniccare.services.slot_finder import SlotFinder, walk_rule

TUESDAY = date(2025, 12, 16)


def _rule(**overrides) -> AvailabilityRule:
    values = {
        "id": uuid4(),
        "provider_id": uuid4(),
        "facility_id": uuid4(),
        "day_of_week": 2,
        "start_time": time(9, 0),
        "end_time": time(12, 0),
        "slot_duration": 30,
        "effective_from": date(2025, 1, 1),
        "effective_until": None,
        "timezone": "UTC",
    }
    values.update(overrides)
    return AvailabilityRule(**values)


def test_sunday_based_weekday():
    """Test weekday numbering starts at Sunday."""
    assert sunday_based_weekday(date(2025, 12, 14)) == 0
    assert sunday_based_weekday(TUESDAY) == 2
    assert sunday_based_weekday(date(2025, 12, 20)) == 6


def test_rule_applies_within_effective_range():
    """Test a rule only applies on its weekday inside its effective dates."""
    rule = _rule(effective_from=date(2025, 12, 10), effective_until=date(2025, 12, 23))

    assert rule.applies_on(TUESDAY)
    assert not rule.applies_on(TUESDAY + timedelta(days=1))
    assert not rule.applies_on(date(2025, 12, 9))
    assert rule.applies_on(date(2025, 12, 23))
    assert not rule.applies_on(date(2025, 12, 30))


def test_walk_rule_only_yields_whole_slots():
    """Test a slot that would run past the window end is dropped."""
    rule = _rule(start_time=time(9, 0), end_time=time(10, 45), slot_duration=30)

    slots = list(walk_rule(rule, TUESDAY))

    assert [start.time() for start, _ in slots] == [time(9, 0), time(9, 30), time(10, 0)]
    assert slots[-1][1] == datetime(2025, 12, 16, 10, 30, tzinfo=UTC)


def test_walk_rule_converts_facility_time_to_utc():
    """Test rule times are interpreted in the facility timezone."""
    rule = _rule(start_time=time(9, 0), end_time=time(10, 0), timezone="America/New_York")

    first_start, _ = next(walk_rule(rule, TUESDAY))

    # EST is UTC-5 in December
    assert first_start == datetime(2025, 12, 16, 14, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("day", "start", "end", "expected_first", "expected_count"),
    [
        # Spring forward: 01:00 EST to 04:00 EDT is two hours
        (date(2026, 3, 8), time(1, 0), time(4, 0), datetime(2026, 3, 8, 6, 0, tzinfo=UTC), 4),
        # Fall back: 01:00 EDT to 03:00 EST is three hours
        (date(2026, 11, 1), time(1, 0), time(3, 0), datetime(2026, 11, 1, 5, 0, tzinfo=UTC), 6),
    ],
)
def test_walk_rule_across_dst_change(day, start, end, expected_first, expected_count):
    """Test slots stay ordered and disjoint when the window spans a DST change."""
    rule = _rule(day_of_week=0, start_time=start, end_time=end, timezone="America/New_York")

    slots = list(walk_rule(rule, day))

    assert len(slots) == expected_count
    assert slots[0][0] == expected_first
    assert all(slot_start < slot_end for slot_start, slot_end in slots)
    assert all(previous[1] <= current[0] for previous, current in zip(slots, slots[1:]))


@pytest.mark.asyncio
async def test_rules_for_filters_effective_range(db_session, insert_row, tenant_id, provider, facility):
    """Test rules outside the query range or switched off are excluded."""
    await insert_row(
        provider_availability,
        provider_id=provider["id"],
        facility_id=facility["id"],
        day_of_week=2,
        start_time=time(9),
        end_time=time(12),
        effective_from=date(2025, 1, 1),
    )
    await insert_row(
        provider_availability,
        provider_id=provider["id"],
        facility_id=facility["id"],
        day_of_week=3,
        start_time=time(9),
        end_time=time(12),
        effective_from=date(2025, 1, 1),
        effective_until=date(2025, 6, 30),
    )
    await insert_row(
        provider_availability,
        provider_id=provider["id"],
        facility_id=facility["id"],
        day_of_week=4,
        start_time=time(9),
        end_time=time(12),
        effective_from=date(2025, 1, 1),
        is_available=False,
    )

    rules = await AvailabilityIndex(db_session).rules_for(tenant_id, TUESDAY, TUESDAY + timedelta(days=6))

    assert [rule.day_of_week for rule in rules] == [2]
    assert rules[0].timezone == "UTC"


@pytest.mark.asyncio
async def test_rules_for_other_tenant_is_empty(db_session, availability_rule):
    """Test availability is invisible to other tenants."""
    rules = await AvailabilityIndex(db_session).rules_for(uuid4(), TUESDAY, TUESDAY)

    assert rules == []


@pytest.mark.asyncio
async def test_find_slots_lists_free_slots(db_session, clock, tenant_id, provider, availability_rule):
    """Test every slot of the window is offered when nothing is booked."""
    finder = SlotFinder(db_session, clock)

    slots = await finder.find_slots(
        tenant_id, SlotQuery(provider_id=provider["id"], start_date=TUESDAY, end_date=TUESDAY)
    )

    assert [slot.start.time() for slot in slots] == [
        time(9, 0),
        time(9, 30),
        time(10, 0),
        time(10, 30),
        time(11, 0),
        time(11, 30),
    ]
    assert all(slot.duration_minutes == 30 for slot in slots)


@pytest.mark.asyncio
async def test_find_slots_excludes_booked_and_past(
    db_session, clock, tenant_id, appointment_payload, provider, availability_rule, booking_locks
):
    """Test booked slots disappear and slots already started are skipped."""
    service = AppointmentService(db_session, clock, None, booking_locks)
    await service.create_appointment(tenant_id, AppointmentCreate(**appointment_payload))
    finder = SlotFinder(db_session, clock)

    slots = await finder.find_slots(
        tenant_id, SlotQuery(provider_id=provider["id"], start_date=TUESDAY, end_date=TUESDAY)
    )
    assert time(11, 0) not in [slot.start.time() for slot in slots]
    assert len(slots) == 5

    clock.advance(days=1, minutes=30)
    slots = await finder.find_slots(
        tenant_id, SlotQuery(provider_id=provider["id"], start_date=TUESDAY, end_date=TUESDAY)
    )
    assert [slot.start.time() for slot in slots] == [time(11, 30)]


@pytest.mark.asyncio
async def test_listed_slots_agree_with_conflict_checker(
    db_session, insert_row, clock, tenant_id, patient, provider, facility, availability_rule
):
    """Test no listed slot conflicts and every unlisted slot inside the window does."""
    start = datetime(2025, 12, 16, 9, 45, tzinfo=UTC)
    await insert_row(
        appointments,
        tenant_id=tenant_id,
        patient_id=patient["id"],
        provider_id=provider["id"],
        facility_id=facility["id"],
        appointment_type="consultation",
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=45),
        duration_minutes=45,
        status="confirmed",
    )
    finder = SlotFinder(db_session, clock)
    checker = ConflictChecker(db_session)

    slots = await finder.find_slots(
        tenant_id, SlotQuery(provider_id=provider["id"], start_date=TUESDAY, end_date=TUESDAY)
    )
    listed = {slot.start for slot in slots}

    rule = (await AvailabilityIndex(db_session).rules_for(tenant_id, TUESDAY, TUESDAY))[0]
    for slot_start, slot_end in walk_rule(rule, TUESDAY):
        conflict = await checker.has_conflict(provider["id"], slot_start, slot_end)
        assert (slot_start in listed) == (not conflict)
    assert {s.time() for s in listed} == {time(9, 0), time(10, 30), time(11, 0), time(11, 30)}


@pytest.mark.asyncio
async def test_find_slots_filters_by_appointment_type(db_session, clock, tenant_id, provider, availability_rule):
    """Test providers that do not offer the type are left out."""
    finder = SlotFinder(db_session, clock)

    offered = await finder.find_slots(
        tenant_id,
        SlotQuery(provider_id=provider["id"], appointment_type="follow-up", start_date=TUESDAY, end_date=TUESDAY),
    )
    not_offered = await finder.find_slots(
        tenant_id,
        SlotQuery(provider_id=provider["id"], appointment_type="imaging", start_date=TUESDAY, end_date=TUESDAY),
    )

    assert offered
    assert not_offered == []


@pytest.mark.asyncio
async def test_find_slots_in_facility_timezone(db_session, insert_row, clock, tenant_id, provider):
    """Test slots of a facility in another timezone are returned as UTC instants."""
    tokyo = await insert_row(facilities, tenant_id=tenant_id, name="Tokyo Annex", timezone="Asia/Tokyo")
    await insert_row(
        provider_availability,
        provider_id=provider["id"],
        facility_id=tokyo["id"],
        day_of_week=2,
        start_time=time(9, 0),
        end_time=time(10, 0),
        slot_duration=60,
        effective_from=date(2025, 1, 1),
    )
    finder = SlotFinder(db_session, clock)

    slots = await finder.find_slots(
        tenant_id, SlotQuery(facility_id=tokyo["id"], start_date=TUESDAY, end_date=TUESDAY)
    )

    assert [slot.start for slot in slots] == [datetime(2025, 12, 16, 0, 0, tzinfo=UTC)]


@pytest.mark.asyncio
async def test_find_slots_rejects_long_range(db_session, clock, tenant_id):
    """Test ranges longer than 31 days are rejected."""
    finder = SlotFinder(db_session, clock)

    with pytest.raises(ValidationException):
        await finder.find_slots(
            tenant_id, SlotQuery(start_date=TUESDAY, end_date=TUESDAY + timedelta(days=31))
        )


@pytest.mark.asyncio
async def test_no_rules_means_no_slots(db_session, clock, tenant_id, provider):
    """Test a provider without availability has no slots."""
    finder = SlotFinder(db_session, clock)

    slots = await finder.find_slots(
        tenant_id, SlotQuery(provider_id=provider["id"], start_date=TUESDAY, end_date=TUESDAY + timedelta(days=6))
    )

    assert slots == []


@pytest.mark.asyncio
async def test_find_slots_uses_cache(db_session, clock, tenant_id, provider, availability_rule):
    """Test computed listings are written to the cache with the configured TTL."""
    mock_redis = MagicMock()
    mock_redis.get.return_value = None
    finder = SlotFinder(db_session, clock, CacheManager(redis_client=mock_redis))

    slots = await finder.find_slots(
        tenant_id, SlotQuery(provider_id=provider["id"], start_date=TUESDAY, end_date=TUESDAY)
    )

    assert len(slots) == 6
    key, ttl, _ = mock_redis.setex.call_args[0]
    assert key.startswith(f"slots:{tenant_id}:{provider['id']}:")
    assert ttl == 60


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, auth_headers, provider, availability_rule):
    """Test the availability endpoint returns slots in the envelope."""
    response = await client.get(
        "/api/v1/appointments/availability",
        params={"start_date": "2025-12-16", "end_date": "2025-12-16", "provider_id": str(provider["id"])},
        headers=auth_headers,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert len(data) == 6
    assert data[0]["provider_id"] == str(provider["id"])


@pytest.mark.asyncio
async def test_availability_endpoint_bad_range(client: AsyncClient, auth_headers):
    """Test an inverted date range is a validation error."""
    response = await client.get(
        "/api/v1/appointments/availability",
        params={"start_date": "2025-12-16", "end_date": "2025-12-10"},
        headers=auth_headers,
    )

    assert response.status_code == 422
