"""Tests for Redis caching implementation."""

import json
from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chroniccare.core.redis_client import CacheManager, slot_cache_key, slot_cache_pattern
from chroniccare.schemas.appointments import AppointmentCreate
from chroniccare.schemas.availability import SlotQuery
from chroniccare.services.appointment_service import AppointmentService
from chroniccare.services.slot_finder import SlotFinder


def test_cache_manager_get_json():
    """Test CacheManager get_json method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    # Test cache miss
    mock_redis.get.return_value = None
    result = cache_manager.get_json("test_key")
    assert result is None
    mock_redis.get.assert_called_once_with("test_key")

    # Test cache hit
    mock_redis.reset_mock()
    mock_redis.get.return_value = '[{"start": "2025-12-16T09:00:00+00:00"}]'
    result = cache_manager.get_json("test_key")
    assert result == [{"start": "2025-12-16T09:00:00+00:00"}]


def test_cache_manager_set_json():
    """Test CacheManager set_json method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    # Test without TTL
    result = cache_manager.set_json("test_key", {"value": 123})
    assert result is True
    mock_redis.set.assert_called_once_with("test_key", json.dumps({"value": 123}))

    # Test with TTL
    mock_redis.reset_mock()
    result = cache_manager.set_json("test_key", {"value": 123}, ttl=60)
    assert result is True
    mock_redis.setex.assert_called_once_with("test_key", 60, json.dumps({"value": 123}))


def test_cache_manager_delete_pattern():
    """Test CacheManager delete_pattern method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)
    mock_redis.scan_iter.return_value = iter(["slots:t:a", "slots:t:b"])
    mock_redis.delete.return_value = 2

    result = cache_manager.delete_pattern("slots:t:*")

    mock_redis.scan_iter.assert_called_once_with(match="slots:t:*", count=500)
    mock_redis.delete.assert_called_once_with("slots:t:a", "slots:t:b")
    assert result == 2

    # Nothing to delete
    mock_redis.reset_mock()
    mock_redis.scan_iter.return_value = iter([])
    assert cache_manager.delete_pattern("slots:t:*") == 0
    mock_redis.delete.assert_not_called()


def test_cache_manager_fails_open():
    """Test a Redis outage reads as a miss and writes as a no-op."""
    mock_redis = MagicMock()
    mock_redis.get.side_effect = RedisConnectionError("down")
    mock_redis.setex.side_effect = RedisConnectionError("down")
    mock_redis.scan_iter.side_effect = RedisConnectionError("down")
    cache_manager = CacheManager(redis_client=mock_redis)

    assert cache_manager.get_json("key") is None
    assert cache_manager.set_json("key", {"a": 1}, ttl=60) is False
    assert cache_manager.delete_pattern("key:*") == 0


def test_slot_cache_keys_are_tenant_scoped(tenant_id):
    """Test listing keys fall under the tenant's invalidation pattern."""
    key = slot_cache_key(tenant_id, None, None, None, date(2025, 12, 16), date(2025, 12, 16))

    assert key == f"slots:{tenant_id}:*:*:*:2025-12-16:2025-12-16"
    assert slot_cache_pattern(tenant_id) == f"slots:{tenant_id}:*"


@pytest.mark.asyncio
async def test_cached_listing_drops_started_slots(db_session, clock, tenant_id, provider, facility):
    """Test a cache hit never returns a slot that has already started."""
    past = clock.now() - timedelta(minutes=30)
    future = clock.now() + timedelta(hours=1)
    mock_redis = MagicMock()
    mock_redis.get.return_value = json.dumps(
        [
            {
                "provider_id": str(provider["id"]),
                "facility_id": str(facility["id"]),
                "start": start.isoformat(),
                "end": (start + timedelta(minutes=30)).isoformat(),
                "duration_minutes": 30,
            }
            for start in (past, future)
        ]
    )
    finder = SlotFinder(db_session, clock, CacheManager(redis_client=mock_redis))

    slots = await finder.find_slots(
        tenant_id, SlotQuery(start_date=clock.now().date(), end_date=clock.now().date())
    )

    assert [slot.start for slot in slots] == [future]
    mock_redis.setex.assert_not_called()


@pytest.mark.asyncio
async def test_booking_invalidates_slot_cache(db_session, clock, booking_locks, tenant_id, appointment_payload):
    """Test a booking drops the tenant's cached listings."""
    mock_redis = MagicMock()
    mock_redis.scan_iter.return_value = iter([f"slots:{tenant_id}:x"])
    service = AppointmentService(db_session, clock, CacheManager(redis_client=mock_redis), booking_locks)

    await service.create_appointment(tenant_id, AppointmentCreate(**appointment_payload))

    mock_redis.scan_iter.assert_called_once_with(match=f"slots:{tenant_id}:*", count=500)
    mock_redis.delete.assert_called_once_with(f"slots:{tenant_id}:x")


@pytest.mark.asyncio
async def test_booking_succeeds_when_cache_is_down(db_session, clock, booking_locks, tenant_id, appointment_payload):
    """Test cache failures never break a booking."""
    mock_redis = MagicMock()
    mock_redis.scan_iter.side_effect = RedisConnectionError("down")
    service = AppointmentService(db_session, clock, CacheManager(redis_client=mock_redis), booking_locks)

    created = await service.create_appointment(tenant_id, AppointmentCreate(**appointment_payload))

    assert created.scheduled_start == datetime(2025, 12, 16, 11, 0, tzinfo=UTC)
