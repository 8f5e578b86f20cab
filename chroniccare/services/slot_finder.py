"""Free slot computation over availability rules and booked intervals."""

from collections.abc import Iterator
from datetime import UTC, date, datetime, time, timedelta
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.config import Settings, settings as default_settings
from chroniccare.core.clock import Clock, SystemClock, get_zone
from chroniccare.core.exceptions import ValidationException
from chroniccare.core.redis_client import CacheManager, slot_cache_key, slot_cache_pattern
from chroniccare.models.providers import providers
from chroniccare.schemas.availability import AvailabilityRule, SlotQuery, SlotResponse
from chroniccare.services.availability_service import AvailabilityIndex
from chroniccare.services.conflict_checker import ConflictChecker, overlaps

logger = structlog.get_logger(__name__)


def walk_rule(rule: AvailabilityRule, day: date) -> Iterator[tuple[datetime, datetime]]:
    """
    Fixed-size slots of one rule on one day, as UTC instants.

    Rule times are wall-clock times of the facility; a slot must fit entirely
    inside the window. The window bounds are converted to UTC once and slots
    are stepped in UTC, so a DST change inside the window shortens or
    lengthens it instead of repeating wall-clock times.
    """
    zone = get_zone(rule.timezone)
    step = timedelta(minutes=rule.slot_duration)
    cursor = datetime.combine(day, rule.start_time, tzinfo=zone).astimezone(UTC)
    window_end = datetime.combine(day, rule.end_time, tzinfo=zone).astimezone(UTC)

    while cursor + step <= window_end:
        yield cursor, cursor + step
        cursor += step


def invalidate_slot_cache(cache: CacheManager | None, tenant_id: UUID) -> None:
    """Drop every cached slot listing of a tenant."""
    if cache is not None:
        cache.delete_pattern(slot_cache_pattern(tenant_id))


class SlotFinder:
    """
    Read-only projection of bookable slots.

    Listings can be stale by the time a client acts on them; booking always
    re-validates through :class:`ConflictChecker` inside the write transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock | None = None,
        cache: CacheManager | None = None,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.cache = cache
        self.settings = settings

    async def find_slots(self, tenant_id: UUID, query: SlotQuery) -> list[SlotResponse]:
        """
        Free slots in ``[query.start_date, query.end_date]``.

        Args:
            tenant_id: Tenant scope
            query: Provider/facility/type filters and date range

        Returns:
            Slots ordered by day, then provider, then start time

        Raises:
            ValidationException: If the range is longer than allowed
        """
        span = (query.end_date - query.start_date).days + 1
        if span > self.settings.max_availability_range_days:
            raise ValidationException(
                f"Date range may span at most {self.settings.max_availability_range_days} days",
                field="end_date",
                details={"max_days": self.settings.max_availability_range_days},
            )

        now = self.clock.now()
        cache_key = slot_cache_key(
            tenant_id,
            query.provider_id,
            query.facility_id,
            query.appointment_type.value if query.appointment_type else None,
            query.start_date,
            query.end_date,
        )
        if self.cache is not None:
            cached = self.cache.get_json(cache_key)
            if cached is not None:
                slots = [SlotResponse.model_validate(item) for item in cached]
                return [slot for slot in slots if slot.start > now]

        slots = await self._compute(tenant_id, query, now)

        if self.cache is not None:
            self.cache.set_json(
                cache_key,
                [slot.model_dump(mode="json") for slot in slots],
                ttl=self.settings.slot_cache_ttl_seconds,
            )
        return slots

    async def _compute(
        self,
        tenant_id: UUID,
        query: SlotQuery,
        now: datetime,
    ) -> list[SlotResponse]:
        rules = await AvailabilityIndex(self.db).rules_for(
            tenant_id,
            query.start_date,
            query.end_date,
            provider_id=query.provider_id,
            facility_id=query.facility_id,
        )
        if query.appointment_type and rules:
            offering = await self._providers_offering(
                tenant_id, {rule.provider_id for rule in rules}, query.appointment_type.value
            )
            rules = [rule for rule in rules if rule.provider_id in offering]
        if not rules:
            return []

        # Widen by a day on each side so every timezone's wall clock is covered.
        range_start = datetime.combine(query.start_date, time.min, tzinfo=UTC) - timedelta(days=1)
        range_end = datetime.combine(query.end_date, time.min, tzinfo=UTC) + timedelta(days=2)
        booked = await ConflictChecker(self.db).booked_intervals(
            (rule.provider_id for rule in rules), range_start, range_end
        )

        slots: list[SlotResponse] = []
        day = query.start_date
        while day <= query.end_date:
            for rule in AvailabilityIndex.rules_on(rules, day):
                taken = booked.get(rule.provider_id, [])
                for start, end in walk_rule(rule, day):
                    if start <= now:
                        continue
                    if any(overlaps(start, end, b_start, b_end) for b_start, b_end in taken):
                        continue
                    slots.append(
                        SlotResponse(
                            provider_id=rule.provider_id,
                            facility_id=rule.facility_id,
                            start=start,
                            end=end,
                            duration_minutes=rule.slot_duration,
                        )
                    )
            day += timedelta(days=1)

        logger.debug(
            "slots_computed",
            tenant_id=str(tenant_id),
            rules=len(rules),
            slots=len(slots),
        )
        return slots

    async def _providers_offering(
        self,
        tenant_id: UUID,
        provider_ids: set[UUID],
        appointment_type: str,
    ) -> set[UUID]:
        """Providers that offer the type; an empty duration map means every type."""
        stmt = select(providers.c.id, providers.c.default_appointment_durations).where(
            providers.c.tenant_id == tenant_id,
            providers.c.id.in_(provider_ids),
        )
        result = await self.db.execute(stmt)
        return {
            row.id
            for row in result.all()
            if not row.default_appointment_durations
            or appointment_type in row.default_appointment_durations
        }
