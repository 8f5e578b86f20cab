"""Availability index over provider weekly rules."""

from datetime import date
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.models.availability import provider_availability
from chroniccare.models.providers import facilities, providers
from chroniccare.schemas.availability import AvailabilityRule


class AvailabilityIndex:
    """Resolves the weekly availability rules that apply to a date range."""

    def __init__(self, db: AsyncSession):
        """Initialize index with database session."""
        self.db = db

    async def rules_for(
        self,
        tenant_id: UUID,
        start_date: date,
        end_date: date,
        provider_id: UUID | None = None,
        facility_id: UUID | None = None,
    ) -> list[AvailabilityRule]:
        """
        Active rules whose effective range intersects ``[start_date, end_date]``.

        Args:
            tenant_id: Tenant scope; rules of other tenants' providers are invisible
            start_date: First day of the range
            end_date: Last day of the range (inclusive)
            provider_id: Optional provider filter
            facility_id: Optional facility filter

        Returns:
            Rules ordered by provider then start time; empty when the provider
            has no availability
        """
        pa = provider_availability
        conditions = [
            providers.c.tenant_id == tenant_id,
            providers.c.is_active.is_(True),
            facilities.c.tenant_id == tenant_id,
            pa.c.is_available.is_(True),
            pa.c.effective_from <= end_date,
            or_(pa.c.effective_until.is_(None), pa.c.effective_until >= start_date),
        ]
        if provider_id:
            conditions.append(pa.c.provider_id == provider_id)
        if facility_id:
            conditions.append(pa.c.facility_id == facility_id)

        stmt = (
            select(pa, facilities.c.timezone)
            .join(providers, providers.c.id == pa.c.provider_id)
            .join(facilities, facilities.c.id == pa.c.facility_id)
            .where(and_(*conditions))
            .order_by(pa.c.provider_id, pa.c.start_time)
        )
        result = await self.db.execute(stmt)

        return [
            AvailabilityRule(
                id=row["id"],
                provider_id=row["provider_id"],
                facility_id=row["facility_id"],
                day_of_week=row["day_of_week"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                slot_duration=row["slot_duration"],
                effective_from=row["effective_from"],
                effective_until=row["effective_until"],
                timezone=row["timezone"] or "UTC",
            )
            for row in result.mappings().all()
        ]

    @staticmethod
    def rules_on(rules: list[AvailabilityRule], day: date) -> list[AvailabilityRule]:
        """Rules applicable on one calendar date, in input order."""
        return [rule for rule in rules if rule.applies_on(day)]
