"""Double-booking prevention for provider calendars."""

import asyncio
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.core.exceptions import ConflictException, NotFoundException
from chroniccare.models.appointments import appointments
from chroniccare.models.providers import providers
from chroniccare.schemas.appointments import AppointmentStatus

logger = structlog.get_logger(__name__)

RELEASED_STATUSES = frozenset({AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value})
LIVE_STATUSES = frozenset(s.value for s in AppointmentStatus) - RELEASED_STATUSES


def overlaps(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """Half-open overlap of ``[start_a, end_a)`` and ``[start_b, end_b)``."""
    return start_a < end_b and end_a > start_b


class BookingLocks:
    """
    Per-provider asyncio locks.

    Serialises conflict-check-then-write sequences for one provider within a
    process. Across processes the provider row lock taken by
    :meth:`ConflictChecker.lock_provider` and the storage constraints apply.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @asynccontextmanager
    async def hold(self, provider_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider_id] = lock
        async with lock:
            yield


class ConflictChecker:
    """Decides whether an interval may be booked on a provider's calendar."""

    def __init__(self, db: AsyncSession):
        """Initialize checker with database session."""
        self.db = db

    async def lock_provider(self, tenant_id: UUID, provider_id: UUID) -> dict[str, Any]:
        """
        Row-lock the provider for the rest of the transaction.

        Args:
            tenant_id: Tenant scope
            provider_id: Provider to lock

        Returns:
            Provider row

        Raises:
            NotFoundException: If the provider does not exist under the tenant
        """
        stmt = (
            select(providers)
            .where(
                and_(
                    providers.c.id == provider_id,
                    providers.c.tenant_id == tenant_id,
                    providers.c.is_active.is_(True),
                )
            )
            .with_for_update()
        )
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        if row is None:
            raise NotFoundException("Provider not found", "provider", provider_id)
        return dict(row)

    async def find_conflict(
        self,
        provider_id: UUID,
        start: datetime,
        end: datetime,
        exclude_appointment_id: UUID | None = None,
    ) -> UUID | None:
        """
        Id of the earliest live appointment overlapping ``[start, end)``.

        Args:
            provider_id: Provider whose calendar is checked
            start: Proposed start
            end: Proposed end
            exclude_appointment_id: Appointment to ignore (the one being moved)

        Returns:
            Colliding appointment id, or None when the interval is free
        """
        conditions = [
            appointments.c.provider_id == provider_id,
            appointments.c.status.in_(sorted(LIVE_STATUSES)),
            appointments.c.scheduled_start < end,
            appointments.c.scheduled_end > start,
        ]
        if exclude_appointment_id is not None:
            conditions.append(appointments.c.id != exclude_appointment_id)

        stmt = (
            select(appointments.c.id)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_start)
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def has_conflict(
        self,
        provider_id: UUID,
        start: datetime,
        end: datetime,
        exclude_appointment_id: UUID | None = None,
    ) -> bool:
        return await self.find_conflict(provider_id, start, end, exclude_appointment_id) is not None

    async def ensure_available(
        self,
        provider_id: UUID,
        start: datetime,
        end: datetime,
        exclude_appointment_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Raise if the interval collides with a live appointment.

        Raises:
            ConflictException: Naming the colliding appointment
        """
        conflicting_id = await self.find_conflict(provider_id, start, end, exclude_appointment_id)
        if conflicting_id is None:
            return

        logger.info(
            "appointment_conflict",
            provider_id=str(provider_id),
            start=start.isoformat(),
            end=end.isoformat(),
            conflicting_appointment_id=str(conflicting_id),
        )
        raise ConflictException(
            "Provider already has an appointment during the requested time",
            conflicting_id=conflicting_id,
            details=details,
        )

    async def booked_intervals(
        self,
        provider_ids: Iterable[UUID],
        range_start: datetime,
        range_end: datetime,
    ) -> dict[UUID, list[tuple[datetime, datetime]]]:
        """Live intervals per provider overlapping ``[range_start, range_end)``."""
        ids = list(set(provider_ids))
        if not ids:
            return {}

        stmt = (
            select(
                appointments.c.provider_id,
                appointments.c.scheduled_start,
                appointments.c.scheduled_end,
            )
            .where(
                and_(
                    appointments.c.provider_id.in_(ids),
                    appointments.c.status.in_(sorted(LIVE_STATUSES)),
                    appointments.c.scheduled_start < range_end,
                    appointments.c.scheduled_end > range_start,
                )
            )
            .order_by(appointments.c.scheduled_start)
        )
        result = await self.db.execute(stmt)

        booked: dict[UUID, list[tuple[datetime, datetime]]] = {pid: [] for pid in ids}
        for row in result.all():
            booked[row.provider_id].append((row.scheduled_start, row.scheduled_end))
        return booked
