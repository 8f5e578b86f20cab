"""Tenant-scoped lookups of patients, providers and facilities."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Table, and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.core.exceptions import NotFoundException
from chroniccare.models.patients import patients
from chroniccare.models.providers import facilities, providers
from chroniccare.schemas.notifications import NotificationPreferences


class DirectoryService:
    """Read access to directory records owned by other subsystems."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def _get(self, table: Table, resource: str, tenant_id: UUID, entity_id: UUID) -> dict:
        stmt = select(table).where(and_(table.c.id == entity_id, table.c.tenant_id == tenant_id))
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        if row is None:
            raise NotFoundException(f"{resource.capitalize()} not found", resource, entity_id)
        return dict(row)

    async def get_patient(self, tenant_id: UUID, patient_id: UUID) -> dict[str, Any]:
        return await self._get(patients, "patient", tenant_id, patient_id)

    async def get_provider(self, tenant_id: UUID, provider_id: UUID) -> dict[str, Any]:
        return await self._get(providers, "provider", tenant_id, provider_id)

    async def get_facility(self, tenant_id: UUID, facility_id: UUID) -> dict[str, Any]:
        return await self._get(facilities, "facility", tenant_id, facility_id)

    async def get_notification_preferences(
        self,
        tenant_id: UUID,
        patient_id: UUID,
    ) -> NotificationPreferences:
        """
        Communication preferences of a patient, with defaults filled in.

        Raises:
            NotFoundException: If the patient is not under the tenant
        """
        patient = await self.get_patient(tenant_id, patient_id)
        stored = patient.get("communication_preferences") or {}
        known = {k: v for k, v in stored.items() if k in NotificationPreferences.model_fields}
        return NotificationPreferences(**known)

    async def update_notification_preferences(
        self,
        tenant_id: UUID,
        patient_id: UUID,
        preferences: NotificationPreferences,
        now: datetime,
    ) -> NotificationPreferences:
        """
        Replace the notification-related preferences of a patient.

        Unrelated keys already stored in ``communication_preferences`` are kept.
        """
        patient = await self.get_patient(tenant_id, patient_id)
        merged = dict(patient.get("communication_preferences") or {})
        merged.update(preferences.model_dump(mode="json"))

        stmt = (
            update(patients)
            .where(and_(patients.c.id == patient_id, patients.c.tenant_id == tenant_id))
            .values(communication_preferences=merged, updated_at=now)
        )
        await self.db.execute(stmt)
        await self.db.commit()
        return preferences
