"""Notification, preference and medication reminder endpoints."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query, Request, status

from chroniccare.core.exceptions import ValidationException
from chroniccare.dependencies import ClockDep, CurrentTenantId, DatabaseSession, QueueDep
from chroniccare.schemas.common import ApiResponse, envelope
from chroniccare.schemas.notifications import (
    DeliveryStatus,
    DeliveryStatusItem,
    MedicationReminderResult,
    NotificationCreate,
    NotificationListResponse,
    NotificationPreferences,
    NotificationResponse,
    NotificationStats,
    NotificationType,
)
from chroniccare.services.directory_service import DirectoryService
from chroniccare.services.medication_reminders import MedicationReminderPlanner
from chroniccare.services.notification_service import NotificationService

router = APIRouter(tags=["Notifications"])


def parse_ids(raw: list[str]) -> list[UUID]:
    """Accept repeated ``ids`` parameters as well as comma-separated lists."""
    ids = []
    for chunk in raw:
        for value in chunk.split(","):
            value = value.strip()
            if not value:
                continue
            try:
                ids.append(UUID(value))
            except ValueError:
                raise ValidationException(f"Invalid notification id: {value}", field="ids")
    return ids


@router.post(
    "/notifications",
    response_model=ApiResponse[NotificationResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create notification",
)
async def create_notification(
    request: Request,
    data: NotificationCreate,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    queue: QueueDep,
) -> dict[str, Any]:
    """
    Create a notification.

    A notification without a send time, or with one already past, is queued
    for dispatch right away; later ones wait for the scheduler.
    """
    created = await NotificationService.create_notification(db, tenant_id, data, clock.now(), queue)
    return envelope(request, created)


@router.get(
    "/notifications",
    response_model=ApiResponse[NotificationListResponse],
    status_code=status.HTTP_200_OK,
    summary="List notifications",
)
async def list_notifications(
    request: Request,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    patient_id: UUID | None = Query(None),
    appointment_id: UUID | None = Query(None),
    delivery_status: DeliveryStatus | None = Query(None),
    notification_type: NotificationType | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> dict[str, Any]:
    result = await NotificationService.list_notifications(
        db,
        tenant_id,
        patient_id=patient_id,
        appointment_id=appointment_id,
        delivery_status=delivery_status,
        notification_type=notification_type,
        page=page,
        page_size=page_size,
    )
    return envelope(request, result)


@router.get(
    "/notifications/delivery-status",
    response_model=ApiResponse[list[DeliveryStatusItem]],
    status_code=status.HTTP_200_OK,
    summary="Delivery status of several notifications",
)
async def get_delivery_status(
    request: Request,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    ids: list[str] = Query(...),
) -> dict[str, Any]:
    """
    Delivery state of the requested notifications.

    Ids that do not exist under the tenant are left out of the result.
    """
    items = await NotificationService.get_delivery_status(db, tenant_id, parse_ids(ids))
    return envelope(request, items)


@router.get(
    "/notifications/stats/summary",
    response_model=ApiResponse[NotificationStats],
    status_code=status.HTTP_200_OK,
    summary="Notification pipeline statistics",
)
async def get_notification_stats(
    request: Request,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
) -> dict[str, Any]:
    stats = await NotificationService.get_stats(db, tenant_id, clock.now())
    return envelope(request, stats)


@router.get(
    "/notifications/{notification_id}",
    response_model=ApiResponse[NotificationResponse],
    status_code=status.HTTP_200_OK,
    summary="Get notification by ID",
)
async def get_notification(
    request: Request,
    notification_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
) -> dict[str, Any]:
    return envelope(request, await NotificationService.get_notification(db, tenant_id, notification_id))


@router.patch(
    "/notifications/{notification_id}/read",
    response_model=ApiResponse[NotificationResponse],
    status_code=status.HTTP_200_OK,
    summary="Mark notification as read",
)
async def mark_notification_read(
    request: Request,
    notification_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
) -> dict[str, Any]:
    updated = await NotificationService.mark_as_read(db, tenant_id, notification_id, clock.now())
    return envelope(request, updated)


@router.get(
    "/patients/{patient_id}/notification-preferences",
    response_model=ApiResponse[NotificationPreferences],
    status_code=status.HTTP_200_OK,
    summary="Get notification preferences",
)
async def get_notification_preferences(
    request: Request,
    patient_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
) -> dict[str, Any]:
    preferences = await DirectoryService(db).get_notification_preferences(tenant_id, patient_id)
    return envelope(request, preferences)


@router.put(
    "/patients/{patient_id}/notification-preferences",
    response_model=ApiResponse[NotificationPreferences],
    status_code=status.HTTP_200_OK,
    summary="Update notification preferences",
)
async def update_notification_preferences(
    request: Request,
    patient_id: UUID,
    data: NotificationPreferences,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
) -> dict[str, Any]:
    """Replace channel, quiet-hours and opt-out preferences of a patient."""
    preferences = await DirectoryService(db).update_notification_preferences(
        tenant_id, patient_id, data, clock.now()
    )
    return envelope(request, preferences)


@router.post(
    "/medications/{medication_id}/reminders",
    response_model=ApiResponse[MedicationReminderResult],
    status_code=status.HTTP_201_CREATED,
    summary="Schedule medication reminders",
)
async def schedule_medication_reminders(
    request: Request,
    medication_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
) -> dict[str, Any]:
    """
    Build the dose and refill reminders of a medication.

    Calling it again replaces reminders that have not been sent yet.
    """
    planner = MedicationReminderPlanner(db, clock)
    return envelope(request, await planner.schedule_reminders(tenant_id, medication_id))
