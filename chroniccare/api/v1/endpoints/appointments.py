"""Appointment endpoints."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query, Request, status

from chroniccare.core.exceptions import ValidationException
from chroniccare.dependencies import CacheDep, ClockDep, CurrentTenantId, DatabaseSession, LocksDep
from chroniccare.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    AppointmentType,
    AppointmentUpdate,
)
from chroniccare.schemas.availability import SlotQuery, SlotResponse
from chroniccare.schemas.common import ApiResponse, envelope
from chroniccare.schemas.series import SeriesCreate, SeriesResponse
from chroniccare.services.appointment_service import AppointmentService
from chroniccare.services.series_service import SeriesService
from chroniccare.services.slot_finder import SlotFinder

router = APIRouter()


@router.post(
    "/",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def create_appointment(
    request: Request,
    data: AppointmentCreate,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
    locks: LocksDep,
) -> dict[str, Any]:
    """
    Book an appointment after checking the provider is free.

    Returns 409 with the conflicting appointment id when the interval overlaps
    an existing booking.
    """
    service = AppointmentService(db, clock, cache, locks)
    return envelope(request, await service.create_appointment(tenant_id, data))


@router.get(
    "/",
    response_model=ApiResponse[AppointmentListResponse],
    status_code=status.HTTP_200_OK,
    summary="List appointments",
)
async def list_appointments(
    request: Request,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    patient_id: UUID | None = Query(None),
    provider_id: UUID | None = Query(None),
    facility_id: UUID | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> dict[str, Any]:
    """
    List appointments of the tenant with filtering.

    Args:
        status_filter: Filter by status
        patient_id: Filter by patient
        provider_id: Filter by provider
        facility_id: Filter by facility
        from_date: Earliest start
        to_date: Latest start
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        patient_id=patient_id,
        provider_id=provider_id,
        facility_id=facility_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    service = AppointmentService(db)
    return envelope(request, await service.list_appointments(tenant_id, filters))


@router.get(
    "/availability",
    response_model=ApiResponse[list[SlotResponse]],
    status_code=status.HTTP_200_OK,
    summary="Find free slots",
)
async def find_available_slots(
    request: Request,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
    start_date: date = Query(...),
    end_date: date = Query(...),
    provider_id: UUID | None = Query(None),
    facility_id: UUID | None = Query(None),
    appointment_type: AppointmentType | None = Query(None),
) -> dict[str, Any]:
    """
    Free slots over an inclusive date range.

    The listing is advisory; booking re-checks for conflicts.
    """
    if end_date < start_date:
        raise ValidationException("end_date must not be before start_date", field="end_date")
    query = SlotQuery(
        provider_id=provider_id,
        facility_id=facility_id,
        appointment_type=appointment_type,
        start_date=start_date,
        end_date=end_date,
    )
    finder = SlotFinder(db, clock, cache)
    return envelope(request, await finder.find_slots(tenant_id, query))


@router.post(
    "/batch",
    response_model=ApiResponse[SeriesResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Book a recurring series",
)
async def create_series(
    request: Request,
    data: SeriesCreate,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
    locks: LocksDep,
) -> dict[str, Any]:
    """
    Book every appointment of a series, or none of them.

    A conflict on any member rejects the whole series; the error details name
    the member index and the conflicting appointment.
    """
    service = SeriesService(db, clock, cache, locks)
    return envelope(request, await service.create_series(tenant_id, data))


@router.get(
    "/{appointment_id}",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    request: Request,
    appointment_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
) -> dict[str, Any]:
    service = AppointmentService(db)
    return envelope(request, await service.get_appointment(tenant_id, appointment_id))


@router.put(
    "/{appointment_id}",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    summary="Update appointment",
)
async def update_appointment(
    request: Request,
    appointment_id: UUID,
    data: AppointmentUpdate,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
    locks: LocksDep,
) -> dict[str, Any]:
    """
    Update an appointment.

    Changing the time reschedules (conflict-checked); changing the status goes
    through the transition table.
    """
    service = AppointmentService(db, clock, cache, locks)
    return envelope(request, await service.update_appointment(tenant_id, appointment_id, data))


@router.patch(
    "/{appointment_id}/status",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    summary="Change appointment status",
)
async def update_appointment_status(
    request: Request,
    appointment_id: UUID,
    data: AppointmentStatusUpdate,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
) -> dict[str, Any]:
    service = AppointmentService(db, clock, cache)
    updated = await service.change_status(tenant_id, appointment_id, data.status, data.reason)
    return envelope(request, updated)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    request: Request,
    appointment_id: UUID,
    data: AppointmentReschedule,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
    locks: LocksDep,
) -> dict[str, Any]:
    """
    Move an appointment to a new start time.

    Reminders for the old time are superseded and new ones are scheduled.
    """
    service = AppointmentService(db, clock, cache, locks)
    updated = await service.reschedule_appointment(
        tenant_id, appointment_id, data.scheduled_start, data.duration_minutes
    )
    return envelope(request, updated)


@router.post(
    "/{appointment_id}/checkin",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    summary="Check in patient",
)
async def checkin_appointment(
    request: Request,
    appointment_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
) -> dict[str, Any]:
    service = AppointmentService(db, clock, cache)
    return envelope(request, await service.checkin_appointment(tenant_id, appointment_id))


@router.delete(
    "/{appointment_id}",
    response_model=ApiResponse[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    summary="Cancel appointment",
)
async def cancel_appointment(
    request: Request,
    appointment_id: UUID,
    tenant_id: CurrentTenantId,
    db: DatabaseSession,
    clock: ClockDep,
    cache: CacheDep,
    data: AppointmentCancel | None = None,
) -> dict[str, Any]:
    """
    Cancel an appointment.

    The record is kept with status ``cancelled`` and frees its slot.
    """
    service = AppointmentService(db, clock, cache)
    reason = data.reason if data else None
    return envelope(request, await service.cancel_appointment(tenant_id, appointment_id, reason))
