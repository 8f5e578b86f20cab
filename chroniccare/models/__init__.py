"""Database models."""

from chroniccare.models.appointments import appointment_series, appointments
from chroniccare.models.availability import provider_availability
from chroniccare.models.base import metadata
from chroniccare.models.medications import medications
from chroniccare.models.notifications import audit_logs, notifications
from chroniccare.models.patients import patients
from chroniccare.models.providers import facilities, providers

__all__ = [
    "appointment_series",
    "appointments",
    "audit_logs",
    "facilities",
    "medications",
    "metadata",
    "notifications",
    "patients",
    "provider_availability",
    "providers",
]
