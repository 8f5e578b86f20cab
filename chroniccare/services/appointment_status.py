"""Appointment status state machine."""

from chroniccare.core.exceptions import InvalidStatusTransitionException
from chroniccare.schemas.appointments import AppointmentStatus

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CONFIRMED, S.CANCELLED, S.NO_SHOW}),
    S.CONFIRMED: frozenset({S.ARRIVED, S.CANCELLED, S.NO_SHOW}),
    S.ARRIVED: frozenset({S.IN_PROGRESS, S.NO_SHOW}),
    S.IN_PROGRESS: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Statuses from which the appointment time may still be moved
RESCHEDULABLE_STATUSES = frozenset({S.SCHEDULED, S.CONFIRMED})

# Column stamped when an appointment enters the status
STATUS_TIMESTAMPS: dict[AppointmentStatus, str] = {
    S.ARRIVED: "checked_in_at",
    S.IN_PROGRESS: "started_at",
    S.COMPLETED: "completed_at",
    S.CANCELLED: "cancelled_at",
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> None:
    """
    Reject transitions missing from the table.

    Raises:
        InvalidStatusTransitionException: If ``current -> target`` is not allowed
    """
    current = AppointmentStatus(current)
    target = AppointmentStatus(target)
    if not can_transition(current, target):
        raise InvalidStatusTransitionException(
            current.value,
            target.value,
            sorted(s.value for s in ALLOWED_TRANSITIONS[current]),
        )
