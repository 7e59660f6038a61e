"""Appointment status state machine."""

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from app.core.exceptions import InvalidTransitionException, ValidationException
from app.repositories.base import Appointment, SchedulingGateway, StatusHistoryEntry
from app.schemas.appointments import AppointmentStatus

logger = structlog.get_logger()

_OPEN_TRANSITIONS = frozenset(
    {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    }
)

# Allowed outgoing transitions per status
ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.BOOKED: _OPEN_TRANSITIONS,
    AppointmentStatus.RESCHEDULED: _OPEN_TRANSITIONS,
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
            AppointmentStatus.RESCHEDULED,
        }
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


@dataclass(frozen=True)
class StatusChange:
    """A validated transition waiting to be persisted."""

    appointment_id: int
    previous_status: AppointmentStatus
    new_status: AppointmentStatus
    actor_id: int | None
    reason: str | None = None


def can_transition(current: AppointmentStatus | str, requested: AppointmentStatus | str) -> bool:
    """Check the transition matrix without raising."""
    return AppointmentStatus(requested) in ALLOWED_TRANSITIONS[AppointmentStatus(current)]


class AppointmentLifecycle:
    """Validates status transitions and persists them with their history row."""

    def __init__(self, gateway: SchedulingGateway):
        self.gateway = gateway

    def transition(
        self,
        appointment: Appointment,
        requested: AppointmentStatus,
        actor_id: int | None,
        reason: str | None = None,
    ) -> StatusChange:
        """
        Validate a requested status change.

        Cancellation has dedicated messages for the two common mistakes;
        every other disallowed move is reported as an invalid transition.

        Raises:
            ValidationException: Cancelling a completed or already cancelled appointment
            InvalidTransitionException: Transition not in the matrix
        """
        current = AppointmentStatus(appointment.status)

        if requested == AppointmentStatus.CANCELLED:
            if current == AppointmentStatus.CANCELLED:
                raise ValidationException("Appointment is already cancelled")
            if current == AppointmentStatus.COMPLETED:
                raise ValidationException("Cannot cancel a completed appointment")

        if not can_transition(current, requested):
            raise InvalidTransitionException(current.value, requested.value)

        return StatusChange(
            appointment_id=appointment.id,
            previous_status=current,
            new_status=requested,
            actor_id=actor_id,
            reason=reason,
        )

    async def apply(self, change: StatusChange) -> Appointment:
        """Persist a validated change together with its history row."""
        updated = await self.gateway.update_status(
            change.appointment_id,
            change.new_status.value,
            change.actor_id,
            change.reason,
        )
        logger.info(
            "appointment_status_changed",
            appointment_id=change.appointment_id,
            previous_status=change.previous_status.value,
            new_status=change.new_status.value,
            changed_by=change.actor_id,
        )
        return updated

    @staticmethod
    def replay(history: Iterable[StatusHistoryEntry]) -> AppointmentStatus | None:
        """
        Rebuild the current status from history rows in insertion order.

        Raises:
            ValueError: If a row does not continue from the status before it
        """
        status: AppointmentStatus | None = None
        for entry in history:
            previous = AppointmentStatus(entry.previous_status) if entry.previous_status else None
            if previous != status:
                raise ValueError(
                    f"History row {entry.id} starts from {entry.previous_status}, "
                    f"expected {status.value if status else None}"
                )
            status = AppointmentStatus(entry.new_status)
        return status
