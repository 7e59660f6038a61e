"""Double-booking detection."""

from datetime import datetime

from app.repositories.base import SchedulingGateway


def intervals_overlap(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """
    Half-open interval intersection.

    ``[start_a, end_a)`` and ``[start_b, end_b)`` overlap iff
    ``start_a < end_b and end_a > start_b``; back-to-back intervals do not.
    """
    return start_a < end_b and end_a > start_b


class ConflictDetector:
    """Answers whether a clinician is already booked during an interval."""

    def __init__(self, gateway: SchedulingGateway):
        self.gateway = gateway

    async def has_overlap(
        self,
        clinician_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ) -> bool:
        """
        Check the clinician's active, non-cancelled, non-no-show appointments.

        Args:
            clinician_id: Clinician to check
            start: Interval start (timezone-aware)
            end: Interval end (timezone-aware)
            exclude_appointment_id: Appointment to ignore, used when rescheduling

        Returns:
            True if any blocking appointment intersects ``[start, end)``
        """
        if end <= start:
            raise ValueError("Interval end must be after its start")
        return await self.gateway.has_overlap(
            clinician_id,
            start,
            end,
            exclude_id=exclude_appointment_id,
        )
