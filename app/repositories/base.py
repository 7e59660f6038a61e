"""Persistence gateway contract and the records it returns."""

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from app.schemas.appointments import AppointmentFilter


class SideEffectType(str, Enum):
    """Downstream effect queued alongside a booking change."""

    VIDEO_LINK = "VIDEO_LINK"
    CONFIRMATION_NOTIFICATION = "CONFIRMATION_NOTIFICATION"
    PAYMENT_LINK = "PAYMENT_LINK"
    RESCHEDULE_NOTIFICATION = "RESCHEDULE_NOTIFICATION"
    CANCELLATION_NOTIFICATION = "CANCELLATION_NOTIFICATION"


class SideEffectStatus(str, Enum):
    """Delivery state of an outbox row."""

    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


@dataclass(frozen=True)
class Appointment:
    id: int
    patient_id: int
    clinician_id: int
    centre_id: int
    appointment_type: str
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    duration_minutes: int
    status: str
    source: str
    parent_appointment_id: int | None = None
    booked_by_user_id: int | None = None
    notes: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class NewAppointment:
    """Values for an appointment that has passed validation."""

    patient_id: int
    clinician_id: int
    centre_id: int
    appointment_type: str
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    duration_minutes: int
    source: str
    booked_by_user_id: int | None = None
    notes: str | None = None
    parent_appointment_id: int | None = None


@dataclass(frozen=True)
class StatusHistoryEntry:
    id: int
    appointment_id: int
    previous_status: str | None
    new_status: str
    changed_by_user_id: int | None
    changed_at: datetime
    reason: str | None = None


@dataclass(frozen=True)
class AvailabilityRule:
    """Weekly window; minutes are local to ``timezone`` (the centre's zone)."""

    id: int
    clinician_id: int
    centre_id: int
    day_of_week: int
    start_minute: int
    end_minute: int
    slot_duration_minutes: int
    consultation_mode: str
    timezone: str
    is_active: bool = True


@dataclass(frozen=True)
class NewAvailabilityRule:
    centre_id: int
    day_of_week: int
    start_minute: int
    end_minute: int
    slot_duration_minutes: int
    consultation_mode: str = "BOTH"


@dataclass(frozen=True)
class Centre:
    id: int
    name: str
    timezone: str
    is_active: bool = True
    city: str | None = None
    contact_phone: str | None = None


@dataclass(frozen=True)
class Contact:
    """Where a person can be reached."""

    user_id: int
    full_name: str
    phone: str | None = None
    email: str | None = None
    push_token: str | None = None


@dataclass(frozen=True)
class Clinician:
    id: int
    user_id: int
    primary_centre_id: int | None
    default_consultation_duration_minutes: int | None
    consultation_fee: Decimal | None
    is_active: bool
    contact: Contact
    specialization: str | None = None


@dataclass(frozen=True)
class Patient:
    id: int
    user_id: int
    is_active: bool
    contact: Contact


@dataclass(frozen=True)
class VideoLinkRecord:
    appointment_id: int
    meet_link: str
    provider: str = "GOOGLE_MEET"
    calendar_event_id: str | None = None


@dataclass(frozen=True)
class SideEffect:
    id: int
    appointment_id: int
    effect_type: str
    status: str
    attempts: int = 0
    last_error: str | None = None
    result: dict[str, Any] | None = None
    next_attempt_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SideEffectOutcome:
    """New delivery state computed for an outbox row after one attempt."""

    status: str
    attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None
    next_attempt_at: datetime | None = None


@dataclass(frozen=True)
class BookingContext:
    """Everything downstream integrations need to know about one appointment."""

    appointment: Appointment
    patient: Patient
    clinician: Clinician
    centre: Centre
    admins: list[Contact] = field(default_factory=list)
    video_link: VideoLinkRecord | None = None


class SchedulingGateway(Protocol):
    """
    Storage operations the scheduling core depends on.

    Mutating methods never commit on their own. Callers wrap them in
    ``atomic()``, which commits on success and rolls back on error. Passing
    ``clinician_id`` serialises the block against every other block holding
    the same clinician's lock.
    """

    def atomic(self, clinician_id: int | None = None) -> AbstractAsyncContextManager[None]: ...

    # Directory lookups
    async def get_centre(self, centre_id: int) -> Centre | None: ...

    async def get_clinician(self, clinician_id: int) -> Clinician | None: ...

    async def get_clinician_by_user_id(self, user_id: int) -> Clinician | None: ...

    async def get_patient(self, patient_id: int) -> Patient | None: ...

    async def get_patient_by_user_id(self, user_id: int) -> Patient | None: ...

    async def list_admin_contacts(self) -> list[Contact]: ...

    # Appointments
    async def create_appointment(
        self,
        values: NewAppointment,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment: ...

    async def get_appointment_by_id(
        self, appointment_id: int, for_update: bool = False
    ) -> Appointment | None: ...

    async def has_overlap(
        self,
        clinician_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
    ) -> bool: ...

    async def update_status(
        self,
        appointment_id: int,
        new_status: str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment: ...

    async def reschedule_appointment(
        self,
        appointment_id: int,
        start: datetime,
        end: datetime,
        duration_minutes: int,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment: ...

    async def append_status_history(
        self,
        appointment_id: int,
        previous_status: str | None,
        new_status: str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> StatusHistoryEntry: ...

    async def list_status_history(self, appointment_id: int) -> list[StatusHistoryEntry]: ...

    async def list_appointments(self, filters: AppointmentFilter) -> list[Appointment]: ...

    # Availability
    async def get_availability_rules(
        self,
        clinician_id: int,
        day_of_week: int,
        centre_id: int | None = None,
    ) -> list[AvailabilityRule]: ...

    async def list_clinician_rules(self, clinician_id: int) -> list[AvailabilityRule]: ...

    async def replace_availability_rules(
        self,
        clinician_id: int,
        rules: Sequence[NewAvailabilityRule],
    ) -> list[AvailabilityRule]: ...

    # Video links
    async def get_video_link(self, appointment_id: int) -> VideoLinkRecord | None: ...

    async def save_video_link(self, link: VideoLinkRecord) -> VideoLinkRecord: ...

    # Side-effect outbox
    async def enqueue_side_effects(
        self,
        appointment_id: int,
        effect_types: Sequence[str],
    ) -> list[SideEffect]: ...

    async def get_side_effects(self, appointment_id: int) -> list[SideEffect]: ...

    async def record_side_effect_outcome(
        self,
        side_effect_id: int,
        outcome: SideEffectOutcome,
    ) -> SideEffect: ...

    async def claim_due_side_effects(
        self, now: datetime, limit: int, lease_until: datetime
    ) -> list[SideEffect]: ...
