"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    BOOKED = "BOOKED"
    CONFIRMED = "CONFIRMED"
    RESCHEDULED = "RESCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class AppointmentType(str, Enum):
    """Appointment type enumeration."""

    IN_PERSON = "IN_PERSON"
    ONLINE = "ONLINE"
    INPATIENT_ASSESSMENT = "INPATIENT_ASSESSMENT"
    FOLLOW_UP = "FOLLOW_UP"


class AppointmentSource(str, Enum):
    """Channel the booking came through."""

    WEB_PATIENT = "WEB_PATIENT"
    ADMIN_FRONT_DESK = "ADMIN_FRONT_DESK"
    ADMIN_CARE_COORDINATOR = "ADMIN_CARE_COORDINATOR"
    ADMIN_MANAGER = "ADMIN_MANAGER"


class AppointmentCreate(BaseModel):
    """
    Schema for booking a new appointment.

    ``patient_id`` is ignored for patients (they always book for themselves)
    and required for staff. A naive ``scheduled_start_at`` is read in the
    centre's timezone.
    """

    patient_id: int | None = Field(None, gt=0)
    clinician_id: int = Field(..., gt=0)
    centre_id: int = Field(..., gt=0)
    appointment_type: AppointmentType
    scheduled_start_at: datetime
    duration_minutes: int | None = Field(None, gt=0, le=480)
    notes: str | None = Field(None, max_length=1000)
    parent_appointment_id: int | None = Field(None, gt=0)


class AppointmentReschedule(BaseModel):
    """Schema for moving an appointment to a new start time."""

    scheduled_start_at: datetime
    duration_minutes: int | None = Field(None, gt=0, le=480)
    reason: str | None = Field(None, max_length=500)


class AppointmentStatusUpdate(BaseModel):
    """Schema for updating appointment status."""

    status: AppointmentStatus
    reason: str | None = Field(None, max_length=500)


class AppointmentCancel(BaseModel):
    """Schema for cancelling an appointment."""

    reason: str = Field(..., max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Cancellation reason must not be blank."""
        if not v.strip():
            raise ValueError("Cancellation reason is required")
        return v.strip()


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: int
    patient_id: int
    clinician_id: int
    centre_id: int
    appointment_type: AppointmentType
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    duration_minutes: int
    status: AppointmentStatus
    parent_appointment_id: int | None = None
    booked_by_user_id: int | None = None
    source: AppointmentSource
    notes: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class StatusHistoryResponse(BaseModel):
    """One row of an appointment's status history."""

    id: int
    appointment_id: int
    previous_status: AppointmentStatus | None
    new_status: AppointmentStatus
    changed_by_user_id: int | None
    changed_at: datetime
    reason: str | None = None

    model_config = {"from_attributes": True}


class PaymentLinkInfo(BaseModel):
    """Payment link handed to the patient."""

    link: str
    amount: Decimal
    currency: str = "INR"


class NotificationOutcome(BaseModel):
    """Delivery result of a single notification attempt."""

    recipient: str
    channel: str
    delivered: bool
    error: str | None = None


class BookingResponse(BaseModel):
    """
    Result of a booking.

    The appointment is always present; everything else is advisory and
    reflects how downstream integrations behaved.
    """

    appointment: AppointmentResponse
    meet_link: str | None = None
    payment_link: PaymentLinkInfo | None = None
    payment_link_error: str | None = None
    notifications: list[NotificationOutcome] = Field(default_factory=list)


class VideoLinkResponse(BaseModel):
    """Stored or freshly generated meeting link."""

    appointment_id: int
    meet_link: str
    provider: str = "GOOGLE_MEET"


class _AppointmentFilterBase(BaseModel):
    status: AppointmentStatus | None = None
    from_date: date | None = None
    to_date: date | None = None
    include_inactive: bool = False

    @model_validator(mode="after")
    def validate_range(self):
        """Validate the date range is ordered."""
        if self.from_date and self.to_date and self.to_date < self.from_date:
            raise ValueError("to_date must not be before from_date")
        return self


class PatientAppointmentFilter(_AppointmentFilterBase):
    """Appointments belonging to one patient."""

    kind: Literal["patient"] = "patient"
    patient_id: int


class ClinicianAppointmentFilter(_AppointmentFilterBase):
    """Appointments of one clinician, optionally on a single day."""

    kind: Literal["clinician"] = "clinician"
    clinician_id: int
    on_date: date | None = None


class CentreAppointmentFilter(_AppointmentFilterBase):
    """Appointments taking place at one centre."""

    kind: Literal["centre"] = "centre"
    centre_id: int


AppointmentFilter = Annotated[
    PatientAppointmentFilter | ClinicianAppointmentFilter | CentreAppointmentFilter,
    Field(discriminator="kind"),
]
