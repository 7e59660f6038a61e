"""Availability rule and slot schemas."""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.time_utils import parse_hhmm


class ConsultationMode(str, Enum):
    """How a clinician sees patients during a rule window."""

    IN_PERSON = "IN_PERSON"
    ONLINE = "ONLINE"
    BOTH = "BOTH"


class AvailabilityRuleCreate(BaseModel):
    """A weekly availability window; times are ``HH:MM`` in the centre's timezone."""

    centre_id: int = Field(..., gt=0)
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    start_time: str = Field(..., examples=["09:00"])
    end_time: str = Field(..., examples=["12:00"])
    slot_duration_minutes: int = Field(..., gt=0, le=480)
    consultation_mode: ConsultationMode = ConsultationMode.BOTH

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        """Validate HH:MM format."""
        parse_hhmm(v)
        return v.strip()

    @model_validator(mode="after")
    def validate_window(self):
        """End time must be after start time."""
        if parse_hhmm(self.end_time) <= parse_hhmm(self.start_time):
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start_time)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end_time)


class AvailabilityRulesReplace(BaseModel):
    """Full replacement set of a clinician's rules."""

    rules: list[AvailabilityRuleCreate] = Field(default_factory=list, max_length=100)


class AvailabilityRuleResponse(BaseModel):
    """Availability rule as returned by the API."""

    id: int
    clinician_id: int
    centre_id: int
    day_of_week: int
    start_time: str
    end_time: str
    slot_duration_minutes: int
    consultation_mode: ConsultationMode
    is_active: bool = True


class AvailabilitySlot(BaseModel):
    """A candidate slot and whether it is still free."""

    start_at: datetime
    end_at: datetime
    start_time: str
    end_time: str
    centre_id: int
    consultation_mode: ConsultationMode
    available: bool


class AvailabilityResponse(BaseModel):
    """Slots for one clinician on one calendar date."""

    clinician_id: int
    centre_id: int | None = None
    date: date
    slots: list[AvailabilitySlot]
