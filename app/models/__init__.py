"""Database models."""

from app.models.appointments import appointment_status_history, appointments
from app.models.availability_rules import clinician_availability_rules
from app.models.base import metadata
from app.models.centres import centres
from app.models.clinicians import clinician_profiles
from app.models.patients import patient_profiles
from app.models.side_effects import appointment_side_effects
from app.models.users import users
from app.models.video_links import appointment_video_links

__all__ = [
    "appointment_side_effects",
    "appointment_status_history",
    "appointment_video_links",
    "appointments",
    "centres",
    "clinician_availability_rules",
    "clinician_profiles",
    "metadata",
    "patient_profiles",
    "users",
]
