"""Booking orchestration: create, reschedule, status changes and reads."""

from datetime import UTC, datetime, timedelta

import structlog

from app.config import settings
from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ServiceUnavailableException,
    ValidationException,
)
from app.core.redis_client import CacheManager
from app.core.time_utils import day_of_week, ensure_aware, get_zone, minute_of_day, utc_now
from app.integrations.base import IntegrationError, VideoLinkRequest
from app.integrations.registry import Integrations
from app.repositories.base import (
    Appointment,
    Centre,
    Clinician,
    NewAppointment,
    Patient,
    SchedulingGateway,
    SideEffectType,
    VideoLinkRecord,
)
from app.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentFilter,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentSource,
    AppointmentStatus,
    AppointmentStatusUpdate,
    AppointmentType,
    BookingResponse,
    CentreAppointmentFilter,
    ClinicianAppointmentFilter,
    PatientAppointmentFilter,
    StatusHistoryResponse,
    VideoLinkResponse,
)
from app.schemas.auth import Actor, StaffRole
from app.services.appointment_lifecycle import AppointmentLifecycle
from app.services.availability_service import AvailabilityService, covering_rule
from app.services.conflict_service import ConflictDetector
from app.services.side_effect_service import DispatchReport, SideEffectDispatcher

logger = structlog.get_logger()

CREATED_REASON = "Appointment created"
RESCHEDULED_REASON = "Appointment rescheduled"


def source_for(actor: Actor) -> AppointmentSource:
    """Booking channel implied by who is booking."""
    if actor.is_patient:
        return AppointmentSource.WEB_PATIENT
    if actor.has_role(StaffRole.FRONT_DESK.value):
        return AppointmentSource.ADMIN_FRONT_DESK
    if actor.has_role(StaffRole.CARE_COORDINATOR.value):
        return AppointmentSource.ADMIN_CARE_COORDINATOR
    return AppointmentSource.ADMIN_MANAGER


def to_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse.model_validate(appointment)


def _booking_response(appointment: Appointment, report: DispatchReport) -> BookingResponse:
    return BookingResponse(
        appointment=to_response(appointment),
        meet_link=report.meet_link,
        payment_link=report.payment_link,
        payment_link_error=report.payment_link_error,
        notifications=report.notifications,
    )


class BookingService:
    """
    Orchestrates a booking from request to durable appointment.

    The scheduling checks (availability, overlap, lifecycle) run before and
    inside the database transaction and abort the request on failure.
    Downstream integrations run after commit through the side-effect
    dispatcher and can only degrade the response, never the booking.
    """

    def __init__(
        self,
        gateway: SchedulingGateway,
        integrations: Integrations,
        cache: CacheManager | None = None,
        dispatcher: SideEffectDispatcher | None = None,
    ):
        self.gateway = gateway
        self.integrations = integrations
        self.conflicts = ConflictDetector(gateway)
        self.availability = AvailabilityService(gateway, cache, self.conflicts)
        self.lifecycle = AppointmentLifecycle(gateway)
        self.dispatcher = dispatcher or SideEffectDispatcher(gateway, integrations)

    # ------------------------------------------------------------------
    # Lookups and validation helpers
    # ------------------------------------------------------------------

    async def _resolve_patient(self, data: AppointmentCreate, actor: Actor) -> Patient:
        if actor.is_patient:
            patient = await self.gateway.get_patient_by_user_id(actor.user_id)
            if patient is None or not patient.is_active:
                raise ValidationException("Patient profile not found")
            return patient

        if data.patient_id is None:
            raise ValidationException("patient_id is required when booking for a patient")
        patient = await self.gateway.get_patient(data.patient_id)
        if patient is None or not patient.is_active:
            raise ValidationException("Target patient not found")
        return patient

    async def _require_clinician(self, clinician_id: int) -> Clinician:
        clinician = await self.gateway.get_clinician(clinician_id)
        if clinician is None or not clinician.is_active:
            raise NotFoundException("Clinician not found")
        return clinician

    async def _require_centre(self, centre_id: int) -> Centre:
        centre = await self.gateway.get_centre(centre_id)
        if centre is None or not centre.is_active:
            raise NotFoundException("Centre not found")
        return centre

    @staticmethod
    def _future_start(requested: datetime, centre: Centre) -> datetime:
        """Interpret the requested start in the centre's zone and require it to be ahead of now."""
        start = ensure_aware(requested, get_zone(centre.timezone))
        if start <= utc_now():
            raise ValidationException("Appointment time must be in the future")
        return start

    async def _check_availability(self, clinician_id: int, centre: Centre, start: datetime) -> None:
        """
        Require the local start time to fall inside one of the day's rule windows.

        Raises:
            ValidationException: No rules that day, or start outside every window
        """
        local_start = start.astimezone(get_zone(centre.timezone))
        rules = await self.availability.rules_for_day(
            clinician_id,
            day_of_week(local_start.date()),
            centre.id,
        )
        if not rules:
            raise ValidationException("Clinician is not available on this day")
        if covering_rule(rules, minute_of_day(local_start)) is None:
            raise ValidationException("Requested time is outside clinician's availability hours")

    async def _require_slot_free(
        self,
        clinician_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ) -> None:
        if await self.conflicts.has_overlap(clinician_id, start, end, exclude_appointment_id):
            logger.info(
                "appointment_slot_taken",
                clinician_id=clinician_id,
                start=start.isoformat(),
            )
            raise ConflictException(
                "Clinician already has an appointment in this time slot",
                code="SLOT_UNAVAILABLE",
            )

    async def _patient_id_for(self, actor: Actor) -> int:
        patient = await self.gateway.get_patient_by_user_id(actor.user_id)
        if patient is None:
            raise ForbiddenException("Patient profile not found")
        return patient.id

    async def _get_visible(self, appointment_id: int, actor: Actor) -> Appointment:
        appointment = await self.gateway.get_appointment_by_id(appointment_id)
        if appointment is None or not appointment.is_active:
            raise NotFoundException("Appointment not found")
        if actor.is_patient and appointment.patient_id != await self._patient_id_for(actor):
            raise ForbiddenException("Access denied to this appointment")
        return appointment

    async def _lock_and_reload(self, appointment_id: int) -> Appointment:
        appointment = await self.gateway.get_appointment_by_id(appointment_id, for_update=True)
        if appointment is None or not appointment.is_active:
            raise NotFoundException("Appointment not found")
        return appointment

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create(self, data: AppointmentCreate, actor: Actor) -> BookingResponse:
        """
        Book an appointment.

        Args:
            data: Booking request
            actor: Authenticated patient or staff member

        Returns:
            The stored appointment plus advisory integration results

        Raises:
            ValidationException: Bad patient, past time, or time outside availability
            NotFoundException: Clinician or centre missing or inactive
            ConflictException: Clinician already booked during the interval
        """
        patient = await self._resolve_patient(data, actor)
        clinician = await self._require_clinician(data.clinician_id)
        centre = await self._require_centre(data.centre_id)

        if data.parent_appointment_id is not None:
            parent = await self.gateway.get_appointment_by_id(data.parent_appointment_id)
            if parent is None:
                raise NotFoundException("Parent appointment not found")
            if parent.patient_id != patient.id:
                raise ValidationException("Parent appointment belongs to another patient")

        start = self._future_start(data.scheduled_start_at, centre)
        duration = (
            data.duration_minutes
            or clinician.default_consultation_duration_minutes
            or settings.default_appointment_duration_minutes
        )
        end = start + timedelta(minutes=duration)

        await self._check_availability(clinician.id, centre, start)

        if data.appointment_type == AppointmentType.ONLINE:
            effect_types = [SideEffectType.VIDEO_LINK, SideEffectType.PAYMENT_LINK]
        else:
            effect_types = [SideEffectType.CONFIRMATION_NOTIFICATION, SideEffectType.PAYMENT_LINK]

        async with self.gateway.atomic(clinician_id=clinician.id):
            await self._require_slot_free(clinician.id, start, end)
            appointment = await self.gateway.create_appointment(
                NewAppointment(
                    patient_id=patient.id,
                    clinician_id=clinician.id,
                    centre_id=centre.id,
                    appointment_type=data.appointment_type.value,
                    scheduled_start_at=start.astimezone(UTC),
                    scheduled_end_at=end.astimezone(UTC),
                    duration_minutes=duration,
                    source=source_for(actor).value,
                    booked_by_user_id=actor.user_id,
                    notes=data.notes,
                    parent_appointment_id=data.parent_appointment_id,
                ),
                actor.user_id,
                CREATED_REASON,
            )
            effects = await self.gateway.enqueue_side_effects(
                appointment.id,
                [effect.value for effect in effect_types],
            )

        logger.info(
            "appointment_created",
            appointment_id=appointment.id,
            clinician_id=clinician.id,
            patient_id=patient.id,
            centre_id=centre.id,
            appointment_type=appointment.appointment_type,
            start=appointment.scheduled_start_at.isoformat(),
            source=appointment.source,
        )

        report = await self.dispatcher.dispatch(appointment, effects)
        return _booking_response(appointment, report)

    async def reschedule(
        self,
        appointment_id: int,
        data: AppointmentReschedule,
        actor: Actor,
    ) -> BookingResponse:
        """
        Move an appointment to a new start time and mark it RESCHEDULED.

        Availability and overlap are checked again, ignoring the appointment
        being moved.
        """
        appointment = await self._get_visible(appointment_id, actor)
        centre = await self._require_centre(appointment.centre_id)

        self.lifecycle.transition(appointment, AppointmentStatus.RESCHEDULED, actor.user_id)

        start = self._future_start(data.scheduled_start_at, centre)
        duration = data.duration_minutes or appointment.duration_minutes
        end = start + timedelta(minutes=duration)

        await self._check_availability(appointment.clinician_id, centre, start)

        async with self.gateway.atomic(clinician_id=appointment.clinician_id):
            current = await self._lock_and_reload(appointment_id)
            self.lifecycle.transition(current, AppointmentStatus.RESCHEDULED, actor.user_id)
            await self._require_slot_free(
                current.clinician_id,
                start,
                end,
                exclude_appointment_id=current.id,
            )
            updated = await self.gateway.reschedule_appointment(
                current.id,
                start.astimezone(UTC),
                end.astimezone(UTC),
                duration,
                actor.user_id,
                data.reason or RESCHEDULED_REASON,
            )
            effects = await self.gateway.enqueue_side_effects(
                current.id,
                [SideEffectType.RESCHEDULE_NOTIFICATION.value],
            )

        logger.info(
            "appointment_rescheduled",
            appointment_id=updated.id,
            previous_start=current.scheduled_start_at.isoformat(),
            new_start=updated.scheduled_start_at.isoformat(),
            changed_by=actor.user_id,
        )

        report = await self.dispatcher.dispatch(updated, effects)
        return _booking_response(updated, report)

    async def update_status(
        self,
        appointment_id: int,
        data: AppointmentStatusUpdate,
        actor: Actor,
    ) -> AppointmentResponse:
        """
        Apply a status change through the lifecycle.

        Cancellation is routed to ``cancel``. Other changes are staff-only and
        RESCHEDULED is reserved for ``reschedule``.
        """
        if data.status == AppointmentStatus.CANCELLED:
            if not data.reason or not data.reason.strip():
                raise ValidationException("Cancellation reason is required")
            result = await self.cancel(appointment_id, AppointmentCancel(reason=data.reason), actor)
            return result.appointment

        if not actor.is_staff:
            raise ForbiddenException("Only staff can update appointment status")
        if data.status == AppointmentStatus.RESCHEDULED:
            raise ValidationException("Use the reschedule endpoint to move an appointment")

        async with self.gateway.atomic():
            current = await self._lock_and_reload(appointment_id)
            change = self.lifecycle.transition(current, data.status, actor.user_id, data.reason)
            updated = await self.lifecycle.apply(change)

        return to_response(updated)

    async def cancel(
        self,
        appointment_id: int,
        data: AppointmentCancel,
        actor: Actor,
    ) -> BookingResponse:
        """
        Cancel an appointment with a reason.

        Patients may cancel only their own appointments and only up to
        ``CANCELLATION_CUTOFF_HOURS`` before the start.
        """
        await self._get_visible(appointment_id, actor)

        async with self.gateway.atomic():
            current = await self._lock_and_reload(appointment_id)
            change = self.lifecycle.transition(
                current,
                AppointmentStatus.CANCELLED,
                actor.user_id,
                data.reason,
            )
            if actor.is_patient:
                cutoff = timedelta(hours=settings.cancellation_cutoff_hours)
                if current.scheduled_start_at - utc_now() < cutoff:
                    raise ValidationException(
                        "Appointments can only be cancelled at least "
                        f"{settings.cancellation_cutoff_hours} hours in advance"
                    )
            updated = await self.lifecycle.apply(change)
            effects = await self.gateway.enqueue_side_effects(
                current.id,
                [SideEffectType.CANCELLATION_NOTIFICATION.value],
            )

        logger.info(
            "appointment_cancelled",
            appointment_id=updated.id,
            cancelled_by=actor.user_id,
            reason=data.reason,
        )

        report = await self.dispatcher.dispatch(updated, effects)
        return _booking_response(updated, report)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, appointment_id: int, actor: Actor) -> AppointmentResponse:
        return to_response(await self._get_visible(appointment_id, actor))

    async def history(self, appointment_id: int, actor: Actor) -> list[StatusHistoryResponse]:
        await self._get_visible(appointment_id, actor)
        entries = await self.gateway.list_status_history(appointment_id)
        return [StatusHistoryResponse.model_validate(entry) for entry in entries]

    async def list_appointments(
        self, filters: AppointmentFilter, actor: Actor
    ) -> list[AppointmentResponse]:
        """
        List appointments for a patient, clinician or centre.

        Patients can only list their own appointments.
        """
        if actor.is_patient:
            if not isinstance(filters, PatientAppointmentFilter):
                raise ForbiddenException("Patients can only list their own appointments")
            if filters.patient_id != await self._patient_id_for(actor):
                raise ForbiddenException("Patients can only list their own appointments")

        appointments = await self.gateway.list_appointments(filters)
        return [to_response(appointment) for appointment in appointments]

    async def list_mine(self, actor: Actor, **criteria) -> list[AppointmentResponse]:
        """Appointments of the patient or clinician behind the actor."""
        if actor.is_patient:
            filters: AppointmentFilter = PatientAppointmentFilter(
                patient_id=await self._patient_id_for(actor),
                **criteria,
            )
        else:
            clinician = await self.gateway.get_clinician_by_user_id(actor.user_id)
            if clinician is None:
                raise ValidationException("No clinician profile for this user")
            filters = ClinicianAppointmentFilter(clinician_id=clinician.id, **criteria)
        return await self.list_appointments(filters, actor)

    async def list_for_centre(
        self, centre_id: int, actor: Actor, **criteria
    ) -> list[AppointmentResponse]:
        if not actor.is_staff:
            raise ForbiddenException("Only staff can list centre appointments")
        await self._require_centre(centre_id)
        filters = CentreAppointmentFilter(centre_id=centre_id, **criteria)
        return await self.list_appointments(filters, actor)

    async def list_for_clinician(
        self, clinician_id: int, actor: Actor, **criteria
    ) -> list[AppointmentResponse]:
        if not actor.is_staff:
            raise ForbiddenException("Only staff can list clinician appointments")
        await self._require_clinician(clinician_id)
        filters = ClinicianAppointmentFilter(clinician_id=clinician_id, **criteria)
        return await self.list_appointments(filters, actor)

    async def video_link(self, appointment_id: int, actor: Actor) -> VideoLinkResponse:
        """
        Stored meeting link of an online appointment, generated on demand if missing.

        Raises:
            ValidationException: Appointment is not online
            ServiceUnavailableException: Video provider unconfigured or failing
        """
        appointment = await self._get_visible(appointment_id, actor)
        if appointment.appointment_type != AppointmentType.ONLINE.value:
            raise ValidationException("Video links are only available for online appointments")

        stored = await self.gateway.get_video_link(appointment_id)
        if stored is not None:
            return VideoLinkResponse(
                appointment_id=appointment_id,
                meet_link=stored.meet_link,
                provider=stored.provider,
            )

        provider = self.integrations.video
        if not provider.is_configured:
            raise ServiceUnavailableException("Video conferencing is not configured")

        centre = await self._require_centre(appointment.centre_id)
        clinician = await self._require_clinician(appointment.clinician_id)
        zone = get_zone(centre.timezone)
        try:
            link = await provider.create_link(
                VideoLinkRequest(
                    appointment_id=appointment.id,
                    title=f"Online consultation with {clinician.contact.full_name}",
                    start=appointment.scheduled_start_at.astimezone(zone),
                    end=appointment.scheduled_end_at.astimezone(zone),
                    timezone=centre.timezone,
                )
            )
        except IntegrationError as e:
            logger.error(
                "meet_link_generation_failed",
                appointment_id=appointment_id,
                error=e.message,
            )
            raise ServiceUnavailableException(
                "Could not create a video link, try again later"
            ) from e

        async with self.gateway.atomic():
            await self.gateway.save_video_link(
                VideoLinkRecord(
                    appointment_id=appointment.id,
                    meet_link=link.url,
                    provider=link.provider,
                    calendar_event_id=link.calendar_event_id,
                )
            )

        return VideoLinkResponse(
            appointment_id=appointment.id,
            meet_link=link.url,
            provider=link.provider,
        )
