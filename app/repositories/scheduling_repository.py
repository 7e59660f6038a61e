"""PostgreSQL implementation of the scheduling gateway."""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import Date, and_, cast, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import ConflictException, NotFoundException
from app.core.time_utils import utc_now
from app.models.appointments import appointment_status_history, appointments
from app.models.availability_rules import clinician_availability_rules
from app.models.centres import centres
from app.models.clinicians import clinician_profiles
from app.models.patients import patient_profiles
from app.models.side_effects import appointment_side_effects
from app.models.users import users
from app.models.video_links import appointment_video_links
from app.repositories.base import (
    Appointment,
    AvailabilityRule,
    Centre,
    Clinician,
    Contact,
    NewAppointment,
    NewAvailabilityRule,
    Patient,
    SideEffect,
    SideEffectOutcome,
    SideEffectStatus,
    StatusHistoryEntry,
    VideoLinkRecord,
)
from app.schemas.appointments import (
    AppointmentFilter,
    AppointmentStatus,
    CentreAppointmentFilter,
    ClinicianAppointmentFilter,
    PatientAppointmentFilter,
)

logger = structlog.get_logger()

# Statuses that free the slot they occupied
NON_BLOCKING_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value)

ADMIN_ROLES = ("ADMIN", "MANAGER", "CENTRE_MANAGER")

# PostgreSQL exclusion_violation
EXCLUSION_VIOLATION = "23P01"


def _contact(row: Any) -> Contact:
    return Contact(
        user_id=row.user_id,
        full_name=row.full_name,
        phone=row.phone,
        email=row.email,
        push_token=row.push_token,
    )


def _is_overlap_violation(error: IntegrityError) -> bool:
    orig = error.orig
    if getattr(orig, "sqlstate", None) == EXCLUSION_VIOLATION:
        return True
    return "appointments_no_overlap" in str(orig)


class SchedulingRepository:
    """Scheduling gateway backed by SQLAlchemy Core over asyncpg."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db
        self._depth = 0

    @asynccontextmanager
    async def atomic(self, clinician_id: int | None = None) -> AsyncIterator[None]:
        """
        Run a block as one transaction, optionally holding a clinician lock.

        The lock is ``pg_advisory_xact_lock(namespace, clinician_id)`` and is
        released by PostgreSQL at commit or rollback. Nested blocks join the
        outer transaction.

        Raises:
            ConflictException: If the overlap exclusion constraint fires
        """
        if self._depth:
            self._depth += 1
            try:
                if clinician_id is not None:
                    await self._lock_clinician(clinician_id)
                yield
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            if clinician_id is not None:
                await self._lock_clinician(clinician_id)
            yield
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if _is_overlap_violation(e):
                logger.warning("appointment_overlap_rejected", clinician_id=clinician_id)
                raise ConflictException(
                    "Clinician already has an appointment in this time slot",
                    code="SLOT_UNAVAILABLE",
                ) from e
            raise
        except BaseException:
            await self.db.rollback()
            raise
        finally:
            self._depth = 0

    async def _lock_clinician(self, clinician_id: int) -> None:
        await self.db.execute(
            select(func.pg_advisory_xact_lock(settings.booking_lock_namespace, clinician_id))
        )

    # ------------------------------------------------------------------
    # Directory lookups
    # ------------------------------------------------------------------

    async def get_centre(self, centre_id: int) -> Centre | None:
        result = await self.db.execute(select(centres).where(centres.c.id == centre_id))
        row = result.fetchone()
        if not row:
            return None
        return Centre(
            id=row.id,
            name=row.name,
            timezone=row.timezone or settings.default_centre_timezone,
            is_active=row.is_active,
            city=row.city,
            contact_phone=row.contact_phone,
        )

    def _clinician_query(self):
        return select(
            clinician_profiles,
            users.c.full_name,
            users.c.phone,
            users.c.email,
            users.c.push_token,
            users.c.is_active.label("user_is_active"),
        ).join(users, users.c.id == clinician_profiles.c.user_id)

    @staticmethod
    def _clinician(row: Any) -> Clinician:
        return Clinician(
            id=row.id,
            user_id=row.user_id,
            primary_centre_id=row.primary_centre_id,
            default_consultation_duration_minutes=row.default_consultation_duration_minutes,
            consultation_fee=row.consultation_fee,
            is_active=row.is_active and row.user_is_active,
            contact=_contact(row),
            specialization=row.specialization,
        )

    async def get_clinician(self, clinician_id: int) -> Clinician | None:
        result = await self.db.execute(
            self._clinician_query().where(clinician_profiles.c.id == clinician_id)
        )
        row = result.fetchone()
        return self._clinician(row) if row else None

    async def get_clinician_by_user_id(self, user_id: int) -> Clinician | None:
        result = await self.db.execute(
            self._clinician_query().where(clinician_profiles.c.user_id == user_id)
        )
        row = result.fetchone()
        return self._clinician(row) if row else None

    def _patient_query(self):
        return select(
            patient_profiles,
            users.c.full_name,
            users.c.phone,
            users.c.email,
            users.c.push_token,
            users.c.is_active.label("user_is_active"),
        ).join(users, users.c.id == patient_profiles.c.user_id)

    @staticmethod
    def _patient(row: Any) -> Patient:
        return Patient(
            id=row.id,
            user_id=row.user_id,
            is_active=row.is_active and row.user_is_active,
            contact=_contact(row),
        )

    async def get_patient(self, patient_id: int) -> Patient | None:
        result = await self.db.execute(
            self._patient_query().where(patient_profiles.c.id == patient_id)
        )
        row = result.fetchone()
        return self._patient(row) if row else None

    async def get_patient_by_user_id(self, user_id: int) -> Patient | None:
        result = await self.db.execute(
            self._patient_query().where(patient_profiles.c.user_id == user_id)
        )
        row = result.fetchone()
        return self._patient(row) if row else None

    async def list_admin_contacts(self) -> list[Contact]:
        """Active staff users holding an administrative role."""
        stmt = select(
            users.c.id.label("user_id"),
            users.c.full_name,
            users.c.phone,
            users.c.email,
            users.c.push_token,
            users.c.roles,
        ).where(
            and_(
                users.c.user_type == "STAFF",
                users.c.is_active.is_(True),
            )
        )
        result = await self.db.execute(stmt)
        return [
            _contact(row)
            for row in result.fetchall()
            if any(role in (row.roles or []) for role in ADMIN_ROLES)
        ]

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def create_appointment(
        self,
        values: NewAppointment,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment:
        """Insert an appointment in BOOKED state together with its first history row."""
        stmt = (
            insert(appointments)
            .values(
                patient_id=values.patient_id,
                clinician_id=values.clinician_id,
                centre_id=values.centre_id,
                appointment_type=values.appointment_type,
                scheduled_start_at=values.scheduled_start_at,
                scheduled_end_at=values.scheduled_end_at,
                duration_minutes=values.duration_minutes,
                status=AppointmentStatus.BOOKED.value,
                parent_appointment_id=values.parent_appointment_id,
                booked_by_user_id=values.booked_by_user_id,
                source=values.source,
                notes=values.notes,
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        appointment = Appointment(**dict(result.fetchone()._mapping))

        await self.append_status_history(
            appointment.id,
            None,
            appointment.status,
            actor_id,
            reason,
        )
        return appointment

    async def get_appointment_by_id(
        self, appointment_id: int, for_update: bool = False
    ) -> Appointment | None:
        stmt = select(appointments).where(appointments.c.id == appointment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        row = result.fetchone()
        return Appointment(**dict(row._mapping)) if row else None

    async def has_overlap(
        self,
        clinician_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
    ) -> bool:
        """Check for a blocking appointment whose ``[start, end)`` intersects the given one."""
        conditions = [
            appointments.c.clinician_id == clinician_id,
            appointments.c.is_active.is_(True),
            appointments.c.status.not_in(NON_BLOCKING_STATUSES),
            appointments.c.scheduled_start_at < end,
            appointments.c.scheduled_end_at > start,
        ]
        if exclude_id is not None:
            conditions.append(appointments.c.id != exclude_id)

        stmt = select(appointments.c.id).where(and_(*conditions)).limit(1)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def _require_for_update(self, appointment_id: int) -> Appointment:
        current = await self.get_appointment_by_id(appointment_id, for_update=True)
        if current is None:
            raise NotFoundException("Appointment not found")
        return current

    async def update_status(
        self,
        appointment_id: int,
        new_status: str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment:
        current = await self._require_for_update(appointment_id)

        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(status=new_status, updated_at=func.now())
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        updated = Appointment(**dict(result.fetchone()._mapping))

        await self.append_status_history(
            appointment_id, current.status, new_status, actor_id, reason
        )
        return updated

    async def reschedule_appointment(
        self,
        appointment_id: int,
        start: datetime,
        end: datetime,
        duration_minutes: int,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment:
        current = await self._require_for_update(appointment_id)
        new_status = AppointmentStatus.RESCHEDULED.value

        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(
                scheduled_start_at=start,
                scheduled_end_at=end,
                duration_minutes=duration_minutes,
                status=new_status,
                updated_at=func.now(),
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        updated = Appointment(**dict(result.fetchone()._mapping))

        await self.append_status_history(
            appointment_id, current.status, new_status, actor_id, reason
        )
        return updated

    async def append_status_history(
        self,
        appointment_id: int,
        previous_status: str | None,
        new_status: str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> StatusHistoryEntry:
        stmt = (
            insert(appointment_status_history)
            .values(
                appointment_id=appointment_id,
                previous_status=previous_status,
                new_status=new_status,
                changed_by_user_id=actor_id,
                reason=reason,
            )
            .returning(appointment_status_history)
        )
        result = await self.db.execute(stmt)
        return StatusHistoryEntry(**dict(result.fetchone()._mapping))

    async def list_status_history(self, appointment_id: int) -> list[StatusHistoryEntry]:
        stmt = (
            select(appointment_status_history)
            .where(appointment_status_history.c.appointment_id == appointment_id)
            .order_by(appointment_status_history.c.id)
        )
        result = await self.db.execute(stmt)
        return [StatusHistoryEntry(**dict(row._mapping)) for row in result.fetchall()]

    async def list_appointments(self, filters: AppointmentFilter) -> list[Appointment]:
        """
        List appointments matching a tagged filter.

        Date bounds are calendar dates in each appointment's centre timezone.
        """
        local_date = cast(
            func.timezone(centres.c.timezone, appointments.c.scheduled_start_at),
            Date,
        )
        conditions = []

        match filters:
            case PatientAppointmentFilter():
                conditions.append(appointments.c.patient_id == filters.patient_id)
            case ClinicianAppointmentFilter():
                conditions.append(appointments.c.clinician_id == filters.clinician_id)
                if filters.on_date:
                    conditions.append(local_date == filters.on_date)
            case CentreAppointmentFilter():
                conditions.append(appointments.c.centre_id == filters.centre_id)

        if not filters.include_inactive:
            conditions.append(appointments.c.is_active.is_(True))
        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)
        if filters.from_date:
            conditions.append(local_date >= filters.from_date)
        if filters.to_date:
            conditions.append(local_date <= filters.to_date)

        stmt = (
            select(appointments)
            .join(centres, centres.c.id == appointments.c.centre_id)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_start_at, appointments.c.id)
        )
        result = await self.db.execute(stmt)
        return [Appointment(**dict(row._mapping)) for row in result.fetchall()]

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def _rules_query(self):
        return select(
            clinician_availability_rules,
            centres.c.timezone,
        ).join(centres, centres.c.id == clinician_availability_rules.c.centre_id)

    @staticmethod
    def _rule(row: Any) -> AvailabilityRule:
        return AvailabilityRule(
            id=row.id,
            clinician_id=row.clinician_id,
            centre_id=row.centre_id,
            day_of_week=row.day_of_week,
            start_minute=row.start_minute,
            end_minute=row.end_minute,
            slot_duration_minutes=row.slot_duration_minutes,
            consultation_mode=row.consultation_mode,
            timezone=row.timezone or settings.default_centre_timezone,
            is_active=row.is_active,
        )

    async def get_availability_rules(
        self,
        clinician_id: int,
        day_of_week: int,
        centre_id: int | None = None,
    ) -> list[AvailabilityRule]:
        """Active rules of a clinician for one weekday, ordered by start time."""
        conditions = [
            clinician_availability_rules.c.clinician_id == clinician_id,
            clinician_availability_rules.c.day_of_week == day_of_week,
            clinician_availability_rules.c.is_active.is_(True),
        ]
        if centre_id is not None:
            conditions.append(clinician_availability_rules.c.centre_id == centre_id)

        stmt = (
            self._rules_query()
            .where(and_(*conditions))
            .order_by(
                clinician_availability_rules.c.start_minute,
                clinician_availability_rules.c.id,
            )
        )
        result = await self.db.execute(stmt)
        return [self._rule(row) for row in result.fetchall()]

    async def list_clinician_rules(self, clinician_id: int) -> list[AvailabilityRule]:
        stmt = (
            self._rules_query()
            .where(clinician_availability_rules.c.clinician_id == clinician_id)
            .order_by(
                clinician_availability_rules.c.day_of_week,
                clinician_availability_rules.c.start_minute,
                clinician_availability_rules.c.id,
            )
        )
        result = await self.db.execute(stmt)
        return [self._rule(row) for row in result.fetchall()]

    async def replace_availability_rules(
        self,
        clinician_id: int,
        rules: Sequence[NewAvailabilityRule],
    ) -> list[AvailabilityRule]:
        """Delete every rule of the clinician and insert the given set."""
        await self.db.execute(
            delete(clinician_availability_rules).where(
                clinician_availability_rules.c.clinician_id == clinician_id
            )
        )
        if rules:
            await self.db.execute(
                insert(clinician_availability_rules),
                [
                    {
                        "clinician_id": clinician_id,
                        "centre_id": rule.centre_id,
                        "day_of_week": rule.day_of_week,
                        "start_minute": rule.start_minute,
                        "end_minute": rule.end_minute,
                        "slot_duration_minutes": rule.slot_duration_minutes,
                        "consultation_mode": rule.consultation_mode,
                    }
                    for rule in rules
                ],
            )
        return await self.list_clinician_rules(clinician_id)

    # ------------------------------------------------------------------
    # Video links
    # ------------------------------------------------------------------

    async def get_video_link(self, appointment_id: int) -> VideoLinkRecord | None:
        stmt = select(appointment_video_links).where(
            appointment_video_links.c.appointment_id == appointment_id
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        if not row:
            return None
        return VideoLinkRecord(
            appointment_id=row.appointment_id,
            meet_link=row.meet_link,
            provider=row.provider,
            calendar_event_id=row.calendar_event_id,
        )

    async def save_video_link(self, link: VideoLinkRecord) -> VideoLinkRecord:
        existing = await self.get_video_link(link.appointment_id)
        if existing:
            await self.db.execute(
                update(appointment_video_links)
                .where(appointment_video_links.c.appointment_id == link.appointment_id)
                .values(
                    meet_link=link.meet_link,
                    provider=link.provider,
                    calendar_event_id=link.calendar_event_id,
                )
            )
        else:
            await self.db.execute(
                insert(appointment_video_links).values(
                    appointment_id=link.appointment_id,
                    meet_link=link.meet_link,
                    provider=link.provider,
                    calendar_event_id=link.calendar_event_id,
                )
            )
        return link

    # ------------------------------------------------------------------
    # Side-effect outbox
    # ------------------------------------------------------------------

    async def enqueue_side_effects(
        self,
        appointment_id: int,
        effect_types: Sequence[str],
    ) -> list[SideEffect]:
        """
        Add outbox rows for an appointment.

        The first retry is deferred past the immediate post-commit dispatch,
        so the retry processor never races the request that queued the rows.
        """
        if not effect_types:
            return []
        first_retry_at = utc_now() + timedelta(seconds=settings.side_effect_retry_base_seconds)
        result = await self.db.execute(
            insert(appointment_side_effects).returning(appointment_side_effects),
            [
                {
                    "appointment_id": appointment_id,
                    "effect_type": effect_type,
                    "status": SideEffectStatus.PENDING.value,
                    "next_attempt_at": first_retry_at,
                }
                for effect_type in effect_types
            ],
        )
        return [SideEffect(**dict(row._mapping)) for row in result.fetchall()]

    async def get_side_effects(self, appointment_id: int) -> list[SideEffect]:
        stmt = (
            select(appointment_side_effects)
            .where(appointment_side_effects.c.appointment_id == appointment_id)
            .order_by(appointment_side_effects.c.id)
        )
        result = await self.db.execute(stmt)
        return [SideEffect(**dict(row._mapping)) for row in result.fetchall()]

    async def record_side_effect_outcome(
        self,
        side_effect_id: int,
        outcome: SideEffectOutcome,
    ) -> SideEffect:
        values: dict[str, Any] = {
            "status": outcome.status,
            "attempts": outcome.attempts,
            "last_error": outcome.last_error,
            "result": outcome.result,
            "updated_at": func.now(),
        }
        if outcome.next_attempt_at is not None:
            values["next_attempt_at"] = outcome.next_attempt_at

        stmt = (
            update(appointment_side_effects)
            .where(appointment_side_effects.c.id == side_effect_id)
            .values(**values)
            .returning(appointment_side_effects)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        if not row:
            raise NotFoundException("Side effect not found")
        return SideEffect(**dict(row._mapping))

    async def claim_due_side_effects(
        self, now: datetime, limit: int, lease_until: datetime
    ) -> list[SideEffect]:
        """
        Take pending or failed rows whose next attempt is due.

        Rows are picked with ``SKIP LOCKED`` and their next attempt is moved to
        ``lease_until``. Once the caller's transaction commits, other processors
        leave them alone until an outcome is recorded or the lease runs out.
        Must run inside ``atomic``.
        """
        stmt = (
            select(appointment_side_effects.c.id)
            .where(
                and_(
                    appointment_side_effects.c.status.in_(
                        (SideEffectStatus.PENDING.value, SideEffectStatus.FAILED.value)
                    ),
                    appointment_side_effects.c.next_attempt_at <= now,
                )
            )
            .order_by(appointment_side_effects.c.next_attempt_at, appointment_side_effects.c.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        ids = [row.id for row in (await self.db.execute(stmt)).fetchall()]
        if not ids:
            return []

        result = await self.db.execute(
            update(appointment_side_effects)
            .where(appointment_side_effects.c.id.in_(ids))
            .values(next_attempt_at=lease_until, updated_at=func.now())
            .returning(appointment_side_effects)
        )
        claimed = {row.id: SideEffect(**dict(row._mapping)) for row in result.fetchall()}
        return [claimed[effect_id] for effect_id in ids]
