import asyncio
import dataclasses
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from itertools import count

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.exceptions import ConflictException, NotFoundException
from app.core.redis_client import get_cache_manager
from app.core.security import create_access_token
from app.core.time_utils import day_of_week, get_zone, utc_now
from app.dependencies import get_gateway
from app.integrations.base import (
    DeliveryResult,
    IntegrationError,
    NotificationChannel,
    NotificationMessage,
    NotificationSender,
    PaymentLink,
    PaymentLinkProvider,
    VideoLink,
    VideoLinkProvider,
    VideoLinkRequest,
)
from app.integrations.registry import Integrations, get_integrations
from app.main import app
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
    CentreAppointmentFilter,
    ClinicianAppointmentFilter,
    PatientAppointmentFilter,
)
from app.schemas.auth import Actor, UserType
from app.services.booking_service import BookingService
from app.services.side_effect_service import SideEffectDispatcher

CENTRE_TZ = "Asia/Kolkata"
MONDAY = 1

PATIENT_USER_ID = 20
OTHER_PATIENT_USER_ID = 21
CLINICIAN_USER_ID = 10
STAFF_USER_ID = 30
ADMIN_USER_ID = 40


# ----------------------------------------------------------------------
# In-memory scheduling gateway
# ----------------------------------------------------------------------


class InMemoryGateway:
    """
    Dict-backed gateway with the same contract as the PostgreSQL repository.

    ``atomic`` serialises blocks with one lock and restores the previous
    state when a block raises. ``has_overlap`` yields to the event loop so
    concurrent bookings interleave the way they would against a database.
    """

    def __init__(self):
        self.centres: dict[int, Centre] = {}
        self.clinicians: dict[int, Clinician] = {}
        self.patients: dict[int, Patient] = {}
        self.admins: list[Contact] = []
        self.appointments: dict[int, Appointment] = {}
        self.history: list[StatusHistoryEntry] = []
        self.rules: dict[int, AvailabilityRule] = {}
        self.video_links: dict[int, VideoLinkRecord] = {}
        self.side_effects: dict[int, SideEffect] = {}
        self._ids = count(1)
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self.commits = 0
        self.rollbacks = 0

    # Seeding helpers

    def add_centre(self, centre_id: int, name: str = "Indiranagar", timezone: str = CENTRE_TZ):
        self.centres[centre_id] = Centre(id=centre_id, name=name, timezone=timezone)
        return self.centres[centre_id]

    def add_clinician(self, clinician_id: int, user_id: int, **overrides) -> Clinician:
        values = {
            "id": clinician_id,
            "user_id": user_id,
            "primary_centre_id": 1,
            "default_consultation_duration_minutes": 30,
            "consultation_fee": Decimal("800.00"),
            "is_active": True,
            "contact": Contact(
                user_id=user_id,
                full_name="Dr. Asha Rao",
                phone="+919800000010",
                email="asha.rao@example.com",
            ),
        }
        values.update(overrides)
        self.clinicians[clinician_id] = Clinician(**values)
        return self.clinicians[clinician_id]

    def add_patient(self, patient_id: int, user_id: int, **overrides) -> Patient:
        values = {
            "id": patient_id,
            "user_id": user_id,
            "is_active": True,
            "contact": Contact(
                user_id=user_id,
                full_name="Ravi Kumar",
                phone="+919800000020",
                email="ravi@example.com",
                push_token="fcm-token-ravi",
            ),
        }
        values.update(overrides)
        self.patients[patient_id] = Patient(**values)
        return self.patients[patient_id]

    def add_rule(
        self,
        clinician_id: int,
        centre_id: int,
        weekday: int,
        start_minute: int,
        end_minute: int,
        slot_duration_minutes: int = 30,
        consultation_mode: str = "BOTH",
    ) -> AvailabilityRule:
        rule = AvailabilityRule(
            id=next(self._ids),
            clinician_id=clinician_id,
            centre_id=centre_id,
            day_of_week=weekday,
            start_minute=start_minute,
            end_minute=end_minute,
            slot_duration_minutes=slot_duration_minutes,
            consultation_mode=consultation_mode,
            timezone=self.centres[centre_id].timezone,
        )
        self.rules[rule.id] = rule
        return rule

    def set_status(self, appointment_id: int, status: str) -> Appointment:
        """Force a status without history, for arranging test state."""
        appointment = dataclasses.replace(self.appointments[appointment_id], status=status)
        self.appointments[appointment_id] = appointment
        return appointment

    # Unit of work

    def _snapshot(self) -> dict:
        return {
            "appointments": dict(self.appointments),
            "history": list(self.history),
            "rules": dict(self.rules),
            "video_links": dict(self.video_links),
            "side_effects": dict(self.side_effects),
        }

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    @asynccontextmanager
    async def atomic(self, clinician_id: int | None = None) -> AsyncIterator[None]:
        current = asyncio.current_task()
        if self._owner is current:
            yield
            return

        async with self._lock:
            self._owner = current
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                self.rollbacks += 1
                raise
            else:
                self.commits += 1
            finally:
                self._owner = None

    # Directory lookups

    async def get_centre(self, centre_id: int) -> Centre | None:
        return self.centres.get(centre_id)

    async def get_clinician(self, clinician_id: int) -> Clinician | None:
        return self.clinicians.get(clinician_id)

    async def get_clinician_by_user_id(self, user_id: int) -> Clinician | None:
        return next((c for c in self.clinicians.values() if c.user_id == user_id), None)

    async def get_patient(self, patient_id: int) -> Patient | None:
        return self.patients.get(patient_id)

    async def get_patient_by_user_id(self, user_id: int) -> Patient | None:
        return next((p for p in self.patients.values() if p.user_id == user_id), None)

    async def list_admin_contacts(self) -> list[Contact]:
        return list(self.admins)

    # Appointments

    def _blocking(self, clinician_id: int, start: datetime, end: datetime, exclude_id=None):
        return [
            a
            for a in self.appointments.values()
            if a.clinician_id == clinician_id
            and a.is_active
            and a.status not in ("CANCELLED", "NO_SHOW")
            and a.id != exclude_id
            and a.scheduled_start_at < end
            and a.scheduled_end_at > start
        ]

    async def create_appointment(
        self,
        values: NewAppointment,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment:
        # Stand-in for the exclusion constraint
        if self._blocking(values.clinician_id, values.scheduled_start_at, values.scheduled_end_at):
            raise ConflictException(
                "Clinician already has an appointment in this time slot",
                code="SLOT_UNAVAILABLE",
            )
        now = utc_now()
        appointment = Appointment(
            id=next(self._ids),
            status="BOOKED",
            created_at=now,
            updated_at=now,
            **dataclasses.asdict(values),
        )
        self.appointments[appointment.id] = appointment
        await self.append_status_history(appointment.id, None, "BOOKED", actor_id, reason)
        return appointment

    async def get_appointment_by_id(
        self, appointment_id: int, for_update: bool = False
    ) -> Appointment | None:
        return self.appointments.get(appointment_id)

    async def has_overlap(
        self,
        clinician_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
    ) -> bool:
        await asyncio.sleep(0)
        return bool(self._blocking(clinician_id, start, end, exclude_id))

    def _require(self, appointment_id: int) -> Appointment:
        if appointment_id not in self.appointments:
            raise NotFoundException("Appointment not found")
        return self.appointments[appointment_id]

    async def update_status(
        self,
        appointment_id: int,
        new_status: str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> Appointment:
        current = self._require(appointment_id)
        updated = dataclasses.replace(current, status=new_status, updated_at=utc_now())
        self.appointments[appointment_id] = updated
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
        current = self._require(appointment_id)
        if self._blocking(current.clinician_id, start, end, exclude_id=appointment_id):
            raise ConflictException(
                "Clinician already has an appointment in this time slot",
                code="SLOT_UNAVAILABLE",
            )
        updated = dataclasses.replace(
            current,
            scheduled_start_at=start,
            scheduled_end_at=end,
            duration_minutes=duration_minutes,
            status="RESCHEDULED",
            updated_at=utc_now(),
        )
        self.appointments[appointment_id] = updated
        await self.append_status_history(
            appointment_id, current.status, "RESCHEDULED", actor_id, reason
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
        entry = StatusHistoryEntry(
            id=next(self._ids),
            appointment_id=appointment_id,
            previous_status=previous_status,
            new_status=new_status,
            changed_by_user_id=actor_id,
            changed_at=utc_now(),
            reason=reason,
        )
        self.history.append(entry)
        return entry

    async def list_status_history(self, appointment_id: int) -> list[StatusHistoryEntry]:
        return [entry for entry in self.history if entry.appointment_id == appointment_id]

    async def list_appointments(self, filters: AppointmentFilter) -> list[Appointment]:
        def local_date(appointment: Appointment) -> date:
            zone = get_zone(self.centres[appointment.centre_id].timezone)
            return appointment.scheduled_start_at.astimezone(zone).date()

        def matches(appointment: Appointment) -> bool:
            match filters:
                case PatientAppointmentFilter():
                    if appointment.patient_id != filters.patient_id:
                        return False
                case ClinicianAppointmentFilter():
                    if appointment.clinician_id != filters.clinician_id:
                        return False
                    if filters.on_date and local_date(appointment) != filters.on_date:
                        return False
                case CentreAppointmentFilter():
                    if appointment.centre_id != filters.centre_id:
                        return False
            if not filters.include_inactive and not appointment.is_active:
                return False
            if filters.status and appointment.status != filters.status.value:
                return False
            if filters.from_date and local_date(appointment) < filters.from_date:
                return False
            if filters.to_date and local_date(appointment) > filters.to_date:
                return False
            return True

        found = [a for a in self.appointments.values() if matches(a)]
        return sorted(found, key=lambda a: (a.scheduled_start_at, a.id))

    # Availability

    async def get_availability_rules(
        self,
        clinician_id: int,
        day_of_week: int,
        centre_id: int | None = None,
    ) -> list[AvailabilityRule]:
        rules = [
            rule
            for rule in self.rules.values()
            if rule.clinician_id == clinician_id
            and rule.day_of_week == day_of_week
            and rule.is_active
            and (centre_id is None or rule.centre_id == centre_id)
        ]
        return sorted(rules, key=lambda r: (r.start_minute, r.id))

    async def list_clinician_rules(self, clinician_id: int) -> list[AvailabilityRule]:
        rules = [rule for rule in self.rules.values() if rule.clinician_id == clinician_id]
        return sorted(rules, key=lambda r: (r.day_of_week, r.start_minute, r.id))

    async def replace_availability_rules(
        self,
        clinician_id: int,
        rules: Sequence[NewAvailabilityRule],
    ) -> list[AvailabilityRule]:
        self.rules = {
            rule_id: rule
            for rule_id, rule in self.rules.items()
            if rule.clinician_id != clinician_id
        }
        for rule in rules:
            self.add_rule(
                clinician_id,
                rule.centre_id,
                rule.day_of_week,
                rule.start_minute,
                rule.end_minute,
                rule.slot_duration_minutes,
                rule.consultation_mode,
            )
        return await self.list_clinician_rules(clinician_id)

    # Video links

    async def get_video_link(self, appointment_id: int) -> VideoLinkRecord | None:
        return self.video_links.get(appointment_id)

    async def save_video_link(self, link: VideoLinkRecord) -> VideoLinkRecord:
        self.video_links[link.appointment_id] = link
        return link

    # Side-effect outbox

    async def enqueue_side_effects(
        self,
        appointment_id: int,
        effect_types: Sequence[str],
    ) -> list[SideEffect]:
        created = []
        for effect_type in effect_types:
            effect = SideEffect(
                id=next(self._ids),
                appointment_id=appointment_id,
                effect_type=effect_type,
                status=SideEffectStatus.PENDING.value,
                next_attempt_at=utc_now() + timedelta(minutes=1),
            )
            self.side_effects[effect.id] = effect
            created.append(effect)
        return created

    async def get_side_effects(self, appointment_id: int) -> list[SideEffect]:
        return [e for e in self.side_effects.values() if e.appointment_id == appointment_id]

    async def record_side_effect_outcome(
        self,
        side_effect_id: int,
        outcome: SideEffectOutcome,
    ) -> SideEffect:
        current = self.side_effects[side_effect_id]
        updated = dataclasses.replace(
            current,
            status=outcome.status,
            attempts=outcome.attempts,
            last_error=outcome.last_error,
            result=outcome.result,
            next_attempt_at=outcome.next_attempt_at or current.next_attempt_at,
        )
        self.side_effects[side_effect_id] = updated
        return updated

    async def claim_due_side_effects(
        self, now: datetime, limit: int, lease_until: datetime
    ) -> list[SideEffect]:
        assert self._owner is asyncio.current_task(), "claim outside atomic"
        due = [
            e
            for e in self.side_effects.values()
            if e.status in (SideEffectStatus.PENDING.value, SideEffectStatus.FAILED.value)
            and e.next_attempt_at <= now
        ]
        claimed = []
        for effect in sorted(due, key=lambda e: (e.next_attempt_at, e.id))[:limit]:
            effect = dataclasses.replace(effect, next_attempt_at=lease_until)
            self.side_effects[effect.id] = effect
            claimed.append(effect)
        return claimed


# ----------------------------------------------------------------------
# Fake integrations
# ----------------------------------------------------------------------


class FakeVideoProvider(VideoLinkProvider):
    def __init__(self, configured: bool = True, error: Exception | None = None, delay: float = 0):
        self.configured = configured
        self.error = error
        self.delay = delay
        self.requests: list[VideoLinkRequest] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def create_link(self, request: VideoLinkRequest) -> VideoLink:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.configured:
            raise IntegrationError("Google Meet is not configured", retryable=False)
        if self.error is not None:
            raise self.error
        return VideoLink(
            url=f"https://meet.google.com/abc-{request.appointment_id}",
            calendar_event_id=f"evt-{request.appointment_id}",
        )


class FakeNotifier(NotificationSender):
    """Records every send; ``failing`` channels report undelivered."""

    def __init__(self, failing: Sequence[NotificationChannel] = ()):
        self.failing = set(failing)
        self.sent: list[tuple[NotificationChannel, Contact, NotificationMessage]] = []

    def channels_for(self, recipient: Contact) -> list[NotificationChannel]:
        channels = []
        if recipient.phone:
            channels.append(NotificationChannel.WHATSAPP)
        if recipient.push_token:
            channels.append(NotificationChannel.PUSH)
        return channels

    async def send(
        self,
        channel: NotificationChannel,
        recipient: Contact,
        message: NotificationMessage,
    ) -> DeliveryResult:
        self.sent.append((channel, recipient, message))
        if channel in self.failing:
            return DeliveryResult(
                channel=channel.value,
                recipient=str(recipient.user_id),
                delivered=False,
                error="provider unavailable",
            )
        return DeliveryResult(
            channel=channel.value,
            recipient=str(recipient.user_id),
            delivered=True,
            message_id=f"msg-{len(self.sent)}",
        )

    def titles_for(self, user_id: int) -> list[str]:
        return [message.title for _, contact, message in self.sent if contact.user_id == user_id]


class FakePaymentProvider(PaymentLinkProvider):
    def __init__(self, configured: bool = True, error: Exception | None = None):
        self.configured = configured
        self.error = error
        self.calls: list[tuple[int, Contact, Decimal]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def create_and_send(
        self,
        appointment_id: int,
        patient: Contact,
        amount: Decimal,
        description: str | None = None,
    ) -> PaymentLink:
        self.calls.append((appointment_id, patient, amount))
        if not self.configured:
            raise IntegrationError("Razorpay is not configured", retryable=False)
        if self.error is not None:
            raise self.error
        return PaymentLink(
            link=f"https://rzp.io/l/{appointment_id}",
            amount=amount,
            currency="INR",
            reference=f"plink_{appointment_id}",
        )


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def next_weekday(weekday: int, min_days_ahead: int = 2) -> date:
    """First date at least ``min_days_ahead`` from today falling on ``weekday`` (0 = Sunday)."""
    day = date.today() + timedelta(days=min_days_ahead)
    while day_of_week(day) != weekday:
        day += timedelta(days=1)
    return day


def local_datetime(day: date, hour: int, minute: int = 0) -> datetime:
    """Aware datetime in the centre's timezone."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=get_zone(CENTRE_TZ))


def bearer(user_id: int, user_type: UserType, roles: list[str] | None = None) -> dict:
    token = create_access_token(user_id, user_type.value, roles or [])
    return {"Authorization": f"Bearer {token}"}


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture
def gateway() -> InMemoryGateway:
    """
    One centre, one clinician available Mondays 09:00-12:00 in 30 minute
    slots, two patients and an admin.
    """
    gw = InMemoryGateway()
    gw.add_centre(1)
    gw.add_centre(2, name="Whitefield")
    gw.add_clinician(1, CLINICIAN_USER_ID)
    gw.add_patient(1, PATIENT_USER_ID)
    gw.add_patient(
        2,
        OTHER_PATIENT_USER_ID,
        contact=Contact(user_id=OTHER_PATIENT_USER_ID, full_name="Meera Nair", phone="+919811"),
    )
    gw.admins.append(
        Contact(user_id=ADMIN_USER_ID, full_name="Centre Admin", phone="+919800000040")
    )
    gw.add_rule(1, 1, MONDAY, 9 * 60, 12 * 60, 30)
    return gw


@pytest.fixture
def video() -> FakeVideoProvider:
    return FakeVideoProvider()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def payments() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def integrations(
    video: FakeVideoProvider,
    notifier: FakeNotifier,
    payments: FakePaymentProvider,
) -> Integrations:
    return Integrations(video=video, notifier=notifier, payments=payments)


@pytest.fixture
def dispatcher(gateway: InMemoryGateway, integrations: Integrations) -> SideEffectDispatcher:
    return SideEffectDispatcher(
        gateway,
        integrations,
        timeout_seconds=0.5,
        max_attempts=3,
        retry_base_seconds=60,
    )


@pytest.fixture
def booking_service(
    gateway: InMemoryGateway,
    integrations: Integrations,
    dispatcher: SideEffectDispatcher,
) -> BookingService:
    return BookingService(gateway, integrations, dispatcher=dispatcher)


@pytest.fixture
def patient_actor() -> Actor:
    return Actor(user_id=PATIENT_USER_ID, user_type=UserType.PATIENT)


@pytest.fixture
def other_patient_actor() -> Actor:
    return Actor(user_id=OTHER_PATIENT_USER_ID, user_type=UserType.PATIENT)


@pytest.fixture
def staff_actor() -> Actor:
    return Actor(user_id=STAFF_USER_ID, user_type=UserType.STAFF, roles=["FRONT_DESK"])


@pytest.fixture
def clinician_actor() -> Actor:
    return Actor(user_id=CLINICIAN_USER_ID, user_type=UserType.STAFF, roles=["CLINICIAN"])


@pytest.fixture
def monday() -> date:
    return next_weekday(MONDAY)


@pytest.fixture
def patient_headers() -> dict:
    return bearer(PATIENT_USER_ID, UserType.PATIENT)


@pytest.fixture
def staff_headers() -> dict:
    return bearer(STAFF_USER_ID, UserType.STAFF, ["FRONT_DESK"])


@pytest_asyncio.fixture
async def client(
    gateway: InMemoryGateway,
    integrations: Integrations,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the app with storage, cache and integrations replaced."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_integrations] = lambda: integrations
    app.dependency_overrides[get_cache_manager] = lambda: None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
