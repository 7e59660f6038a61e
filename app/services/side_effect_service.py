"""
Post-commit side effects of booking changes.

Every booking change writes its side effects to the ``appointment_side_effects``
outbox in the same transaction as the change. After commit the dispatcher runs
them concurrently, each with its own timeout, and records how each one went.
Failures never reach the caller: they are logged, retried with exponential
backoff by ``process_due`` and dead-lettered after the configured number of
attempts.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from app.config import settings
from app.core.time_utils import get_zone, utc_now
from app.database import AsyncSessionLocal
from app.integrations.base import (
    IntegrationError,
    NotificationMessage,
    VideoLinkRequest,
)
from app.integrations.registry import Integrations, get_integrations
from app.repositories.base import (
    Appointment,
    BookingContext,
    Contact,
    SchedulingGateway,
    SideEffect,
    SideEffectOutcome,
    SideEffectStatus,
    SideEffectType,
    VideoLinkRecord,
)
from app.repositories.scheduling_repository import SchedulingRepository
from app.schemas.appointments import (
    AppointmentStatus,
    NotificationOutcome,
    PaymentLinkInfo,
)

logger = structlog.get_logger()

# Effects that still make sense once an appointment is cancelled or missed
_CLOSED_APPOINTMENT_EFFECTS = {SideEffectType.CANCELLATION_NOTIFICATION.value}
_CLOSED_STATUSES = {AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value}


@dataclass
class EffectResult:
    """What one attempt of one outbox row produced."""

    effect: SideEffect
    succeeded: bool
    result: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    notifications: list[NotificationOutcome] = field(default_factory=list)
    video_link: VideoLinkRecord | None = None


@dataclass
class DispatchReport:
    """Advisory fields attached to a booking response."""

    meet_link: str | None = None
    payment_link: PaymentLinkInfo | None = None
    payment_link_error: str | None = None
    notifications: list[NotificationOutcome] = field(default_factory=list)


@dataclass
class ProcessSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0


def retry_delay(attempts: int, base_seconds: int) -> timedelta:
    """Backoff before the next attempt: ``base * 2^(attempts - 1)``."""
    return timedelta(seconds=base_seconds * 2 ** max(attempts - 1, 0))


def _local(value: datetime, timezone: str) -> datetime:
    return value.astimezone(get_zone(timezone))


class SideEffectDispatcher:
    """Runs outbox rows against the integrations and records the outcome."""

    def __init__(
        self,
        gateway: SchedulingGateway,
        integrations: Integrations,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        retry_base_seconds: int | None = None,
    ):
        self.gateway = gateway
        self.integrations = integrations
        self.timeout_seconds = timeout_seconds or settings.integration_timeout_seconds
        self.max_attempts = max_attempts or settings.side_effect_max_attempts
        self.retry_base_seconds = (
            retry_base_seconds
            if retry_base_seconds is not None
            else settings.side_effect_retry_base_seconds
        )
        self._handlers: dict[
            str, Callable[[BookingContext, SideEffect], Awaitable[EffectResult]]
        ] = {
            SideEffectType.VIDEO_LINK.value: self._video_link,
            SideEffectType.CONFIRMATION_NOTIFICATION.value: self._confirmation,
            SideEffectType.PAYMENT_LINK.value: self._payment_link,
            SideEffectType.RESCHEDULE_NOTIFICATION.value: self._reschedule_notification,
            SideEffectType.CANCELLATION_NOTIFICATION.value: self._cancellation_notification,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def load_context(
        self, appointment: Appointment, effects: Sequence[SideEffect]
    ) -> BookingContext:
        """Read everything the handlers need so they never touch the database themselves."""
        patient = await self.gateway.get_patient(appointment.patient_id)
        clinician = await self.gateway.get_clinician(appointment.clinician_id)
        centre = await self.gateway.get_centre(appointment.centre_id)
        if patient is None or clinician is None or centre is None:
            raise LookupError(f"Incomplete booking data for appointment {appointment.id}")

        types = {effect.effect_type for effect in effects}
        admins: list[Contact] = []
        video_link = None
        if SideEffectType.VIDEO_LINK.value in types:
            admins = await self.gateway.list_admin_contacts()
            video_link = await self.gateway.get_video_link(appointment.id)

        return BookingContext(
            appointment=appointment,
            patient=patient,
            clinician=clinician,
            centre=centre,
            admins=admins,
            video_link=video_link,
        )

    async def dispatch(
        self, appointment: Appointment, effects: Sequence[SideEffect]
    ) -> DispatchReport:
        """
        Run outbox rows for one appointment concurrently and record their outcomes.

        Never raises; anything that goes wrong degrades the report only.
        """
        if not effects:
            return DispatchReport()

        try:
            context = await self.load_context(appointment, effects)
        except Exception as e:
            logger.error(
                "side_effect_context_failed",
                appointment_id=appointment.id,
                error=str(e),
            )
            results = [
                EffectResult(effect=effect, succeeded=False, error=f"Booking data unavailable: {e}")
                for effect in effects
            ]
        else:
            results = await self.run_effects(context, effects)

        await self.record(results)
        return self.build_report(results)

    async def run_effects(
        self, context: BookingContext, effects: Sequence[SideEffect]
    ) -> list[EffectResult]:
        """Run each effect as its own task; one failing or hanging never affects the others."""
        outcomes = await asyncio.gather(
            *(self._run(context, effect) for effect in effects),
            return_exceptions=True,
        )

        results = []
        for effect, outcome in zip(effects, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "side_effect_crashed",
                    appointment_id=effect.appointment_id,
                    effect_type=effect.effect_type,
                    error=repr(outcome),
                )
                outcome = EffectResult(effect=effect, succeeded=False, error=repr(outcome))
            results.append(outcome)
        return results

    async def _run(self, context: BookingContext, effect: SideEffect) -> EffectResult:
        if (
            context.appointment.status in _CLOSED_STATUSES
            and effect.effect_type not in _CLOSED_APPOINTMENT_EFFECTS
        ):
            return EffectResult(
                effect=effect,
                succeeded=False,
                error=f"Appointment is {context.appointment.status}",
                retryable=False,
            )

        handler = self._handlers.get(effect.effect_type)
        if handler is None:
            return EffectResult(
                effect=effect,
                succeeded=False,
                error=f"Unknown side effect type {effect.effect_type}",
                retryable=False,
            )

        try:
            return await asyncio.wait_for(handler(context, effect), timeout=self.timeout_seconds)
        except TimeoutError:
            error = f"Timed out after {self.timeout_seconds:g}s"
            retryable = True
        except IntegrationError as e:
            error = e.message
            retryable = e.retryable
        except Exception as e:
            logger.exception(
                "side_effect_handler_error",
                appointment_id=effect.appointment_id,
                effect_type=effect.effect_type,
            )
            error = str(e) or e.__class__.__name__
            retryable = True

        logger.warning(
            "side_effect_failed",
            appointment_id=effect.appointment_id,
            effect_type=effect.effect_type,
            attempt=effect.attempts + 1,
            error=error,
        )
        return EffectResult(effect=effect, succeeded=False, error=error, retryable=retryable)

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def outcome_for(self, result: EffectResult, now: datetime) -> SideEffectOutcome:
        attempts = result.effect.attempts + 1
        if result.succeeded:
            return SideEffectOutcome(
                status=SideEffectStatus.SUCCEEDED.value,
                attempts=attempts,
                result=result.result,
            )
        if not result.retryable or attempts >= self.max_attempts:
            return SideEffectOutcome(
                status=SideEffectStatus.DEAD_LETTER.value,
                attempts=attempts,
                last_error=result.error,
                result=result.result,
            )
        return SideEffectOutcome(
            status=SideEffectStatus.FAILED.value,
            attempts=attempts,
            last_error=result.error,
            result=result.result,
            next_attempt_at=now + retry_delay(attempts, self.retry_base_seconds),
        )

    async def record(self, results: Sequence[EffectResult]) -> None:
        """Persist outcomes one after another in a single transaction."""
        now = utc_now()
        try:
            async with self.gateway.atomic():
                for result in results:
                    if result.video_link is not None:
                        await self.gateway.save_video_link(result.video_link)
                    outcome = self.outcome_for(result, now)
                    await self.gateway.record_side_effect_outcome(result.effect.id, outcome)
                    if outcome.status == SideEffectStatus.DEAD_LETTER.value:
                        logger.error(
                            "side_effect_dead_lettered",
                            appointment_id=result.effect.appointment_id,
                            effect_type=result.effect.effect_type,
                            attempts=outcome.attempts,
                            error=outcome.last_error,
                        )
        except Exception as e:
            logger.error(
                "side_effect_recording_failed",
                effect_ids=[result.effect.id for result in results],
                error=str(e),
            )

    @staticmethod
    def build_report(results: Sequence[EffectResult]) -> DispatchReport:
        report = DispatchReport()
        for result in results:
            report.notifications.extend(result.notifications)
            effect_type = result.effect.effect_type
            if effect_type == SideEffectType.VIDEO_LINK.value and result.succeeded:
                report.meet_link = (result.result or {}).get("meet_link")
            elif effect_type == SideEffectType.PAYMENT_LINK.value:
                if result.succeeded and result.result:
                    report.payment_link = PaymentLinkInfo(
                        link=result.result["link"],
                        amount=Decimal(result.result["amount"]),
                        currency=result.result["currency"],
                    )
                else:
                    report.payment_link_error = result.error
        return report

    # ------------------------------------------------------------------
    # Retry processing
    # ------------------------------------------------------------------

    async def process_due(
        self, limit: int | None = None, now: datetime | None = None
    ) -> ProcessSummary:
        """
        Retry every pending or failed row whose next attempt is due.

        The batch is claimed and committed before any handler runs, so a
        concurrent processor never picks up the same rows. Groups run one
        after another, hence the lease covers one timeout per row.
        """
        now = now or utc_now()
        limit = limit or settings.side_effect_batch_size
        lease = self.timeout_seconds * limit + self.retry_base_seconds
        lease_until = now + timedelta(seconds=lease)
        async with self.gateway.atomic():
            due = await self.gateway.claim_due_side_effects(now, limit, lease_until)

        grouped: dict[int, list[SideEffect]] = defaultdict(list)
        for effect in due:
            grouped[effect.appointment_id].append(effect)

        summary = ProcessSummary()
        for appointment_id, effects in grouped.items():
            appointment = await self.gateway.get_appointment_by_id(appointment_id)
            if appointment is None:
                results = [
                    EffectResult(
                        effect=effect,
                        succeeded=False,
                        error="Appointment not found",
                        retryable=False,
                    )
                    for effect in effects
                ]
                await self.record(results)
            else:
                await self.dispatch(appointment, effects)

            for effect in await self.gateway.get_side_effects(appointment_id):
                if effect.id not in {e.id for e in effects}:
                    continue
                summary.processed += 1
                if effect.status == SideEffectStatus.SUCCEEDED.value:
                    summary.succeeded += 1
                elif effect.status == SideEffectStatus.DEAD_LETTER.value:
                    summary.dead_lettered += 1
                else:
                    summary.failed += 1

        if summary.processed:
            logger.info(
                "side_effects_processed",
                processed=summary.processed,
                succeeded=summary.succeeded,
                failed=summary.failed,
                dead_lettered=summary.dead_lettered,
            )
        return summary

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _notify(
        self,
        recipients: Sequence[tuple[str, Contact]],
        message: NotificationMessage,
    ) -> list[NotificationOutcome]:
        """Send to every configured channel of every recipient in parallel."""
        notifier = self.integrations.notifier
        jobs = []
        labels = []
        outcomes: list[NotificationOutcome] = []
        for label, contact in recipients:
            channels = notifier.channels_for(contact)
            if not channels:
                outcomes.append(
                    NotificationOutcome(
                        recipient=label,
                        channel="NONE",
                        delivered=False,
                        error="No configured channel for recipient",
                    )
                )
                continue
            for channel in channels:
                jobs.append(notifier.send(channel, contact, message))
                labels.append(label)

        deliveries = await asyncio.gather(*jobs, return_exceptions=True)
        for label, delivery in zip(labels, deliveries, strict=True):
            if isinstance(delivery, BaseException):
                outcomes.append(
                    NotificationOutcome(
                        recipient=label,
                        channel="UNKNOWN",
                        delivered=False,
                        error=repr(delivery),
                    )
                )
            else:
                outcomes.append(
                    NotificationOutcome(
                        recipient=label,
                        channel=delivery.channel,
                        delivered=delivery.delivered,
                        error=delivery.error,
                    )
                )
        return outcomes

    @staticmethod
    def _notification_result(
        effect: SideEffect, outcomes: list[NotificationOutcome]
    ) -> EffectResult:
        delivered = any(outcome.delivered for outcome in outcomes)
        return EffectResult(
            effect=effect,
            succeeded=delivered,
            result={"notifications": [outcome.model_dump() for outcome in outcomes]},
            error=None if delivered else "No notification was delivered",
            notifications=outcomes,
        )

    @staticmethod
    def _when(context: BookingContext) -> str:
        start = _local(context.appointment.scheduled_start_at, context.centre.timezone)
        return start.strftime("%d %b %Y, %I:%M %p")

    async def _video_link(self, context: BookingContext, effect: SideEffect) -> EffectResult:
        appointment = context.appointment
        new_record = None
        if context.video_link is not None:
            meet_link = context.video_link.meet_link
        else:
            link = await self.integrations.video.create_link(
                VideoLinkRequest(
                    appointment_id=appointment.id,
                    title=f"Online consultation with {context.clinician.contact.full_name}",
                    description=(
                        f"Appointment #{appointment.id} for {context.patient.contact.full_name}"
                    ),
                    start=_local(appointment.scheduled_start_at, context.centre.timezone),
                    end=_local(appointment.scheduled_end_at, context.centre.timezone),
                    timezone=context.centre.timezone,
                    attendee_emails=[
                        email
                        for email in (
                            context.patient.contact.email,
                            context.clinician.contact.email,
                        )
                        if email
                    ],
                )
            )
            meet_link = link.url
            new_record = VideoLinkRecord(
                appointment_id=appointment.id,
                meet_link=link.url,
                provider=link.provider,
                calendar_event_id=link.calendar_event_id,
            )

        message = NotificationMessage(
            title="Online consultation scheduled",
            body=(
                f"Appointment #{appointment.id} with {context.clinician.contact.full_name} "
                f"for {context.patient.contact.full_name} on {self._when(context)}.\n"
                f"Join here: {meet_link}"
            ),
            data={
                "type": "video_link",
                "appointment_id": str(appointment.id),
                "meet_link": meet_link,
            },
        )
        recipients = [
            ("patient", context.patient.contact),
            ("clinician", context.clinician.contact),
        ]
        recipients.extend(("admin", admin) for admin in context.admins)
        outcomes = await self._notify(recipients, message)

        return EffectResult(
            effect=effect,
            succeeded=True,
            result={
                "meet_link": meet_link,
                "notifications": [outcome.model_dump() for outcome in outcomes],
            },
            notifications=outcomes,
            video_link=new_record,
        )

    async def _confirmation(self, context: BookingContext, effect: SideEffect) -> EffectResult:
        appointment = context.appointment
        message = NotificationMessage(
            title="Appointment confirmed",
            body=(
                f"Your appointment with {context.clinician.contact.full_name} at "
                f"{context.centre.name} is booked for {self._when(context)}."
            ),
            data={"type": "appointment_created", "appointment_id": str(appointment.id)},
        )
        outcomes = await self._notify([("patient", context.patient.contact)], message)
        return self._notification_result(effect, outcomes)

    async def _payment_link(self, context: BookingContext, effect: SideEffect) -> EffectResult:
        fee = context.clinician.consultation_fee
        if fee is None or fee <= 0:
            raise IntegrationError("Clinician has no consultation fee configured", retryable=False)

        link = await self.integrations.payments.create_and_send(
            context.appointment.id,
            context.patient.contact,
            Decimal(fee),
            description=f"Consultation with {context.clinician.contact.full_name}",
        )
        return EffectResult(
            effect=effect,
            succeeded=True,
            result={
                "link": link.link,
                "amount": str(link.amount),
                "currency": link.currency,
                "reference": link.reference,
            },
        )

    async def _reschedule_notification(
        self, context: BookingContext, effect: SideEffect
    ) -> EffectResult:
        message = NotificationMessage(
            title="Appointment rescheduled",
            body=(
                f"Appointment #{context.appointment.id} with "
                f"{context.clinician.contact.full_name} has moved to {self._when(context)}."
            ),
            data={"type": "appointment_rescheduled", "appointment_id": str(context.appointment.id)},
        )
        outcomes = await self._notify(
            [("patient", context.patient.contact), ("clinician", context.clinician.contact)],
            message,
        )
        return self._notification_result(effect, outcomes)

    async def _cancellation_notification(
        self, context: BookingContext, effect: SideEffect
    ) -> EffectResult:
        message = NotificationMessage(
            title="Appointment cancelled",
            body=(
                f"Appointment #{context.appointment.id} with "
                f"{context.clinician.contact.full_name} on {self._when(context)} "
                "has been cancelled."
            ),
            data={"type": "appointment_cancelled", "appointment_id": str(context.appointment.id)},
        )
        outcomes = await self._notify(
            [("patient", context.patient.contact), ("clinician", context.clinician.contact)],
            message,
        )
        return self._notification_result(effect, outcomes)


@asynccontextmanager
async def dispatcher_session() -> AsyncIterator[SideEffectDispatcher]:
    """Dispatcher bound to its own database session."""
    async with AsyncSessionLocal() as session:
        yield SideEffectDispatcher(SchedulingRepository(session), get_integrations())


async def run_side_effect_worker(
    stop: asyncio.Event,
    dispatcher_factory: Callable[[], Any] = dispatcher_session,
    interval_seconds: float | None = None,
) -> None:
    """
    Periodically retry due outbox rows until ``stop`` is set.

    ``dispatcher_factory`` returns an async context manager yielding a
    dispatcher bound to a fresh database session.
    """
    interval = interval_seconds or settings.side_effect_worker_interval_seconds
    logger.info("side_effect_worker_started", interval_seconds=interval)
    while not stop.is_set():
        try:
            async with dispatcher_factory() as dispatcher:
                await dispatcher.process_due()
        except Exception as e:
            logger.error("side_effect_worker_iteration_failed", error=str(e))
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except TimeoutError:
            pass
    logger.info("side_effect_worker_stopped")
