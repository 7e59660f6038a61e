"""Availability rules and slot generation."""

from collections.abc import Sequence
from dataclasses import asdict
from datetime import date, datetime

import structlog

from app.config import settings
from app.core.exceptions import ForbiddenException, NotFoundException
from app.core.redis_client import CacheManager
from app.core.time_utils import day_of_week, format_minutes, get_zone, local_instant
from app.repositories.base import AvailabilityRule, NewAvailabilityRule, SchedulingGateway
from app.schemas.auth import Actor
from app.schemas.availability import (
    AvailabilityRuleCreate,
    AvailabilityRuleResponse,
    AvailabilitySlot,
    ConsultationMode,
)
from app.services.conflict_service import ConflictDetector

logger = structlog.get_logger()

CACHE_PREFIX = "availability:rules"


def rule_cache_key(clinician_id: int, weekday: int, centre_id: int | None) -> str:
    return f"{CACHE_PREFIX}:{clinician_id}:{weekday}:{centre_id or 'all'}"


def generate_slots(rule: AvailabilityRule, on_date: date) -> list[tuple[datetime, datetime]]:
    """
    Cut one rule into consecutive slots on a calendar date.

    Slots start at the rule's start time and advance by the slot duration
    while the slot still ends at or before the rule's end time. Instants are
    aware datetimes in the centre's timezone.
    """
    zone = get_zone(rule.timezone)
    step = rule.slot_duration_minutes
    slots = []
    minute = rule.start_minute
    while minute + step <= rule.end_minute:
        slots.append(
            (
                local_instant(on_date, minute, zone),
                local_instant(on_date, minute + step, zone),
            )
        )
        minute += step
    return slots


def covering_rule(rules: Sequence[AvailabilityRule], local_minute: int) -> AvailabilityRule | None:
    """First rule whose ``[start, end)`` window contains the local minute of day."""
    for rule in rules:
        if rule.start_minute <= local_minute < rule.end_minute:
            return rule
    return None


def to_rule_response(rule: AvailabilityRule) -> AvailabilityRuleResponse:
    return AvailabilityRuleResponse(
        id=rule.id,
        clinician_id=rule.clinician_id,
        centre_id=rule.centre_id,
        day_of_week=rule.day_of_week,
        start_time=format_minutes(rule.start_minute),
        end_time=format_minutes(rule.end_minute),
        slot_duration_minutes=rule.slot_duration_minutes,
        consultation_mode=ConsultationMode(rule.consultation_mode),
        is_active=rule.is_active,
    )


class AvailabilityService:
    """Reads and replaces clinician availability and turns it into bookable slots."""

    def __init__(
        self,
        gateway: SchedulingGateway,
        cache: CacheManager | None = None,
        conflicts: ConflictDetector | None = None,
    ):
        self.gateway = gateway
        self.cache = cache
        self.conflicts = conflicts or ConflictDetector(gateway)

    async def rules_for_day(
        self,
        clinician_id: int,
        weekday: int,
        centre_id: int | None = None,
    ) -> list[AvailabilityRule]:
        """
        Active rules for one weekday, read through the rule cache.

        A cache miss or an unreachable Redis falls back to the database.
        """
        key = rule_cache_key(clinician_id, weekday, centre_id)
        if self.cache is not None:
            cached = self.cache.get_json(key)
            if cached is not None:
                return [AvailabilityRule(**item) for item in cached]

        rules = await self.gateway.get_availability_rules(clinician_id, weekday, centre_id)

        if self.cache is not None:
            self.cache.set_json(
                key,
                [asdict(rule) for rule in rules],
                ttl=settings.availability_cache_ttl_seconds,
            )
        return rules

    async def slots_for(
        self,
        clinician_id: int,
        on_date: date,
        centre_id: int | None = None,
    ) -> list[AvailabilitySlot]:
        """
        Candidate slots for a clinician on a date, each flagged free or taken.

        Rules on the same day are concatenated in start order, not merged.
        No rules means an empty list.
        """
        rules = await self.rules_for_day(clinician_id, day_of_week(on_date), centre_id)

        slots: list[AvailabilitySlot] = []
        for rule in rules:
            for start, end in generate_slots(rule, on_date):
                taken = await self.conflicts.has_overlap(clinician_id, start, end)
                slots.append(
                    AvailabilitySlot(
                        start_at=start,
                        end_at=end,
                        start_time=start.strftime("%H:%M"),
                        end_time=end.strftime("%H:%M"),
                        centre_id=rule.centre_id,
                        consultation_mode=ConsultationMode(rule.consultation_mode),
                        available=not taken,
                    )
                )
        return slots

    async def rules_for(self, clinician_id: int) -> list[AvailabilityRule]:
        """
        Every rule of a clinician, ordered by weekday then start time.

        Raises:
            NotFoundException: If the clinician does not exist
        """
        if await self.gateway.get_clinician(clinician_id) is None:
            raise NotFoundException("Clinician not found")
        return await self.gateway.list_clinician_rules(clinician_id)

    async def replace_rules(
        self,
        clinician_id: int,
        rules: Sequence[AvailabilityRuleCreate],
        actor: Actor,
    ) -> list[AvailabilityRule]:
        """
        Replace a clinician's whole weekly schedule in one transaction.

        Raises:
            ForbiddenException: If the actor is not staff
            NotFoundException: If the clinician or a referenced centre does not exist
        """
        if not actor.is_staff:
            raise ForbiddenException("Only staff can change clinician availability")

        if await self.gateway.get_clinician(clinician_id) is None:
            raise NotFoundException("Clinician not found")

        for centre_id in {rule.centre_id for rule in rules}:
            if await self.gateway.get_centre(centre_id) is None:
                raise NotFoundException(f"Centre {centre_id} not found")

        new_rules = [
            NewAvailabilityRule(
                centre_id=rule.centre_id,
                day_of_week=rule.day_of_week,
                start_minute=rule.start_minute,
                end_minute=rule.end_minute,
                slot_duration_minutes=rule.slot_duration_minutes,
                consultation_mode=rule.consultation_mode.value,
            )
            for rule in rules
        ]

        async with self.gateway.atomic():
            saved = await self.gateway.replace_availability_rules(clinician_id, new_rules)

        if self.cache is not None:
            self.cache.delete_pattern(f"{CACHE_PREFIX}:{clinician_id}:*")

        logger.info(
            "availability_rules_replaced",
            clinician_id=clinician_id,
            rule_count=len(saved),
            changed_by=actor.user_id,
        )
        return saved
