"""Availability: which slots of a calendar are bookable between two dates.

Composes the pieces in order: clamp to the advance booking window, resolve
open days from schedule rules, expand time slot configurations, drop blocked
instances, then annotate each survivor with places booked from the ledger.
Read-only; never blocks writers.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, time

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.errors import ValidationError
from slotbook.models.calendar import Calendar, TimeSlotConfiguration
from slotbook.services.blocked_periods import filter_blocked, load_blocks
from slotbook.services.booking_rules import check_not_started, clamp_to_window, local_now
from slotbook.services.capacity import booked_places, remaining_capacity
from slotbook.services.schedule_rules import load_rules, resolve_days
from slotbook.services.slot_generator import SlotInstance, generate_slots, parse_slot_id

logger = logging.getLogger(__name__)


class AvailabilityMode(enum.StrEnum):
    AVAILABLE_ONLY = "available_only"
    ALL = "all"  # admin view: include full and already-started slots


@dataclass(frozen=True)
class Slot:
    """A slot instance annotated with its current capacity."""

    instance: SlotInstance
    places_booked: int
    has_started: bool = False

    @property
    def slot_id(self) -> str:
        return self.instance.slot_id

    @property
    def configuration_id(self) -> int:
        return self.instance.configuration_id

    @property
    def slot_date(self) -> date:
        return self.instance.slot_date

    @property
    def start_time(self) -> time:
        return self.instance.start_time

    @property
    def end_time(self) -> time:
        return self.instance.end_time

    @property
    def duration_minutes(self) -> int:
        return self.instance.duration_minutes

    @property
    def price_pence(self) -> int:
        return self.instance.price_pence

    @property
    def label(self) -> str:
        return self.instance.label

    @property
    def places_available(self) -> int:
        return self.instance.places_available

    @property
    def min_places_required(self) -> int | None:
        return self.instance.min_places_required

    @property
    def places_remaining(self) -> int:
        return remaining_capacity(self.places_available, self.places_booked)

    @property
    def is_full(self) -> bool:
        return self.places_remaining == 0

    @property
    def is_available(self) -> bool:
        needed = max(self.min_places_required or 1, 1)
        return not self.has_started and self.places_remaining >= needed


def validate_range(date_from: date, date_to: date) -> None:
    if date_from > date_to:
        raise ValidationError("date_from must be on or before date_to.", rule="date_range")


async def load_configurations(
    db: AsyncSession, calendar_id: int, date_from: date, date_to: date
) -> list[TimeSlotConfiguration]:
    """Configurations whose effective window intersects [date_from, date_to], options loaded."""
    result = await db.execute(
        select(TimeSlotConfiguration).where(
            TimeSlotConfiguration.calendar_id == calendar_id,
            TimeSlotConfiguration.effective_date_start <= date_to,
            or_(
                TimeSlotConfiguration.effective_date_end.is_(None),
                TimeSlotConfiguration.effective_date_end >= date_from,
            ),
        )
    )
    return list(result.scalars().all())


async def list_availability(
    db: AsyncSession,
    calendar: Calendar,
    date_from: date,
    date_to: date,
    mode: AvailabilityMode = AvailabilityMode.AVAILABLE_ONLY,
    now: datetime | None = None,
) -> list[Slot]:
    """Return the calendar's slots between date_from and date_to inclusive.

    The range is clamped to the advance booking window; dates outside it
    simply produce no slots. An empty list is a valid answer.
    """
    validate_range(date_from, date_to)
    now = now or local_now()

    clamped = clamp_to_window(calendar, date_from, date_to, now.date())
    if clamped is None:
        return []
    start, end = clamped

    rules = await load_rules(db, calendar.id, start, end)
    days = resolve_days(calendar, rules, start, end)
    if not any(status.is_open for status in days.values()):
        return []

    configs = await load_configurations(db, calendar.id, start, end)
    generation = generate_slots(configs, days, start, end)
    instances = filter_blocked(generation.slots, await load_blocks(db, calendar.id))
    booked = await booked_places(db, [c.id for c in configs], start, end)

    slots: list[Slot] = []
    for instance in instances:
        slot = Slot(
            instance=instance,
            places_booked=booked.get(instance.ledger_key, 0),
            has_started=check_not_started(instance.slot_date, instance.start_time, now) is not None,
        )
        if mode == AvailabilityMode.AVAILABLE_ONLY and not slot.is_available:
            continue
        slots.append(slot)

    logger.debug(
        "Availability calendar=%s %s..%s mode=%s -> %d slots (%d conflicts)",
        calendar.id,
        start,
        end,
        mode.value,
        len(slots),
        len(generation.conflicts),
    )
    return slots


async def resolve_slot(db: AsyncSession, calendar: Calendar, slot_id: str, now: datetime | None = None) -> Slot:
    """Re-derive one slot from its id against the current schedule, blocks and window.

    Raises ValidationError if the slot is no longer offered or has started.
    """
    _, slot_date, _ = parse_slot_id(slot_id)
    slots = await list_availability(db, calendar, slot_date, slot_date, AvailabilityMode.ALL, now)
    slot = next((s for s in slots if s.slot_id == slot_id), None)
    if slot is None:
        raise ValidationError("This slot is not available for booking.", rule="slot_unavailable")
    if slot.has_started:
        raise ValidationError("This slot has already started.", rule="past_slot")
    return slot
