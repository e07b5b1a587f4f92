"""Slot instance generation from recurring time slot configurations.

Pure calculation module: no database, no async, no FastAPI dependencies.
A slot instance is a value computed on demand from (configuration, date,
duration option); it is never persisted. Its string id is
``"<configuration_id>:<YYYY-MM-DD>:<duration_option_id>"``.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time

from slotbook.core.errors import ConfigurationConflict, ValidationError
from slotbook.models.calendar import DurationOption, TimeSlotConfiguration
from slotbook.services.schedule_rules import CLOSED, DayStatus, date_range

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def to_minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def from_minutes(minutes: int) -> time:
    """Wall-clock time for a minutes-of-day value (wraps past midnight)."""
    minutes %= MINUTES_PER_DAY
    return time(minutes // 60, minutes % 60)


def calc_end_time(start_time: time, duration_minutes: int) -> time:
    """Calculate end time from start time and duration."""
    return from_minutes(to_minutes(start_time) + duration_minutes)


@dataclass(frozen=True)
class SlotInstance:
    configuration_id: int
    duration_option_id: int
    slot_date: date
    start_time: time
    duration_minutes: int
    price_pence: int
    label: str
    places_available: int
    min_places_required: int | None = None

    @property
    def slot_id(self) -> str:
        return format_slot_id(self.configuration_id, self.slot_date, self.duration_option_id)

    @property
    def start_minute(self) -> int:
        return to_minutes(self.start_time)

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.duration_minutes

    @property
    def end_time(self) -> time:
        return from_minutes(self.end_minute)

    @property
    def ledger_key(self) -> tuple[int, date]:
        """Capacity is shared by every duration option of a configuration on a date."""
        return (self.configuration_id, self.slot_date)

    def starts_at(self, tzinfo) -> datetime:
        return datetime.combine(self.slot_date, self.start_time, tzinfo=tzinfo)


@dataclass
class SlotGeneration:
    slots: list[SlotInstance] = field(default_factory=list)
    conflicts: list[ConfigurationConflict] = field(default_factory=list)


def format_slot_id(configuration_id: int, slot_date: date, duration_option_id: int) -> str:
    return f"{configuration_id}:{slot_date.isoformat()}:{duration_option_id}"


def parse_slot_id(slot_id: str) -> tuple[int, date, int]:
    """Split a slot id into (configuration_id, date, duration_option_id)."""
    try:
        config_part, date_part, option_part = slot_id.split(":")
        return int(config_part), date.fromisoformat(date_part), int(option_part)
    except ValueError:
        raise ValidationError(f"Malformed slot id {slot_id!r}.", rule="invalid_slot") from None


def config_priority(config: TimeSlotConfiguration) -> tuple:
    """Sort key: greater order wins, ties go to the most recently created."""
    created = config.created_at.timestamp() if config.created_at is not None else 0.0
    return (config.order, created, config.id or 0)


def recurs_on(config: TimeSlotConfiguration, day: date) -> bool:
    """Whether ``day`` falls on an active week of the configuration's cadence.

    Whole weeks are counted from effective_date_start, so the first
    occurrence of each weekday on or after the start is week 0.
    """
    if day < config.effective_date_start:
        return False
    weeks = (day - config.effective_date_start).days // 7
    return weeks % max(config.recurrence_weeks or 1, 1) == 0


def _sorted_options(config: TimeSlotConfiguration) -> list[DurationOption]:
    return sorted(config.duration_options, key=lambda o: (o.order, o.duration_minutes))


def generate_slots(
    configs: list[TimeSlotConfiguration],
    days: dict[date, DayStatus],
    date_from: date,
    date_to: date,
) -> SlotGeneration:
    """Expand configurations into candidate slot instances for [date_from, date_to].

    Configurations are processed highest priority first. Each claims the span
    from its start time to the end of its longest duration option on every date
    it generates; a lower-priority configuration overlapping an already claimed
    span is suppressed for that date and the conflict recorded.
    """
    generation = SlotGeneration()
    claimed: dict[date, list[tuple[int, int, int]]] = defaultdict(list)

    for config in sorted(configs, key=config_priority, reverse=True):
        options = _sorted_options(config)
        if not options:
            continue

        window_start = max(date_from, config.effective_date_start)
        window_end = min(date_to, config.effective_date_end or date_to)
        weekdays = set(config.days_of_week or [])
        span_start = to_minutes(config.start_time)
        span_end = span_start + max(o.duration_minutes for o in options)

        for day in date_range(window_start, window_end):
            status = days.get(day, CLOSED)
            if not status.is_open or day.weekday() not in weekdays or not recurs_on(config, day):
                continue

            winner = next(
                (cid for start, end, cid in claimed[day] if span_start < end and span_end > start),
                None,
            )
            if winner is not None:
                conflict = ConfigurationConflict(slot_date=day, winner_id=winner, suppressed_id=config.id)
                generation.conflicts.append(conflict)
                logger.warning("Configuration conflict: %s", conflict)
                continue
            claimed[day].append((span_start, span_end, config.id))

            for option in options:
                if not status.admits(span_start, span_start + option.duration_minutes):
                    continue
                generation.slots.append(
                    SlotInstance(
                        configuration_id=config.id,
                        duration_option_id=option.id,
                        slot_date=day,
                        start_time=config.start_time,
                        duration_minutes=option.duration_minutes,
                        price_pence=option.price_pence,
                        label=option.label,
                        places_available=config.places_available,
                        min_places_required=config.min_places_required,
                    )
                )

    generation.slots.sort(key=lambda s: (s.slot_date, s.start_time, s.duration_minutes, s.duration_option_id))
    return generation
