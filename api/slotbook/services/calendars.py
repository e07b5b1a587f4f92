"""Calendar configuration management for organisation administrators.

Changes are applied to the ORM objects first and then validated as a whole,
so cross-field rules (cancellation policy, advance window, capacity minimums)
see the final state. Raising rolls the request's transaction back.
"""

import logging
from datetime import date

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.errors import ConfigurationLocked, NotFound, ValidationError
from slotbook.models.booking import Booking
from slotbook.models.calendar import (
    BlockedPeriod,
    BlockType,
    Calendar,
    DurationOption,
    ScheduleRule,
    TimeSlotConfiguration,
)
from slotbook.services.booking_rules import local_today
from slotbook.services.slot_generator import MINUTES_PER_DAY, to_minutes

logger = logging.getLogger(__name__)


def _apply(obj, changes: dict) -> None:
    for key, value in changes.items():
        setattr(obj, key, value)


def _check_days_of_week(days: list | None, required: bool) -> None:
    if required and not days:
        raise ValidationError("At least one day of the week is required.", rule="days_of_week")
    for day in days or []:
        if not isinstance(day, int) or not 0 <= day <= 6:
            raise ValidationError(f"Invalid day of week {day!r} (0=Monday .. 6=Sunday).", rule="days_of_week")


def _check_date_order(start: date | None, end: date | None, what: str) -> None:
    if start is not None and end is not None and end < start:
        raise ValidationError(f"{what} end date cannot be before its start date.", rule="date_range")


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


def validate_calendar(calendar: Calendar) -> None:
    if calendar.allow_cancellations and not calendar.cancel_days_in_advance:
        raise ValidationError(
            "Cancel days in advance is required when cancellations are allowed.", rule="cancellation_policy"
        )
    if calendar.use_terms_and_conditions and not calendar.terms_and_conditions:
        raise ValidationError(
            "Terms and conditions text is required when terms and conditions are enabled.",
            rule="terms_and_conditions",
        )
    if calendar.send_reminder_emails and not calendar.reminder_hours_before:
        raise ValidationError(
            "Reminder hours before is required when reminder emails are enabled.", rule="reminders"
        )
    if calendar.min_days_in_advance < 0:
        raise ValidationError("Minimum days in advance cannot be negative.", rule="booking_window")
    if calendar.max_days_in_advance < 0:
        raise ValidationError("Maximum days in advance cannot be negative.", rule="booking_window")
    if calendar.min_days_in_advance > calendar.max_days_in_advance:
        raise ValidationError(
            "Minimum days in advance cannot be greater than maximum days in advance.", rule="booking_window"
        )


async def list_calendars(db: AsyncSession, organisation_id: int) -> list[Calendar]:
    result = await db.execute(
        select(Calendar).where(Calendar.organisation_id == organisation_id).order_by(Calendar.name)
    )
    return list(result.scalars().all())


async def get_calendar(db: AsyncSession, calendar_id: int, organisation_id: int) -> Calendar:
    result = await db.execute(
        select(Calendar).where(Calendar.id == calendar_id, Calendar.organisation_id == organisation_id)
    )
    calendar = result.scalar_one_or_none()
    if calendar is None:
        raise NotFound("Calendar not found.")
    return calendar


async def create_calendar(db: AsyncSession, organisation_id: int, data: dict) -> Calendar:
    calendar = Calendar(organisation_id=organisation_id)
    calendar.min_days_in_advance = 0
    calendar.max_days_in_advance = 90
    _apply(calendar, data)
    validate_calendar(calendar)
    db.add(calendar)
    await db.flush()
    logger.info("Calendar created: %s (%s) org=%s", calendar.name, calendar.id, organisation_id)
    return calendar


async def update_calendar(db: AsyncSession, calendar: Calendar, changes: dict) -> Calendar:
    _apply(calendar, changes)
    validate_calendar(calendar)
    await db.flush()
    return calendar


async def delete_calendar(db: AsyncSession, calendar: Calendar) -> None:
    has_bookings = await db.scalar(select(exists().where(Booking.calendar_id == calendar.id)))
    if has_bookings:
        raise ConfigurationLocked("Calendar has bookings and cannot be deleted. Close it instead.")
    await db.delete(calendar)
    await db.flush()
    logger.info("Calendar deleted: %s", calendar.id)


# ---------------------------------------------------------------------------
# Schedule rules
# ---------------------------------------------------------------------------


def validate_rule(rule: ScheduleRule) -> None:
    _check_date_order(rule.start_date, rule.end_date, "Schedule rule")


async def list_rules(db: AsyncSession, calendar_id: int) -> list[ScheduleRule]:
    result = await db.execute(
        select(ScheduleRule)
        .where(ScheduleRule.calendar_id == calendar_id)
        .order_by(ScheduleRule.order, ScheduleRule.id)
    )
    return list(result.scalars().all())


async def get_rule(db: AsyncSession, calendar: Calendar, rule_id: int) -> ScheduleRule:
    rule = await db.get(ScheduleRule, rule_id)
    if rule is None or rule.calendar_id != calendar.id:
        raise NotFound("Schedule rule not found.")
    return rule


async def _check_rule_unlocked(db: AsyncSession, rule: ScheduleRule, today: date) -> None:
    """A rule whose range covers a past date that was booked cannot be rewritten."""
    conditions = [
        Booking.calendar_id == rule.calendar_id,
        Booking.booking_date < today,
        Booking.booking_date >= rule.start_date,
    ]
    if rule.end_date is not None:
        conditions.append(Booking.booking_date <= rule.end_date)
    if await db.scalar(select(exists().where(*conditions))):
        raise ConfigurationLocked("Schedule rule covers past dates that have bookings and cannot be changed.")


async def create_rule(db: AsyncSession, calendar: Calendar, data: dict) -> ScheduleRule:
    rule = ScheduleRule(calendar_id=calendar.id)
    _apply(rule, data)
    validate_rule(rule)
    db.add(rule)
    await db.flush()
    return rule


async def update_rule(db: AsyncSession, rule: ScheduleRule, changes: dict, today: date | None = None) -> ScheduleRule:
    await _check_rule_unlocked(db, rule, today or local_today())
    _apply(rule, changes)
    validate_rule(rule)
    await db.flush()
    return rule


async def delete_rule(db: AsyncSession, rule: ScheduleRule, today: date | None = None) -> None:
    await _check_rule_unlocked(db, rule, today or local_today())
    await db.delete(rule)
    await db.flush()


# ---------------------------------------------------------------------------
# Time slot configurations
# ---------------------------------------------------------------------------


def validate_configuration(config: TimeSlotConfiguration) -> None:
    _check_days_of_week(config.days_of_week, required=True)
    _check_date_order(config.effective_date_start, config.effective_date_end, "Time slot configuration")
    if config.recurrence_weeks < 1:
        raise ValidationError("Recurrence must be at least every 1 week.", rule="recurrence_weeks")
    if config.places_available < 1:
        raise ValidationError("At least one place must be available.", rule="places_available")
    if config.min_places_required is not None and not 1 <= config.min_places_required <= config.places_available:
        raise ValidationError(
            "Minimum places required must be between 1 and the places available.", rule="min_places_required"
        )
    if not config.duration_options:
        raise ValidationError("At least one duration option is required.", rule="duration_options")
    for option in config.duration_options:
        if option.duration_minutes <= 0:
            raise ValidationError("Durations must be positive.", rule="duration_options")
        if option.price_pence < 0:
            raise ValidationError("Prices cannot be negative.", rule="duration_options")
    # Slots belong to a single day; blocks and overlaps are checked per date
    if to_minutes(config.start_time) + max(o.duration_minutes for o in config.duration_options) > MINUTES_PER_DAY:
        raise ValidationError("Slots must finish by midnight.", rule="duration_options")


async def list_configurations(db: AsyncSession, calendar_id: int) -> list[TimeSlotConfiguration]:
    result = await db.execute(
        select(TimeSlotConfiguration)
        .where(TimeSlotConfiguration.calendar_id == calendar_id)
        .order_by(TimeSlotConfiguration.order.desc(), TimeSlotConfiguration.id)
    )
    return list(result.scalars().all())


async def get_configuration(db: AsyncSession, calendar: Calendar, configuration_id: int) -> TimeSlotConfiguration:
    config = await db.get(TimeSlotConfiguration, configuration_id)
    if config is None or config.calendar_id != calendar.id:
        raise NotFound("Time slot configuration not found.")
    return config


def _build_option(item: dict, index: int) -> DurationOption:
    return DurationOption(
        duration_minutes=item["duration_minutes"],
        price_pence=item.get("price_pence") or 0,
        label=item["label"],
        order=index if item.get("order") is None else item["order"],
    )


async def create_configuration(db: AsyncSession, calendar: Calendar, data: dict) -> TimeSlotConfiguration:
    data = dict(data)
    options = [_build_option(item, i) for i, item in enumerate(data.pop("duration_options", []))]
    config = TimeSlotConfiguration(calendar_id=calendar.id, recurrence_weeks=1, places_available=1, order=0)
    _apply(config, data)
    config.duration_options = options
    validate_configuration(config)
    db.add(config)
    await db.flush()
    return config


async def _option_is_booked(db: AsyncSession, option_id: int) -> bool:
    return bool(await db.scalar(select(exists().where(Booking.duration_option_id == option_id))))


async def update_configuration(
    db: AsyncSession, config: TimeSlotConfiguration, changes: dict
) -> TimeSlotConfiguration:
    """Apply changes. Duration options, when given, are matched by id: listed ids are
    updated, entries without an id are added, and unlisted options removed unless booked."""
    changes = dict(changes)
    option_items = changes.pop("duration_options", None)
    _apply(config, changes)

    if option_items is not None:
        existing = {o.id: o for o in config.duration_options}
        kept: list[DurationOption] = []
        for index, item in enumerate(option_items):
            option_id = item.get("id")
            if option_id is None:
                kept.append(_build_option(item, index))
                continue
            option = existing.pop(option_id, None)
            if option is None:
                raise ValidationError(f"Duration option {option_id} does not belong to this configuration.")
            _apply(option, {k: v for k, v in item.items() if k != "id" and v is not None})
            kept.append(option)
        for removed in existing.values():
            if await _option_is_booked(db, removed.id):
                raise ConfigurationLocked(f"Duration option {removed.label!r} has bookings and cannot be removed.")
        config.duration_options = kept

    validate_configuration(config)
    await db.flush()
    return config


async def delete_configuration(db: AsyncSession, config: TimeSlotConfiguration) -> None:
    booked = await db.scalar(select(exists().where(Booking.time_slot_configuration_id == config.id)))
    if booked:
        raise ConfigurationLocked(
            "Time slot configuration has bookings and cannot be deleted. End its effective date instead."
        )
    await db.delete(config)
    await db.flush()


# ---------------------------------------------------------------------------
# Blocked periods
# ---------------------------------------------------------------------------


def validate_block(block: BlockedPeriod) -> None:
    if block.block_type == BlockType.DATE_RANGE:
        if block.start_date is None:
            raise ValidationError("A date range block needs a start date.", rule="blocked_period")
        _check_date_order(block.start_date, block.end_date, "Blocked period")
    else:
        if block.start_time is None or block.end_time is None:
            raise ValidationError("A time segment block needs a start and end time.", rule="blocked_period")
        if block.start_time >= block.end_time:
            raise ValidationError("Blocked period start time must be before its end time.", rule="blocked_period")
        _check_days_of_week(block.days_of_week, required=False)


async def list_blocks(db: AsyncSession, calendar_id: int) -> list[BlockedPeriod]:
    result = await db.execute(
        select(BlockedPeriod).where(BlockedPeriod.calendar_id == calendar_id).order_by(BlockedPeriod.id)
    )
    return list(result.scalars().all())


async def get_block(db: AsyncSession, calendar: Calendar, block_id: int) -> BlockedPeriod:
    block = await db.get(BlockedPeriod, block_id)
    if block is None or block.calendar_id != calendar.id:
        raise NotFound("Blocked period not found.")
    return block


async def create_block(db: AsyncSession, calendar: Calendar, data: dict) -> BlockedPeriod:
    block = BlockedPeriod(calendar_id=calendar.id)
    _apply(block, data)
    validate_block(block)
    db.add(block)
    await db.flush()
    return block


async def update_block(db: AsyncSession, block: BlockedPeriod, changes: dict) -> BlockedPeriod:
    _apply(block, changes)
    validate_block(block)
    await db.flush()
    return block


async def delete_block(db: AsyncSession, block: BlockedPeriod) -> None:
    await db.delete(block)
    await db.flush()
