"""Schedule rule resolution: is the calendar open on a given day, and when.

Pure calculation apart from ``load_rules``. For each date the applicable rules
are those whose [start_date, end_date] range contains it; the rule with the
greatest ``order`` wins, ties going to the most recently created rule. With no
applicable rule (or automated scheduling switched off) the calendar's base
status governs.
"""

from dataclasses import dataclass
from datetime import date, time, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.models.calendar import Calendar, CalendarStatus, ScheduleAction, ScheduleRule


@dataclass(frozen=True)
class DayStatus:
    is_open: bool
    opens_at: time | None = None   # slots starting earlier are dropped
    closes_at: time | None = None  # slots ending later are dropped
    rule_id: int | None = None     # winning rule, None = base status

    def admits(self, start_minute: int, end_minute: int) -> bool:
        """Whether a slot [start, end) in minutes-of-day fits the day's hours."""
        if not self.is_open:
            return False
        if self.opens_at is not None and start_minute < _minutes(self.opens_at):
            return False
        if self.closes_at is not None and end_minute > _minutes(self.closes_at):
            return False
        return True


CLOSED = DayStatus(is_open=False)
OPEN = DayStatus(is_open=True)


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def date_range(date_from: date, date_to: date):
    """Yield each date from date_from to date_to inclusive."""
    current = date_from
    while current <= date_to:
        yield current
        current += timedelta(days=1)


def rule_priority(rule: ScheduleRule) -> tuple:
    """Sort key: higher order first in importance, then newer, then higher id."""
    created = rule.created_at.timestamp() if rule.created_at is not None else 0.0
    return (rule.order, created, rule.id or 0)


def winning_rule(rules: list[ScheduleRule], day: date) -> ScheduleRule | None:
    applicable = [r for r in rules if r.covers(day)]
    if not applicable:
        return None
    return max(applicable, key=rule_priority)


def _status_from_rule(rule: ScheduleRule) -> DayStatus:
    if rule.action == ScheduleAction.CLOSE:
        if rule.time_of_day is None:
            return DayStatus(is_open=False, rule_id=rule.id)
        return DayStatus(is_open=True, closes_at=rule.time_of_day, rule_id=rule.id)
    return DayStatus(is_open=True, opens_at=rule.time_of_day, rule_id=rule.id)


def resolve_day(base_status: CalendarStatus, rules: list[ScheduleRule], day: date) -> DayStatus:
    rule = winning_rule(rules, day)
    if rule is None:
        return OPEN if base_status == CalendarStatus.OPEN else CLOSED
    return _status_from_rule(rule)


def resolve_days(
    calendar: Calendar,
    rules: list[ScheduleRule],
    date_from: date,
    date_to: date,
) -> dict[date, DayStatus]:
    """Return the open/closed status of every date in [date_from, date_to]."""
    active_rules = rules if calendar.enable_automated_schedule else []
    return {day: resolve_day(calendar.status, active_rules, day) for day in date_range(date_from, date_to)}


async def load_rules(db: AsyncSession, calendar_id: int, date_from: date, date_to: date) -> list[ScheduleRule]:
    """Fetch the calendar's rules whose range intersects [date_from, date_to]."""
    result = await db.execute(
        select(ScheduleRule)
        .where(
            ScheduleRule.calendar_id == calendar_id,
            ScheduleRule.start_date <= date_to,
            or_(ScheduleRule.end_date.is_(None), ScheduleRule.end_date >= date_from),
        )
        .order_by(ScheduleRule.order, ScheduleRule.id)
    )
    return list(result.scalars().all())
