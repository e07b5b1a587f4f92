"""Booking rules enforcement.

Window and policy checks live here, separate from the lifecycle service and
the route handlers. Each check returns a BookingViolation describing the
problem, or None if the rule passes; the caller decides which typed error
to raise.
"""

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from slotbook.core.config import settings
from slotbook.models.booking import Booking
from slotbook.models.calendar import Calendar

LOCAL_TZ = ZoneInfo(settings.timezone)


class BookingViolation(Exception):
    """A booking rule that did not pass."""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        self.message = message
        super().__init__(message)


def _fmt_days(days: int) -> str:
    return f"{days} day{'s' if days != 1 else ''}"


def local_now() -> datetime:
    return datetime.now(LOCAL_TZ)


def local_today() -> date:
    return local_now().date()


def booking_window(calendar: Calendar, today: date) -> tuple[date, date]:
    """First and last dates the calendar currently accepts bookings for."""
    return (
        today + timedelta(days=calendar.min_days_in_advance or 0),
        today + timedelta(days=calendar.max_days_in_advance or 0),
    )


def clamp_to_window(calendar: Calendar, date_from: date, date_to: date, today: date) -> tuple[date, date] | None:
    """Intersect a requested range with the advance booking window. None if disjoint."""
    window_start, window_end = booking_window(calendar, today)
    start = max(date_from, window_start)
    end = min(date_to, window_end)
    if start > end:
        return None
    return start, end


def check_not_started(slot_date: date, start_time: time, now: datetime) -> BookingViolation | None:
    """Cannot book a slot that has already started."""
    slot_start = datetime.combine(slot_date, start_time, tzinfo=now.tzinfo)
    if slot_start <= now:
        return BookingViolation("past_slot", "This slot has already started.")
    return None


def validate_cancellation(calendar: Calendar, booking: Booking, today: date) -> BookingViolation | None:
    """Self-service cancellation: allowed by the calendar and strictly before the deadline.

    The booking date must be more than cancel_days_in_advance days away.
    """
    if not calendar.allow_cancellations:
        return BookingViolation("cancellations_disabled", "This calendar does not allow cancellations.")

    notice = calendar.cancel_days_in_advance or 0
    days_until = (booking.booking_date - today).days
    if days_until <= notice:
        deadline = booking.booking_date - timedelta(days=notice)
        return BookingViolation(
            "cancellation_deadline",
            f"Bookings must be cancelled more than {_fmt_days(notice)} in advance "
            f"(last day was {(deadline - timedelta(days=1)).strftime('%A %d %B')}). Too late to cancel.",
        )

    return None
