"""Typed booking engine errors.

Every business-rule failure carries a stable ``rule`` code and a human
message so API clients can branch on the reason (pick another slot, retry
later, contact the organiser). The HTTP mapping lives in ``main.py``.
"""

from dataclasses import dataclass
from datetime import date


class BookingError(Exception):
    """Base class for all errors surfaced by the booking engine."""

    status_code = 400
    rule = "booking_error"

    def __init__(self, message: str, rule: str | None = None):
        self.message = message
        if rule is not None:
            self.rule = rule
        super().__init__(message)

    def as_detail(self) -> list[dict]:
        return [{"rule": self.rule, "message": self.message}]


class ValidationError(BookingError):
    """Caller-fixable input problem: bad ranges, unknown slots, invalid config."""

    status_code = 422
    rule = "validation"


class NotFound(ValidationError):
    status_code = 404
    rule = "not_found"


class CapacityExceeded(BookingError):
    """Not enough places left on the slot instance. Re-poll availability."""

    status_code = 409
    rule = "capacity_exceeded"


class BelowMinimumPlaces(CapacityExceeded):
    rule = "below_minimum_places"


class CancellationWindowClosed(BookingError):
    status_code = 422
    rule = "cancellation_window_closed"


class ConfigurationLocked(BookingError):
    """Configuration change would rewrite history already booked against."""

    status_code = 409
    rule = "configuration_locked"


class StoreUnavailable(BookingError):
    """Transient persistence failure. Safe to retry with the same idempotency key."""

    status_code = 503
    rule = "store_unavailable"


@dataclass(frozen=True)
class ConfigurationConflict:
    """Two time slot configurations claim overlapping time on the same date.

    Resolved by priority (the winner keeps the date); recorded and logged,
    never raised.
    """

    slot_date: date
    winner_id: int
    suppressed_id: int

    def __str__(self) -> str:
        return (
            f"Time slot configuration {self.suppressed_id} overlaps configuration "
            f"{self.winner_id} on {self.slot_date.isoformat()}; suppressed"
        )
