"""All models imported here for metadata discovery."""

from slotbook.models.base import Base
from slotbook.models.booking import Booking, BookingHistory, BookingStatus, HistoryAction, PaymentStatus
from slotbook.models.calendar import (
    BlockedPeriod,
    BlockType,
    Calendar,
    CalendarStatus,
    DurationOption,
    ScheduleAction,
    ScheduleRule,
    TimeSlotConfiguration,
)
from slotbook.models.ledger import SlotLedger

__all__ = [
    "Base",
    "Calendar",
    "CalendarStatus",
    "ScheduleRule",
    "ScheduleAction",
    "TimeSlotConfiguration",
    "DurationOption",
    "BlockedPeriod",
    "BlockType",
    "Booking",
    "BookingStatus",
    "PaymentStatus",
    "BookingHistory",
    "HistoryAction",
    "SlotLedger",
]
