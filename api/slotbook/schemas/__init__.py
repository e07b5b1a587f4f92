"""Pydantic schemas for API serialisation."""

from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field

from slotbook.models.calendar import BlockType, CalendarStatus, ScheduleAction

# --- Availability ---


class SlotOut(BaseModel):
    slot_id: str
    date: date
    start_time: time
    end_time: time
    duration_minutes: int
    label: str
    price_pence: int
    places_available: int
    places_booked: int
    places_remaining: int
    min_places_required: int | None
    is_full: bool
    is_available: bool

    @classmethod
    def from_slot(cls, slot) -> "SlotOut":
        return cls(
            slot_id=slot.slot_id,
            date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            duration_minutes=slot.duration_minutes,
            label=slot.label,
            price_pence=slot.price_pence,
            places_available=slot.places_available,
            places_booked=slot.places_booked,
            places_remaining=slot.places_remaining,
            min_places_required=slot.min_places_required,
            is_full=slot.is_full,
            is_available=slot.is_available,
        )


# --- Booking ---


class BookingCreate(BaseModel):
    slot_id: str
    places_requested: int = 1
    idempotency_key: str | None = Field(default=None, max_length=100)
    payment_method: str | None = None
    terms_accepted: bool = False


class BookingCancel(BaseModel):
    reason: str | None = None


class AdminNotesUpdate(BaseModel):
    admin_notes: str | None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_reference: str
    calendar_id: int
    user_id: int
    booking_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    places_booked: int
    price_per_place_pence: int
    total_price_pence: int
    booking_status: str
    payment_status: str
    payment_method: str | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    refund_processed: bool
    refunded_at: datetime | None
    booked_at: datetime


class AdminBookingOut(BookingOut):
    cancelled_by: int | None
    payment_reference: str | None
    admin_notes: str | None


class BookingHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    user_id: int | None
    action: str
    previous_value: str | None
    new_value: str | None
    notes: str | None
    created_at: datetime


# --- Calendar (admin) ---


class CalendarIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    display_colour: str = Field(default="#1976d2", pattern=r"^#[0-9a-fA-F]{6}$")
    status: CalendarStatus = CalendarStatus.OPEN
    enable_automated_schedule: bool = False
    min_days_in_advance: int = 0
    max_days_in_advance: int = 90
    use_terms_and_conditions: bool = False
    terms_and_conditions: str | None = None
    supported_payment_methods: list[str] = []
    allow_cancellations: bool = False
    cancel_days_in_advance: int | None = None
    refund_payment_automatically: bool = False
    admin_notification_emails: str | None = None
    send_reminder_emails: bool = False
    reminder_hours_before: int | None = None


class CalendarUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    display_colour: str | None = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")
    status: CalendarStatus | None = None
    enable_automated_schedule: bool | None = None
    min_days_in_advance: int | None = None
    max_days_in_advance: int | None = None
    use_terms_and_conditions: bool | None = None
    terms_and_conditions: str | None = None
    supported_payment_methods: list[str] | None = None
    allow_cancellations: bool | None = None
    cancel_days_in_advance: int | None = None
    refund_payment_automatically: bool | None = None
    admin_notification_emails: str | None = None
    send_reminder_emails: bool | None = None
    reminder_hours_before: int | None = None


class CalendarOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organisation_id: int
    name: str
    description: str
    display_colour: str
    status: str
    enable_automated_schedule: bool
    min_days_in_advance: int
    max_days_in_advance: int
    use_terms_and_conditions: bool
    terms_and_conditions: str | None
    supported_payment_methods: list[str]
    allow_cancellations: bool
    cancel_days_in_advance: int | None
    refund_payment_automatically: bool
    admin_notification_emails: str | None
    send_reminder_emails: bool
    reminder_hours_before: int | None


# --- Schedule rules ---


class ScheduleRuleIn(BaseModel):
    start_date: date
    end_date: date | None = None
    action: ScheduleAction
    time_of_day: time | None = None
    reason: str | None = None
    order: int = 0


class ScheduleRuleUpdate(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    action: ScheduleAction | None = None
    time_of_day: time | None = None
    reason: str | None = None
    order: int | None = None


class ScheduleRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    calendar_id: int
    start_date: date
    end_date: date | None
    action: str
    time_of_day: time | None
    reason: str | None
    order: int


# --- Time slot configurations ---


class DurationOptionIn(BaseModel):
    id: int | None = None
    duration_minutes: int = Field(gt=0)
    price_pence: int = Field(default=0, ge=0)
    label: str = Field(min_length=1, max_length=255)
    order: int | None = None


class DurationOptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    duration_minutes: int
    price_pence: int
    label: str
    order: int


class TimeSlotConfigurationIn(BaseModel):
    days_of_week: list[int]
    start_time: time
    effective_date_start: date
    effective_date_end: date | None = None
    recurrence_weeks: int = 1
    places_available: int = 1
    min_places_required: int | None = None
    order: int = 0
    duration_options: list[DurationOptionIn]


class TimeSlotConfigurationUpdate(BaseModel):
    days_of_week: list[int] | None = None
    start_time: time | None = None
    effective_date_start: date | None = None
    effective_date_end: date | None = None
    recurrence_weeks: int | None = None
    places_available: int | None = None
    min_places_required: int | None = None
    order: int | None = None
    duration_options: list[DurationOptionIn] | None = None


class TimeSlotConfigurationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    calendar_id: int
    days_of_week: list[int]
    start_time: time
    effective_date_start: date
    effective_date_end: date | None
    recurrence_weeks: int
    places_available: int
    min_places_required: int | None
    order: int
    duration_options: list[DurationOptionOut]


# --- Blocked periods ---


class BlockedPeriodIn(BaseModel):
    block_type: BlockType
    start_date: date | None = None
    end_date: date | None = None
    days_of_week: list[int] | None = None
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None


class BlockedPeriodUpdate(BaseModel):
    block_type: BlockType | None = None
    start_date: date | None = None
    end_date: date | None = None
    days_of_week: list[int] | None = None
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None


class BlockedPeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    calendar_id: int
    block_type: str
    start_date: date | None
    end_date: date | None
    days_of_week: list[int] | None
    start_time: time | None
    end_time: time | None
    reason: str | None
