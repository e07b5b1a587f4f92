"""Calendar configuration models.

Calendar = a bookable resource owned by an organisation (court, room, arena).
ScheduleRule = a dated open/close override on top of the calendar's base status.
TimeSlotConfiguration = a recurring template that generates slot instances.
DurationOption = one selectable length/price for a template's slots.
BlockedPeriod = a date range or weekly time segment where nothing is bookable.

Days of week follow Python's date.weekday(): 0=Mon..6=Sun.
"""

import enum
from datetime import date, time

from sqlalchemy import Boolean, Date, Enum, ForeignKey, Index, Integer, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from slotbook.models.base import Base, JSONType, TimestampMixin


class CalendarStatus(enum.StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class ScheduleAction(enum.StrEnum):
    OPEN = "open"
    CLOSE = "close"


class BlockType(enum.StrEnum):
    DATE_RANGE = "date_range"      # whole days between start_date and end_date
    TIME_SEGMENT = "time_segment"  # weekly window on days_of_week


class Calendar(TimestampMixin, Base):
    __tablename__ = "calendars"

    id: Mapped[int] = mapped_column(primary_key=True)
    organisation_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Display
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    display_colour: Mapped[str] = mapped_column(String(7), default="#1976d2", nullable=False)
    status: Mapped[CalendarStatus] = mapped_column(
        Enum(CalendarStatus, name="calendar_status", values_callable=lambda e: [x.value for x in e]),
        default=CalendarStatus.OPEN,
        nullable=False,
    )

    # Automated opening/closing via schedule rules
    enable_automated_schedule: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Advance booking window
    min_days_in_advance: Mapped[int] = mapped_column(default=0, nullable=False)
    max_days_in_advance: Mapped[int] = mapped_column(default=90, nullable=False)

    # Terms and conditions
    use_terms_and_conditions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text)

    # Payment method ids understood by the payments service
    supported_payment_methods: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Cancellation policy
    allow_cancellations: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancel_days_in_advance: Mapped[int | None] = mapped_column(Integer)
    refund_payment_automatically: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Notifications (dispatched by the notifications service)
    admin_notification_emails: Mapped[str | None] = mapped_column(Text)
    send_reminder_emails: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_hours_before: Mapped[int | None] = mapped_column(Integer)

    # Relationships
    schedule_rules: Mapped[list["ScheduleRule"]] = relationship(
        back_populates="calendar", cascade="all, delete-orphan", passive_deletes=True, lazy="raise"
    )
    time_slot_configurations: Mapped[list["TimeSlotConfiguration"]] = relationship(
        back_populates="calendar", cascade="all, delete-orphan", passive_deletes=True, lazy="raise"
    )
    blocked_periods: Mapped[list["BlockedPeriod"]] = relationship(
        back_populates="calendar", cascade="all, delete-orphan", passive_deletes=True, lazy="raise"
    )

    __table_args__ = (
        Index("ix_calendars_org", "organisation_id"),
        Index("ix_calendars_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Calendar {self.name} @ org {self.organisation_id}>"


class ScheduleRule(TimestampMixin, Base):
    __tablename__ = "schedule_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)  # None = indefinite
    action: Mapped[ScheduleAction] = mapped_column(
        Enum(ScheduleAction, name="schedule_action", values_callable=lambda e: [x.value for x in e]),
        nullable=False,
    )
    # Special hours: "open" opens the day at this time, "close" closes it at this time
    time_of_day: Mapped[time | None] = mapped_column(Time)
    reason: Mapped[str | None] = mapped_column(Text)
    order: Mapped[int] = mapped_column(Integer, nullable=False)

    calendar: Mapped["Calendar"] = relationship(back_populates="schedule_rules")

    __table_args__ = (Index("ix_schedule_rules_calendar", "calendar_id", "start_date"),)

    def covers(self, day: date) -> bool:
        return self.start_date <= day and (self.end_date is None or day <= self.end_date)

    def __repr__(self) -> str:
        return f"<ScheduleRule {self.action.value} {self.start_date}..{self.end_date} order={self.order}>"


class TimeSlotConfiguration(TimestampMixin, Base):
    __tablename__ = "time_slot_configurations"

    id: Mapped[int] = mapped_column(primary_key=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False)

    # Schedule
    days_of_week: Mapped[list] = mapped_column(JSONType, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    effective_date_start: Mapped[date] = mapped_column(Date, nullable=False)
    effective_date_end: Mapped[date | None] = mapped_column(Date)
    recurrence_weeks: Mapped[int] = mapped_column(default=1, nullable=False)

    # Capacity
    places_available: Mapped[int] = mapped_column(default=1, nullable=False)
    min_places_required: Mapped[int | None] = mapped_column(Integer)

    # Priority when two configurations claim the same time (higher wins)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    calendar: Mapped["Calendar"] = relationship(back_populates="time_slot_configurations")
    duration_options: Mapped[list["DurationOption"]] = relationship(
        back_populates="configuration",
        cascade="all, delete-orphan",
        order_by="DurationOption.order",
        lazy="selectin",
    )

    __table_args__ = (Index("ix_time_slot_configs_calendar", "calendar_id"),)

    def __repr__(self) -> str:
        return f"<TimeSlotConfiguration {self.start_time} days={self.days_of_week} calendar={self.calendar_id}>"


class DurationOption(TimestampMixin, Base):
    __tablename__ = "duration_options"

    id: Mapped[int] = mapped_column(primary_key=True)
    time_slot_configuration_id: Mapped[int] = mapped_column(
        ForeignKey("time_slot_configurations.id", ondelete="CASCADE"), nullable=False
    )
    duration_minutes: Mapped[int] = mapped_column(nullable=False)
    price_pence: Mapped[int] = mapped_column(default=0, nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    configuration: Mapped["TimeSlotConfiguration"] = relationship(back_populates="duration_options")

    __table_args__ = (Index("ix_duration_options_config", "time_slot_configuration_id"),)

    def __repr__(self) -> str:
        return f"<DurationOption {self.label} {self.duration_minutes}min {self.price_pence}p>"


class BlockedPeriod(TimestampMixin, Base):
    __tablename__ = "blocked_periods"

    id: Mapped[int] = mapped_column(primary_key=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False)
    block_type: Mapped[BlockType] = mapped_column(
        Enum(BlockType, name="block_type", values_callable=lambda e: [x.value for x in e]),
        nullable=False,
    )

    # date_range
    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)

    # time_segment (empty days_of_week = every day)
    days_of_week: Mapped[list | None] = mapped_column(JSONType)
    start_time: Mapped[time | None] = mapped_column(Time)
    end_time: Mapped[time | None] = mapped_column(Time)

    reason: Mapped[str | None] = mapped_column(Text)

    calendar: Mapped["Calendar"] = relationship(back_populates="blocked_periods")

    __table_args__ = (Index("ix_blocked_periods_calendar", "calendar_id"),)

    def __repr__(self) -> str:
        return f"<BlockedPeriod {self.block_type.value} calendar={self.calendar_id}>"
