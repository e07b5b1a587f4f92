"""Booking and booking history models.

A booking reserves places on one slot instance of a calendar. Cancelled
bookings are kept (status transition, never deleted) so the capacity ledger
and the audit trail stay consistent.
"""

import enum
from datetime import date, datetime, time

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from slotbook.models.base import Base, TimestampMixin, utcnow


class BookingStatus(enum.StrEnum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(enum.StrEnum):
    NOT_REQUIRED = "not_required"  # Free slot
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class HistoryAction(enum.StrEnum):
    CREATED = "created"
    CANCELLED = "cancelled"
    PAYMENT_STATUS_CHANGED = "payment_status_changed"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    NOTES_UPDATED = "notes_updated"


class Booking(TimestampMixin, Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(primary_key=True)
    booking_reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Which slot instance: (configuration, date, duration option)
    time_slot_configuration_id: Mapped[int] = mapped_column(
        ForeignKey("time_slot_configurations.id"), nullable=False
    )
    duration_option_id: Mapped[int] = mapped_column(ForeignKey("duration_options.id"), nullable=False)

    # When
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(nullable=False)
    places_booked: Mapped[int] = mapped_column(default=1, nullable=False)

    # Pricing (pence)
    price_per_place_pence: Mapped[int] = mapped_column(default=0, nullable=False)
    total_price_pence: Mapped[int] = mapped_column(default=0, nullable=False)

    # Status
    booking_status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=lambda e: [x.value for x in e]),
        default=BookingStatus.CONFIRMED,
        nullable=False,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=lambda e: [x.value for x in e]),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_method: Mapped[str | None] = mapped_column(String(50))
    payment_reference: Mapped[str | None] = mapped_column(String(100))  # e.g. Stripe PaymentIntent id

    # Client-supplied retry token
    idempotency_key: Mapped[str | None] = mapped_column(String(100))

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[int | None] = mapped_column(Integer)
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    refund_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    admin_notes: Mapped[str | None] = mapped_column(Text)
    booked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    history: Mapped[list["BookingHistory"]] = relationship(
        back_populates="booking", order_by="BookingHistory.id", lazy="raise"
    )

    __table_args__ = (
        Index("ix_bookings_calendar_date", "calendar_id", "booking_date"),
        Index("ix_bookings_slot", "time_slot_configuration_id", "booking_date"),
        Index("ix_bookings_user", "user_id", "booking_date"),
        Index("ix_bookings_status", "booking_status"),
        Index("ix_bookings_payment_status", "payment_status"),
        # A retried request with the same token must map to one booking
        Index("ix_bookings_idempotency", "calendar_id", "user_id", "idempotency_key", unique=True),
    )

    @property
    def is_active(self) -> bool:
        return self.booking_status == BookingStatus.CONFIRMED

    def __repr__(self) -> str:
        return f"<Booking {self.booking_reference} {self.booking_date} {self.start_time} x{self.places_booked}>"


class BookingHistory(Base):
    """Append-only audit row. One per state-changing action on a booking."""

    __tablename__ = "booking_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer)  # None = system (payment callbacks)
    action: Mapped[HistoryAction] = mapped_column(
        Enum(HistoryAction, name="history_action", values_callable=lambda e: [x.value for x in e]),
        nullable=False,
    )
    previous_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="history")

    __table_args__ = (Index("ix_booking_history_booking", "booking_id"),)

    def __repr__(self) -> str:
        return f"<BookingHistory {self.action.value} booking={self.booking_id}>"
