"""Booking lifecycle: create, cancel, and apply payment/refund reports.

States are confirmed -> cancelled. A booking only becomes confirmed through a
successful ledger reservation, and the reservation, the booking row and its
"created" history entry are written in the same transaction. Every state
change appends a BookingHistory row; history is never updated or deleted.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.database import store_guard
from slotbook.core.errors import CancellationWindowClosed, NotFound, ValidationError
from slotbook.models.base import utcnow
from slotbook.models.booking import Booking, BookingHistory, BookingStatus, HistoryAction, PaymentStatus
from slotbook.models.calendar import Calendar, TimeSlotConfiguration
from slotbook.services.availability import Slot, resolve_slot
from slotbook.services.booking_rules import local_today, validate_cancellation
from slotbook.services.capacity import release, reserve
from slotbook.services.slot_generator import format_slot_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundRequest:
    """Outbound message for the payment collaborator."""

    booking_id: int
    amount_pence: int
    payment_reference: str | None


@dataclass
class BookingOutcome:
    booking: Booking
    refund: RefundRequest | None = None


def generate_booking_reference(today: date) -> str:
    return f"BK-{today.year}-{secrets.token_hex(4).upper()}"


def booking_slot_id(booking: Booking) -> str:
    return format_slot_id(booking.time_slot_configuration_id, booking.booking_date, booking.duration_option_id)


async def append_history(
    db: AsyncSession,
    booking: Booking,
    action: HistoryAction,
    actor_id: int | None,
    previous_value: str | None = None,
    new_value: str | None = None,
    notes: str | None = None,
) -> BookingHistory:
    entry = BookingHistory(
        booking_id=booking.id,
        user_id=actor_id,
        action=action,
        previous_value=previous_value,
        new_value=new_value,
        notes=notes,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_history(db: AsyncSession, booking_id: int) -> list[BookingHistory]:
    result = await db.execute(
        select(BookingHistory).where(BookingHistory.booking_id == booking_id).order_by(BookingHistory.id)
    )
    return list(result.scalars().all())


async def find_by_idempotency_key(db: AsyncSession, calendar_id: int, user_id: int, key: str) -> Booking | None:
    result = await db.execute(
        select(Booking).where(
            Booking.calendar_id == calendar_id,
            Booking.user_id == user_id,
            Booking.idempotency_key == key,
        )
    )
    return result.scalar_one_or_none()


def _replay(existing: Booking, slot_id: str, places_requested: int) -> Booking:
    """Return the booking a retried request already created, if it is the same request."""
    if booking_slot_id(existing) != slot_id or existing.places_booked != places_requested:
        raise ValidationError(
            "This idempotency key was already used for a different booking request.",
            rule="idempotency_key_reused",
        )
    logger.info("Replayed booking %s for idempotency key %s", existing.booking_reference, existing.idempotency_key)
    return existing


def _check_request(calendar: Calendar, payment_method: str | None, terms_accepted: bool) -> None:
    if calendar.use_terms_and_conditions and not terms_accepted:
        raise ValidationError("The calendar's terms and conditions must be accepted.", rule="terms_not_accepted")
    allowed = calendar.supported_payment_methods or []
    if payment_method is not None and allowed and payment_method not in allowed:
        raise ValidationError(
            f"Payment method {payment_method!r} is not accepted. Choose from: {', '.join(allowed)}.",
            rule="payment_method",
        )


async def _create(
    db: AsyncSession,
    calendar: Calendar,
    slot: Slot,
    places_requested: int,
    user_id: int,
    idempotency_key: str | None,
    payment_method: str | None,
    today: date,
) -> Booking:
    configuration = await db.get(TimeSlotConfiguration, slot.configuration_id)
    await reserve(db, configuration, slot.slot_date, places_requested)

    total_pence = slot.price_pence * places_requested
    booking = Booking(
        booking_reference=generate_booking_reference(today),
        calendar_id=calendar.id,
        user_id=user_id,
        time_slot_configuration_id=slot.configuration_id,
        duration_option_id=slot.instance.duration_option_id,
        booking_date=slot.slot_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        duration_minutes=slot.duration_minutes,
        places_booked=places_requested,
        price_per_place_pence=slot.price_pence,
        total_price_pence=total_pence,
        booking_status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.NOT_REQUIRED if total_pence == 0 else PaymentStatus.PENDING,
        payment_method=payment_method,
        idempotency_key=idempotency_key,
    )
    db.add(booking)
    await db.flush()

    await append_history(
        db,
        booking,
        HistoryAction.CREATED,
        user_id,
        new_value=BookingStatus.CONFIRMED.value,
        notes=f"{places_requested} place(s) on slot {slot.slot_id}",
    )
    logger.info(
        "Booking %s created: calendar=%s slot=%s places=%s user=%s",
        booking.booking_reference,
        calendar.id,
        slot.slot_id,
        places_requested,
        user_id,
    )
    return booking


async def create_booking(
    db: AsyncSession,
    calendar: Calendar,
    slot_id: str,
    places_requested: int,
    user_id: int,
    idempotency_key: str | None = None,
    payment_method: str | None = None,
    terms_accepted: bool = False,
    now: datetime | None = None,
) -> Booking:
    """Book ``places_requested`` places on a slot.

    The slot is re-resolved against the current schedule and blocks before
    the ledger reservation, since configuration can change between listing
    and booking. Raises ValidationError, CapacityExceeded or StoreUnavailable;
    on any error nothing is written. Retrying with the same idempotency key
    returns the booking the first attempt created instead of booking twice.
    """
    calendar_id = calendar.id
    if idempotency_key:
        existing = await find_by_idempotency_key(db, calendar_id, user_id, idempotency_key)
        if existing is not None:
            return _replay(existing, slot_id, places_requested)

    _check_request(calendar, payment_method, terms_accepted)

    try:
        async with store_guard():
            slot = await resolve_slot(db, calendar, slot_id, now)
            today = now.date() if now else local_today()
            return await _create(
                db, calendar, slot, places_requested, user_id, idempotency_key, payment_method, today
            )
    except IntegrityError:
        # A concurrent request with the same idempotency key committed first
        if not idempotency_key:
            raise
        await db.rollback()
        existing = await find_by_idempotency_key(db, calendar_id, user_id, idempotency_key)
        if existing is None:
            raise
        return _replay(existing, slot_id, places_requested)


async def cancel_booking(
    db: AsyncSession,
    calendar: Calendar,
    booking: Booking,
    reason: str | None,
    actor_id: int,
    enforce_policy: bool = True,
    today: date | None = None,
) -> BookingOutcome:
    """Cancel a confirmed booking and give its places back to the ledger.

    Self-service cancellations (enforce_policy=True) must satisfy the
    calendar's cancellation policy; administrators bypass it. When the
    calendar refunds automatically and the booking was paid, the returned
    outcome carries a RefundRequest for the caller to dispatch after commit.
    """
    if not booking.is_active:
        raise ValidationError("Booking is already cancelled.", rule="already_cancelled")

    if enforce_policy:
        violation = validate_cancellation(calendar, booking, today or local_today())
        if violation:
            raise CancellationWindowClosed(violation.message, rule=violation.rule)

    async with store_guard():
        now = utcnow()
        # Conditional transition so two concurrent cancellations release once
        result = await db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.booking_status == BookingStatus.CONFIRMED)
            .values(
                booking_status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=actor_id,
                cancellation_reason=reason,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            raise ValidationError("Booking is already cancelled.", rule="already_cancelled")

        await release(db, booking.time_slot_configuration_id, booking.booking_date, booking.places_booked)
        await append_history(
            db,
            booking,
            HistoryAction.CANCELLED,
            actor_id,
            previous_value=BookingStatus.CONFIRMED.value,
            new_value=BookingStatus.CANCELLED.value,
            notes=reason,
        )

        refund = None
        if _refund_due(calendar, booking):
            refund = await _request_refund(db, booking, actor_id, "Automatic refund on cancellation")

    logger.info("Booking %s cancelled by user %s", booking.booking_reference, actor_id)
    return BookingOutcome(booking=booking, refund=refund)


def _refund_due(calendar: Calendar, booking: Booking) -> bool:
    return (
        calendar.refund_payment_automatically
        and booking.payment_status == PaymentStatus.PAID
        and booking.total_price_pence > 0
    )


async def _request_refund(db: AsyncSession, booking: Booking, actor_id: int | None, notes: str) -> RefundRequest:
    await append_history(
        db,
        booking,
        HistoryAction.REFUND_REQUESTED,
        actor_id,
        new_value=str(booking.total_price_pence),
        notes=notes,
    )
    return RefundRequest(
        booking_id=booking.id,
        amount_pence=booking.total_price_pence,
        payment_reference=booking.payment_reference,
    )


async def find_booking_for_payment(
    db: AsyncSession, booking_id: int | None, payment_reference: str | None
) -> Booking | None:
    """Locate the booking a payment provider event refers to."""
    if booking_id is not None:
        booking = await db.get(Booking, booking_id)
        if booking is not None:
            return booking
    if payment_reference:
        result = await db.execute(select(Booking).where(Booking.payment_reference == payment_reference))
        return result.scalar_one_or_none()
    return None


async def record_payment(
    db: AsyncSession, booking: Booking, payment_reference: str | None = None
) -> BookingOutcome | None:
    """Apply a confirmed payment. Repeated reports are no-ops and return None.

    A payment can settle after its booking was cancelled. If the calendar
    refunds automatically, the returned outcome then carries a RefundRequest
    for the caller to dispatch after commit.
    """
    if booking.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return None

    previous = booking.payment_status
    booking.payment_status = PaymentStatus.PAID
    if payment_reference:
        booking.payment_reference = payment_reference
    await append_history(
        db,
        booking,
        HistoryAction.PAYMENT_STATUS_CHANGED,
        None,
        previous_value=previous.value,
        new_value=PaymentStatus.PAID.value,
    )
    logger.info("Booking %s marked paid", booking.booking_reference)

    refund = None
    if booking.booking_status == BookingStatus.CANCELLED:
        calendar = await db.get(Calendar, booking.calendar_id)
        if calendar is not None and _refund_due(calendar, booking):
            refund = await _request_refund(db, booking, None, "Automatic refund of payment settled after cancellation")
    return BookingOutcome(booking=booking, refund=refund)


async def record_refund(db: AsyncSession, booking: Booking, refunded_at: datetime | None = None) -> Booking:
    """Apply a refund the payment provider has confirmed. Repeated reports are no-ops."""
    if booking.refund_processed:
        return booking

    previous = booking.payment_status
    booking.refund_processed = True
    booking.refunded_at = refunded_at or utcnow()
    booking.payment_status = PaymentStatus.REFUNDED
    await append_history(
        db,
        booking,
        HistoryAction.REFUNDED,
        None,
        previous_value=previous.value,
        new_value=PaymentStatus.REFUNDED.value,
    )
    logger.info("Booking %s refund confirmed", booking.booking_reference)
    return booking


async def update_admin_notes(db: AsyncSession, booking: Booking, notes: str | None, actor_id: int) -> Booking:
    previous = booking.admin_notes
    booking.admin_notes = notes
    await append_history(db, booking, HistoryAction.NOTES_UPDATED, actor_id, previous_value=previous, new_value=notes)
    return booking


async def refunds_awaiting_confirmation(db: AsyncSession, requested_before: datetime) -> list[RefundRequest]:
    """Refunds requested before ``requested_before`` that the provider has not confirmed yet.

    Used to re-send refund requests whose first delivery may have been lost.
    """
    requested = exists().where(
        and_(
            BookingHistory.booking_id == Booking.id,
            BookingHistory.action == HistoryAction.REFUND_REQUESTED,
            BookingHistory.created_at < requested_before,
        )
    )
    result = await db.execute(
        select(Booking).where(
            Booking.booking_status == BookingStatus.CANCELLED,
            Booking.refund_processed.is_(False),
            requested,
        )
    )
    return [
        RefundRequest(booking_id=b.id, amount_pence=b.total_price_pence, payment_reference=b.payment_reference)
        for b in result.scalars().all()
    ]


async def get_booking(db: AsyncSession, booking_id: int, organisation_id: int) -> tuple[Booking, Calendar]:
    """Load a booking and its calendar, scoped to the caller's organisation."""
    result = await db.execute(
        select(Booking, Calendar)
        .join(Calendar, Calendar.id == Booking.calendar_id)
        .where(Booking.id == booking_id, Calendar.organisation_id == organisation_id)
    )
    row = result.one_or_none()
    if row is None:
        raise NotFound("Booking not found.")
    return row[0], row[1]
