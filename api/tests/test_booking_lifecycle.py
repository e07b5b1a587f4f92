"""Booking lifecycle against a real database: ledger, concurrency, cancellation, refunds."""

import asyncio
from datetime import date, time, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import (
    ADMIN_ID,
    MEMBER_ID,
    NOW,
    OTHER_MEMBER_ID,
    SATURDAY,
    TODAY,
    WEDNESDAY,
    book,
    make_calendar,
    slot_id_for,
)
from slotbook.core.database import async_session_factory
from slotbook.core.errors import (
    BelowMinimumPlaces,
    CancellationWindowClosed,
    CapacityExceeded,
    StoreUnavailable,
    ValidationError,
)
from slotbook.models import BlockedPeriod, BlockType, Booking, BookingStatus, Calendar, HistoryAction, PaymentStatus
from slotbook.services.availability import AvailabilityMode, list_availability
from slotbook.services.bookings import (
    cancel_booking,
    list_history,
    record_payment,
    record_refund,
    refunds_awaiting_confirmation,
)
from slotbook.services.capacity import places_booked_for
from slotbook.services.slot_generator import format_slot_id
from slotbook.worker import stale_after


async def cancel(booking_id: int, actor_id: int = MEMBER_ID, enforce_policy: bool = True, today: date = TODAY):
    async with async_session_factory() as db:
        booking = await db.get(Booking, booking_id)
        calendar = await db.get(Calendar, booking.calendar_id)
        outcome = await cancel_booking(db, calendar, booking, "Plans changed", actor_id, enforce_policy, today)
        await db.commit()
        return outcome


async def ledger_count(config_id: int, day: date) -> int:
    async with async_session_factory() as db:
        return await places_booked_for(db, config_id, day)


async def active_places(config_id: int, day: date) -> int:
    async with async_session_factory() as db:
        result = await db.execute(
            select(func.coalesce(func.sum(Booking.places_booked), 0)).where(
                Booking.time_slot_configuration_id == config_id,
                Booking.booking_date == day,
                Booking.booking_status == BookingStatus.CONFIRMED,
            )
        )
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Creation and capacity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_booking_reserves_places_and_records_history(db):
    calendar, config = await make_calendar(db)

    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY), places=1)

    assert booking.booking_status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.PENDING
    assert booking.total_price_pence == 2000
    assert booking.start_time == time(10, 0)
    assert booking.end_time == time(11, 0)
    assert booking.booking_reference.startswith("BK-2030-")
    assert await ledger_count(config.id, WEDNESDAY) == 1

    async with async_session_factory() as session:
        history = await list_history(session, booking.id)
    assert [h.action for h in history] == [HistoryAction.CREATED]
    assert history[0].user_id == MEMBER_ID


@pytest.mark.asyncio
async def test_free_slot_needs_no_payment(db):
    calendar, config = await make_calendar(db, options=[("Drop in", 60, 0)])
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY))
    assert booking.payment_status == PaymentStatus.NOT_REQUIRED
    assert booking.total_price_pence == 0


@pytest.mark.asyncio
async def test_total_is_places_times_price(db):
    calendar, config = await make_calendar(db, places_available=10, options=[("Class", 45, 650)])
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY), places=3)
    assert booking.price_per_place_pence == 650
    assert booking.total_price_pence == 1950


@pytest.mark.asyncio
async def test_availability_reflects_ledger(db):
    calendar, config = await make_calendar(db)
    await book(calendar.id, slot_id_for(config, WEDNESDAY))

    async with async_session_factory() as session:
        cal = await session.get(Calendar, calendar.id)
        slots = await list_availability(session, cal, WEDNESDAY, WEDNESDAY, now=NOW)
    assert len(slots) == 1
    assert slots[0].places_booked == 1
    assert slots[0].places_remaining == 1


@pytest.mark.asyncio
async def test_long_query_clamped_to_advance_window(db):
    calendar, _ = await make_calendar(db, min_days_in_advance=2, max_days_in_advance=30)

    async with async_session_factory() as session:
        cal = await session.get(Calendar, calendar.id)
        slots = await list_availability(session, cal, TODAY, TODAY + timedelta(days=120), now=NOW)

    dates = [s.slot_date for s in slots]
    assert dates[0] == TODAY + timedelta(days=2)
    assert dates[-1] == TODAY + timedelta(days=30)
    assert len(dates) == 29


@pytest.mark.asyncio
async def test_full_slot_hidden_unless_listing_all(db):
    calendar, config = await make_calendar(db, places_available=1)
    await book(calendar.id, slot_id_for(config, WEDNESDAY))

    async with async_session_factory() as session:
        cal = await session.get(Calendar, calendar.id)
        available = await list_availability(session, cal, WEDNESDAY, WEDNESDAY, now=NOW)
        everything = await list_availability(session, cal, WEDNESDAY, WEDNESDAY, AvailabilityMode.ALL, now=NOW)
    assert available == []
    assert len(everything) == 1
    assert everything[0].is_full is True


@pytest.mark.asyncio
async def test_capacity_exceeded_writes_nothing(db):
    calendar, config = await make_calendar(db, places_available=2)
    slot_id = slot_id_for(config, WEDNESDAY)
    await book(calendar.id, slot_id, places=2)

    with pytest.raises(CapacityExceeded):
        await book(calendar.id, slot_id, places=1, user_id=OTHER_MEMBER_ID)

    assert await ledger_count(config.id, WEDNESDAY) == 2
    assert await active_places(config.id, WEDNESDAY) == 2


@pytest.mark.asyncio
async def test_duration_options_share_capacity(db):
    calendar, config = await make_calendar(db, places_available=1, options=[("1 hour", 60, 800), ("90 min", 90, 1200)])
    await book(calendar.id, slot_id_for(config, WEDNESDAY, 0))

    with pytest.raises(CapacityExceeded):
        await book(calendar.id, slot_id_for(config, WEDNESDAY, 1), user_id=OTHER_MEMBER_ID)


@pytest.mark.asyncio
async def test_minimum_places(db):
    calendar, config = await make_calendar(db, places_available=10, min_places_required=2)
    slot_id = slot_id_for(config, WEDNESDAY)

    with pytest.raises(BelowMinimumPlaces):
        await book(calendar.id, slot_id, places=1)
    with pytest.raises(ValidationError):
        await book(calendar.id, slot_id, places=0)

    booking = await book(calendar.id, slot_id, places=2)
    assert booking.places_booked == 2


@pytest.mark.asyncio
async def test_concurrent_requests_never_overbook(db):
    calendar, config = await make_calendar(db, places_available=1)
    slot_id = slot_id_for(config, WEDNESDAY)

    results = await asyncio.gather(
        book(calendar.id, slot_id, user_id=MEMBER_ID),
        book(calendar.id, slot_id, user_id=OTHER_MEMBER_ID),
        return_exceptions=True,
    )

    booked = [r for r in results if isinstance(r, Booking)]
    rejected = [r for r in results if isinstance(r, CapacityExceeded)]
    assert len(booked) == 1
    assert len(rejected) == 1
    assert await ledger_count(config.id, WEDNESDAY) == 1
    assert await active_places(config.id, WEDNESDAY) == 1


@pytest.mark.asyncio
async def test_concurrent_requests_fill_exactly_to_capacity(db):
    calendar, config = await make_calendar(db, places_available=3)
    slot_id = slot_id_for(config, WEDNESDAY)

    results = await asyncio.gather(
        *(book(calendar.id, slot_id, user_id=200 + i) for i in range(6)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, Booking) for r in results) == 3
    assert sum(isinstance(r, CapacityExceeded) for r in results) == 3
    assert await ledger_count(config.id, WEDNESDAY) == 3


# ---------------------------------------------------------------------------
# Slot resolution at booking time
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_started_slot_cannot_be_booked(db):
    calendar, config = await make_calendar(db, start_time=time(7, 0))
    with pytest.raises(ValidationError) as exc:
        await book(calendar.id, slot_id_for(config, TODAY))
    assert exc.value.rule == "past_slot"


@pytest.mark.asyncio
async def test_blocked_slot_cannot_be_booked(db):
    calendar, config = await make_calendar(db)
    db.add(BlockedPeriod(calendar_id=calendar.id, block_type=BlockType.DATE_RANGE, start_date=WEDNESDAY))
    await db.commit()

    with pytest.raises(ValidationError) as exc:
        await book(calendar.id, slot_id_for(config, WEDNESDAY))
    assert exc.value.rule == "slot_unavailable"


@pytest.mark.asyncio
async def test_slot_beyond_advance_window_cannot_be_booked(db):
    calendar, config = await make_calendar(db, max_days_in_advance=30)
    with pytest.raises(ValidationError):
        await book(calendar.id, slot_id_for(config, TODAY + timedelta(days=31)))


@pytest.mark.asyncio
async def test_unknown_duration_option_rejected(db):
    calendar, config = await make_calendar(db)
    with pytest.raises(ValidationError):
        await book(calendar.id, format_slot_id(config.id, WEDNESDAY, 999))


@pytest.mark.asyncio
async def test_terms_must_be_accepted(db):
    calendar, config = await make_calendar(
        db, use_terms_and_conditions=True, terms_and_conditions="Play nicely."
    )
    slot_id = slot_id_for(config, WEDNESDAY)

    with pytest.raises(ValidationError) as exc:
        await book(calendar.id, slot_id)
    assert exc.value.rule == "terms_not_accepted"

    booking = await book(calendar.id, slot_id, terms_accepted=True)
    assert booking.is_active


@pytest.mark.asyncio
async def test_payment_method_must_be_supported(db):
    calendar, config = await make_calendar(db, supported_payment_methods=["card"])
    with pytest.raises(ValidationError):
        await book(calendar.id, slot_id_for(config, WEDNESDAY), payment_method="cheque")
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY), payment_method="card")
    assert booking.payment_method == "card"


# ---------------------------------------------------------------------------
# Idempotent retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_with_same_key_returns_same_booking(db):
    calendar, config = await make_calendar(db)
    slot_id = slot_id_for(config, WEDNESDAY)

    first = await book(calendar.id, slot_id, idempotency_key="req-1")
    second = await book(calendar.id, slot_id, idempotency_key="req-1")

    assert second.id == first.id
    assert await ledger_count(config.id, WEDNESDAY) == 1


@pytest.mark.asyncio
async def test_reused_key_for_different_request_rejected(db):
    calendar, config = await make_calendar(db)
    slot_id = slot_id_for(config, WEDNESDAY)
    await book(calendar.id, slot_id, idempotency_key="req-1")

    with pytest.raises(ValidationError) as exc:
        await book(calendar.id, slot_id, places=2, idempotency_key="req-1")
    assert exc.value.rule == "idempotency_key_reused"


@pytest.mark.asyncio
async def test_store_failure_then_retry_books_once(db):
    calendar, config = await make_calendar(db)
    slot_id = slot_id_for(config, WEDNESDAY)
    failure = OperationalError("UPDATE slot_ledger", {}, Exception("connection lost"))

    with patch("slotbook.services.bookings._create", AsyncMock(side_effect=failure)):
        with pytest.raises(StoreUnavailable):
            await book(calendar.id, slot_id, idempotency_key="req-9")

    assert await ledger_count(config.id, WEDNESDAY) == 0

    booking = await book(calendar.id, slot_id, idempotency_key="req-9")
    again = await book(calendar.id, slot_id, idempotency_key="req-9")
    assert again.id == booking.id
    assert await ledger_count(config.id, WEDNESDAY) == 1
    assert await active_places(config.id, WEDNESDAY) == 1


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancellation_window(db):
    calendar, config = await make_calendar(db, allow_cancellations=True, cancel_days_in_advance=3)
    too_soon = await book(calendar.id, slot_id_for(config, WEDNESDAY))  # today + 2
    in_time = await book(calendar.id, slot_id_for(config, SATURDAY))  # today + 5

    with pytest.raises(CancellationWindowClosed):
        await cancel(too_soon.id)

    outcome = await cancel(in_time.id)
    assert outcome.booking.booking_status == BookingStatus.CANCELLED
    assert outcome.booking.cancelled_by == MEMBER_ID
    assert outcome.booking.cancellation_reason == "Plans changed"
    assert outcome.refund is None
    assert await ledger_count(config.id, SATURDAY) == 0
    assert await ledger_count(config.id, WEDNESDAY) == 1


@pytest.mark.asyncio
async def test_cancellations_disabled(db):
    calendar, config = await make_calendar(db, allow_cancellations=False)
    booking = await book(calendar.id, slot_id_for(config, SATURDAY))
    with pytest.raises(CancellationWindowClosed) as exc:
        await cancel(booking.id)
    assert exc.value.rule == "cancellations_disabled"


@pytest.mark.asyncio
async def test_admin_cancel_bypasses_policy(db):
    calendar, config = await make_calendar(db, allow_cancellations=False)
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY))

    outcome = await cancel(booking.id, actor_id=ADMIN_ID, enforce_policy=False)
    assert outcome.booking.booking_status == BookingStatus.CANCELLED
    assert outcome.booking.cancelled_by == ADMIN_ID


@pytest.mark.asyncio
async def test_cancel_twice_rejected_and_released_once(db):
    calendar, config = await make_calendar(db, places_available=2)
    slot_id = slot_id_for(config, WEDNESDAY)
    first = await book(calendar.id, slot_id)
    await book(calendar.id, slot_id, user_id=OTHER_MEMBER_ID)

    await cancel(first.id, enforce_policy=False)
    with pytest.raises(ValidationError):
        await cancel(first.id, enforce_policy=False)

    assert await ledger_count(config.id, WEDNESDAY) == 1


@pytest.mark.asyncio
async def test_cancelled_places_can_be_rebooked(db):
    calendar, config = await make_calendar(db, places_available=1)
    slot_id = slot_id_for(config, WEDNESDAY)
    booking = await book(calendar.id, slot_id)
    await cancel(booking.id, enforce_policy=False)

    rebooked = await book(calendar.id, slot_id, user_id=OTHER_MEMBER_ID)
    assert rebooked.is_active
    assert await ledger_count(config.id, WEDNESDAY) == 1


@pytest.mark.asyncio
async def test_history_is_append_only_sequence(db):
    calendar, config = await make_calendar(db)
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY))
    await cancel(booking.id, enforce_policy=False)

    async with async_session_factory() as session:
        history = await list_history(session, booking.id)
    assert [h.action for h in history] == [HistoryAction.CREATED, HistoryAction.CANCELLED]
    assert history[1].previous_value == "confirmed"
    assert history[1].new_value == "cancelled"


# ---------------------------------------------------------------------------
# Payments and refunds
# ---------------------------------------------------------------------------


async def _paid_booking(calendar_id: int, slot_id: str) -> Booking:
    booking = await book(calendar_id, slot_id)
    async with async_session_factory() as session:
        loaded = await session.get(Booking, booking.id)
        await record_payment(session, loaded, "pi_123")
        await session.commit()
        return loaded


@pytest.mark.asyncio
async def test_cancelling_paid_booking_requests_refund(db):
    calendar, config = await make_calendar(db, refund_payment_automatically=True)
    booking = await _paid_booking(calendar.id, slot_id_for(config, WEDNESDAY))
    assert booking.payment_status == PaymentStatus.PAID

    outcome = await cancel(booking.id, enforce_policy=False)

    assert outcome.refund is not None
    assert outcome.refund.booking_id == booking.id
    assert outcome.refund.amount_pence == 2000
    assert outcome.refund.payment_reference == "pi_123"
    # Not refunded until the provider confirms
    assert outcome.booking.refund_processed is False

    async with async_session_factory() as session:
        pending = await refunds_awaiting_confirmation(session, stale_after(-5))
    assert [r.booking_id for r in pending] == [booking.id]


@pytest.mark.asyncio
async def test_unpaid_booking_gets_no_refund(db):
    calendar, config = await make_calendar(db, refund_payment_automatically=True)
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY))
    outcome = await cancel(booking.id, enforce_policy=False)
    assert outcome.refund is None


@pytest.mark.asyncio
async def test_refund_confirmation_is_idempotent(db):
    calendar, config = await make_calendar(db, refund_payment_automatically=True)
    booking = await _paid_booking(calendar.id, slot_id_for(config, WEDNESDAY))
    await cancel(booking.id, enforce_policy=False)

    for _ in range(2):
        async with async_session_factory() as session:
            loaded = await session.get(Booking, booking.id)
            await record_refund(session, loaded)
            await session.commit()

    async with async_session_factory() as session:
        loaded = await session.get(Booking, booking.id)
        history = await list_history(session, booking.id)
        pending = await refunds_awaiting_confirmation(session, stale_after(-5))

    assert loaded.refund_processed is True
    assert loaded.refunded_at is not None
    assert loaded.payment_status == PaymentStatus.REFUNDED
    assert [h.action for h in history] == [
        HistoryAction.CREATED,
        HistoryAction.PAYMENT_STATUS_CHANGED,
        HistoryAction.CANCELLED,
        HistoryAction.REFUND_REQUESTED,
        HistoryAction.REFUNDED,
    ]
    assert pending == []


@pytest.mark.asyncio
async def test_repeated_payment_report_is_noop(db):
    calendar, config = await make_calendar(db)
    booking = await _paid_booking(calendar.id, slot_id_for(config, WEDNESDAY))

    async with async_session_factory() as session:
        loaded = await session.get(Booking, booking.id)
        assert await record_payment(session, loaded, "pi_123") is None
        await session.commit()
        history = await list_history(session, booking.id)
    assert [h.action for h in history] == [HistoryAction.CREATED, HistoryAction.PAYMENT_STATUS_CHANGED]


@pytest.mark.asyncio
async def test_payment_after_cancellation_requests_refund(db):
    calendar, config = await make_calendar(db, refund_payment_automatically=True)
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY))
    outcome = await cancel(booking.id, enforce_policy=False)
    assert outcome.refund is None

    async with async_session_factory() as session:
        loaded = await session.get(Booking, booking.id)
        outcome = await record_payment(session, loaded, "pi_late")
        await session.commit()

    assert outcome.booking.booking_status == BookingStatus.CANCELLED
    assert outcome.booking.payment_status == PaymentStatus.PAID
    assert outcome.refund.booking_id == booking.id
    assert outcome.refund.amount_pence == 2000
    assert outcome.refund.payment_reference == "pi_late"

    async with async_session_factory() as session:
        history = await list_history(session, booking.id)
        pending = await refunds_awaiting_confirmation(session, stale_after(-5))
    assert [h.action for h in history][-2:] == [HistoryAction.PAYMENT_STATUS_CHANGED, HistoryAction.REFUND_REQUESTED]
    assert [r.booking_id for r in pending] == [booking.id]


@pytest.mark.asyncio
async def test_payment_after_cancellation_without_auto_refund(db):
    calendar, config = await make_calendar(db, refund_payment_automatically=False)
    booking = await book(calendar.id, slot_id_for(config, WEDNESDAY))
    await cancel(booking.id, enforce_policy=False)

    async with async_session_factory() as session:
        loaded = await session.get(Booking, booking.id)
        outcome = await record_payment(session, loaded, "pi_late")
        await session.commit()
    assert outcome.refund is None
