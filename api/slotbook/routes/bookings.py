"""Booking routes for the booking's owner: list, view, cancel, history."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.database import get_db
from slotbook.core.dependencies import Principal, get_principal
from slotbook.models.booking import Booking
from slotbook.models.calendar import Calendar
from slotbook.schemas import BookingCancel, BookingHistoryOut, BookingOut
from slotbook.services.bookings import cancel_booking, get_booking, list_history
from slotbook.worker import dispatch_refund

router = APIRouter(prefix="/bookings", tags=["bookings"])


async def _own_booking(db: AsyncSession, booking_id: int, principal: Principal) -> tuple[Booking, Calendar]:
    booking, calendar = await get_booking(db, booking_id, principal.organisation_id)
    if booking.user_id != principal.user_id and not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking, calendar


@router.get("", response_model=list[BookingOut])
async def list_my_bookings(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Booking)
        .join(Calendar, Calendar.id == Booking.calendar_id)
        .where(Booking.user_id == principal.user_id, Calendar.organisation_id == principal.organisation_id)
        .order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        .limit(50)
    )
    return result.scalars().all()


@router.get("/{booking_id}", response_model=BookingOut)
async def get_my_booking(
    booking_id: int,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    booking, _ = await _own_booking(db, booking_id, principal)
    return booking


@router.post("/{booking_id}/cancel", response_model=BookingOut)
async def cancel_my_booking(
    booking_id: int,
    body: BookingCancel,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    booking, calendar = await _own_booking(db, booking_id, principal)
    outcome = await cancel_booking(db, calendar, booking, body.reason, principal.user_id)

    # The refund must only leave once the cancellation is durable
    await db.commit()
    if outcome.refund:
        await asyncio.to_thread(dispatch_refund, outcome.refund)
    return outcome.booking


@router.get("/{booking_id}/history", response_model=list[BookingHistoryOut])
async def get_booking_history(
    booking_id: int,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    booking, _ = await _own_booking(db, booking_id, principal)
    return await list_history(db, booking.id)
