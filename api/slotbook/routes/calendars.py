"""Member-facing calendar routes: availability and booking."""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.database import get_db
from slotbook.core.dependencies import Principal, get_principal
from slotbook.schemas import BookingCreate, BookingOut, SlotOut
from slotbook.services.availability import AvailabilityMode, list_availability
from slotbook.services.bookings import create_booking
from slotbook.services.calendars import get_calendar

router = APIRouter(prefix="/calendars", tags=["calendars"])


@router.get("/{calendar_id}/availability", response_model=list[SlotOut])
async def get_availability(
    calendar_id: int,
    date_from: date = Query(..., description="First date, YYYY-MM-DD"),
    date_to: date = Query(..., description="Last date (inclusive), YYYY-MM-DD"),
    mode: AvailabilityMode = Query(AvailabilityMode.AVAILABLE_ONLY),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    if mode == AvailabilityMode.ALL and not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organisation admin access required")

    calendar = await get_calendar(db, calendar_id, principal.organisation_id)
    slots = await list_availability(db, calendar, date_from, date_to, mode)
    return [SlotOut.from_slot(s) for s in slots]


@router.post("/{calendar_id}/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def book_slot(
    calendar_id: int,
    body: BookingCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    calendar = await get_calendar(db, calendar_id, principal.organisation_id)
    return await create_booking(
        db,
        calendar,
        slot_id=body.slot_id,
        places_requested=body.places_requested,
        user_id=principal.user_id,
        idempotency_key=body.idempotency_key,
        payment_method=body.payment_method,
        terms_accepted=body.terms_accepted,
    )
