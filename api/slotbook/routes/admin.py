"""Organisation admin routes: calendar configuration and booking management.

Every route requires the caller to administer their organisation, and every
lookup is scoped to that organisation.
"""

import asyncio
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.database import get_db
from slotbook.core.dependencies import Principal, require_org_admin
from slotbook.models.booking import Booking, BookingStatus, PaymentStatus
from slotbook.schemas import (
    AdminBookingOut,
    AdminNotesUpdate,
    BlockedPeriodIn,
    BlockedPeriodOut,
    BlockedPeriodUpdate,
    BookingCancel,
    CalendarIn,
    CalendarOut,
    CalendarUpdate,
    ScheduleRuleIn,
    ScheduleRuleOut,
    ScheduleRuleUpdate,
    TimeSlotConfigurationIn,
    TimeSlotConfigurationOut,
    TimeSlotConfigurationUpdate,
)
from slotbook.services import calendars as svc
from slotbook.services.bookings import cancel_booking, get_booking, update_admin_notes
from slotbook.worker import dispatch_refund

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


@router.get("/calendars", response_model=list[CalendarOut])
async def list_calendars(
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    return await svc.list_calendars(db, admin.organisation_id)


@router.post("/calendars", response_model=CalendarOut, status_code=status.HTTP_201_CREATED)
async def create_calendar(
    body: CalendarIn,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    return await svc.create_calendar(db, admin.organisation_id, body.model_dump())


@router.get("/calendars/{calendar_id}", response_model=CalendarOut)
async def get_calendar(
    calendar_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    return await svc.get_calendar(db, calendar_id, admin.organisation_id)


@router.patch("/calendars/{calendar_id}", response_model=CalendarOut)
async def update_calendar(
    calendar_id: int,
    body: CalendarUpdate,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.update_calendar(db, calendar, body.model_dump(exclude_unset=True))


@router.delete("/calendars/{calendar_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_calendar(
    calendar_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    await svc.delete_calendar(db, calendar)


# ---------------------------------------------------------------------------
# Schedule rules
# ---------------------------------------------------------------------------


@router.get("/calendars/{calendar_id}/schedule-rules", response_model=list[ScheduleRuleOut])
async def list_schedule_rules(
    calendar_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.list_rules(db, calendar.id)


@router.post(
    "/calendars/{calendar_id}/schedule-rules",
    response_model=ScheduleRuleOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_schedule_rule(
    calendar_id: int,
    body: ScheduleRuleIn,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.create_rule(db, calendar, body.model_dump())


@router.patch("/calendars/{calendar_id}/schedule-rules/{rule_id}", response_model=ScheduleRuleOut)
async def update_schedule_rule(
    calendar_id: int,
    rule_id: int,
    body: ScheduleRuleUpdate,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    rule = await svc.get_rule(db, calendar, rule_id)
    return await svc.update_rule(db, rule, body.model_dump(exclude_unset=True))


@router.delete("/calendars/{calendar_id}/schedule-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule_rule(
    calendar_id: int,
    rule_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    rule = await svc.get_rule(db, calendar, rule_id)
    await svc.delete_rule(db, rule)


# ---------------------------------------------------------------------------
# Time slot configurations
# ---------------------------------------------------------------------------


@router.get("/calendars/{calendar_id}/time-slots", response_model=list[TimeSlotConfigurationOut])
async def list_time_slots(
    calendar_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.list_configurations(db, calendar.id)


@router.post(
    "/calendars/{calendar_id}/time-slots",
    response_model=TimeSlotConfigurationOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_time_slot(
    calendar_id: int,
    body: TimeSlotConfigurationIn,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.create_configuration(db, calendar, body.model_dump())


@router.patch("/calendars/{calendar_id}/time-slots/{configuration_id}", response_model=TimeSlotConfigurationOut)
async def update_time_slot(
    calendar_id: int,
    configuration_id: int,
    body: TimeSlotConfigurationUpdate,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    config = await svc.get_configuration(db, calendar, configuration_id)
    return await svc.update_configuration(db, config, body.model_dump(exclude_unset=True))


@router.delete("/calendars/{calendar_id}/time-slots/{configuration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_time_slot(
    calendar_id: int,
    configuration_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    config = await svc.get_configuration(db, calendar, configuration_id)
    await svc.delete_configuration(db, config)


# ---------------------------------------------------------------------------
# Blocked periods
# ---------------------------------------------------------------------------


@router.get("/calendars/{calendar_id}/blocked-periods", response_model=list[BlockedPeriodOut])
async def list_blocked_periods(
    calendar_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.list_blocks(db, calendar.id)


@router.post(
    "/calendars/{calendar_id}/blocked-periods",
    response_model=BlockedPeriodOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_blocked_period(
    calendar_id: int,
    body: BlockedPeriodIn,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    return await svc.create_block(db, calendar, body.model_dump())


@router.patch("/calendars/{calendar_id}/blocked-periods/{block_id}", response_model=BlockedPeriodOut)
async def update_blocked_period(
    calendar_id: int,
    block_id: int,
    body: BlockedPeriodUpdate,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    block = await svc.get_block(db, calendar, block_id)
    return await svc.update_block(db, block, body.model_dump(exclude_unset=True))


@router.delete("/calendars/{calendar_id}/blocked-periods/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_blocked_period(
    calendar_id: int,
    block_id: int,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)
    block = await svc.get_block(db, calendar, block_id)
    await svc.delete_block(db, block)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


@router.get("/calendars/{calendar_id}/bookings", response_model=list[AdminBookingOut])
async def list_calendar_bookings(
    calendar_id: int,
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    booking_status: BookingStatus | None = Query(None),
    payment_status: PaymentStatus | None = Query(None),
    user_id: int | None = Query(None),
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    calendar = await svc.get_calendar(db, calendar_id, admin.organisation_id)

    query = select(Booking).where(Booking.calendar_id == calendar.id)
    if date_from is not None:
        query = query.where(Booking.booking_date >= date_from)
    if date_to is not None:
        query = query.where(Booking.booking_date <= date_to)
    if booking_status is not None:
        query = query.where(Booking.booking_status == booking_status)
    if payment_status is not None:
        query = query.where(Booking.payment_status == payment_status)
    if user_id is not None:
        query = query.where(Booking.user_id == user_id)

    result = await db.execute(query.order_by(Booking.booking_date, Booking.start_time).limit(500))
    return result.scalars().all()


@router.post("/bookings/{booking_id}/cancel", response_model=AdminBookingOut)
async def admin_cancel_booking(
    booking_id: int,
    body: BookingCancel,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    """Cancel on the organisation's behalf. The calendar's cancellation window does not apply."""
    booking, calendar = await get_booking(db, booking_id, admin.organisation_id)
    outcome = await cancel_booking(db, calendar, booking, body.reason, admin.user_id, enforce_policy=False)

    await db.commit()
    if outcome.refund:
        await asyncio.to_thread(dispatch_refund, outcome.refund)
    return outcome.booking


@router.patch("/bookings/{booking_id}/notes", response_model=AdminBookingOut)
async def update_booking_notes(
    booking_id: int,
    body: AdminNotesUpdate,
    admin: Principal = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
):
    booking, _ = await get_booking(db, booking_id, admin.organisation_id)
    return await update_admin_notes(db, booking, body.admin_notes, admin.user_id)
