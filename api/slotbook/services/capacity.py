"""Capacity ledger: places booked vs places available per slot instance.

The single serialisation point of the engine. Every change to
SlotLedger.places_booked is one conditional UPDATE, so concurrent requests
on any number of replicas cannot over-book: the row lock taken by the
UPDATE is held until the surrounding transaction commits, and a competing
UPDATE re-evaluates its WHERE clause against the committed value.
"""

import logging
from datetime import date

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.database import dialect_name
from slotbook.core.errors import BelowMinimumPlaces, CapacityExceeded, ValidationError
from slotbook.models.base import utcnow
from slotbook.models.calendar import TimeSlotConfiguration
from slotbook.models.ledger import SlotLedger

logger = logging.getLogger(__name__)


def remaining_capacity(places_available: int, places_booked: int) -> int:
    """Places still bookable. Never negative, even if capacity was lowered after booking."""
    return max(places_available - places_booked, 0)


async def booked_places(
    db: AsyncSession,
    configuration_ids: list[int],
    date_from: date,
    date_to: date,
) -> dict[tuple[int, date], int]:
    """Read places_booked for every ledger row in range, keyed by (configuration_id, date)."""
    if not configuration_ids:
        return {}
    result = await db.execute(
        select(SlotLedger.time_slot_configuration_id, SlotLedger.slot_date, SlotLedger.places_booked).where(
            SlotLedger.time_slot_configuration_id.in_(configuration_ids),
            SlotLedger.slot_date >= date_from,
            SlotLedger.slot_date <= date_to,
        )
    )
    return {(row[0], row[1]): row[2] for row in result.all()}


async def places_booked_for(db: AsyncSession, configuration_id: int, slot_date: date) -> int:
    result = await db.execute(
        select(func.coalesce(func.max(SlotLedger.places_booked), 0)).where(
            SlotLedger.time_slot_configuration_id == configuration_id,
            SlotLedger.slot_date == slot_date,
        )
    )
    return result.scalar_one()


async def _ensure_ledger_row(db: AsyncSession, calendar_id: int, configuration_id: int, slot_date: date) -> None:
    """Create the instance's ledger row on first use. Concurrent creators are no-ops."""
    insert = pg_insert if dialect_name(db) == "postgresql" else sqlite_insert
    now = utcnow()
    stmt = (
        insert(SlotLedger)
        .values(
            calendar_id=calendar_id,
            time_slot_configuration_id=configuration_id,
            slot_date=slot_date,
            places_booked=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["time_slot_configuration_id", "slot_date"])
    )
    await db.execute(stmt)


def check_quantity(configuration: TimeSlotConfiguration, quantity: int) -> None:
    if quantity < 1:
        raise ValidationError("At least one place must be booked.", rule="places_requested")
    minimum = configuration.min_places_required
    if minimum is not None and quantity < minimum:
        raise BelowMinimumPlaces(f"This slot must be booked for at least {minimum} places.")


async def reserve(
    db: AsyncSession,
    configuration: TimeSlotConfiguration,
    slot_date: date,
    quantity: int,
) -> None:
    """Atomically add ``quantity`` places to the slot instance, or raise CapacityExceeded."""
    check_quantity(configuration, quantity)
    await _ensure_ledger_row(db, configuration.calendar_id, configuration.id, slot_date)

    result = await db.execute(
        update(SlotLedger)
        .where(
            SlotLedger.time_slot_configuration_id == configuration.id,
            SlotLedger.slot_date == slot_date,
            SlotLedger.places_booked + quantity <= configuration.places_available,
        )
        .values(places_booked=SlotLedger.places_booked + quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        booked = await places_booked_for(db, configuration.id, slot_date)
        remaining = remaining_capacity(configuration.places_available, booked)
        logger.warning(
            "Capacity exceeded: config=%s date=%s requested=%s remaining=%s",
            configuration.id,
            slot_date,
            quantity,
            remaining,
        )
        raise CapacityExceeded(
            f"Only {remaining} place{'s' if remaining != 1 else ''} left on this slot; {quantity} requested."
        )


async def release(db: AsyncSession, configuration_id: int, slot_date: date, quantity: int) -> None:
    """Give ``quantity`` places back to the slot instance. Guarded at zero."""
    result = await db.execute(
        update(SlotLedger)
        .where(
            SlotLedger.time_slot_configuration_id == configuration_id,
            SlotLedger.slot_date == slot_date,
        )
        .values(
            places_booked=case(
                (SlotLedger.places_booked >= quantity, SlotLedger.places_booked - quantity),
                else_=0,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Release on missing ledger row: config=%s date=%s", configuration_id, slot_date)
