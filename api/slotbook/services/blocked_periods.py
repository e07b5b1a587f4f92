"""Blocked period filtering.

Removes slot instances that fall in a blocked date range, or whose time
overlaps a weekly blocked time segment. Uses half-open interval overlap, so a
slot ending exactly when a block starts survives. Partial overlap removes the
whole slot.
"""

from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.models.calendar import BlockedPeriod, BlockType
from slotbook.services.slot_generator import SlotInstance, to_minutes


def blocks_date(block: BlockedPeriod, day: date) -> bool:
    if block.start_date is None:
        return False
    return block.start_date <= day and (block.end_date is None or day <= block.end_date)


def blocks_segment(block: BlockedPeriod, slot: SlotInstance) -> bool:
    if block.start_time is None or block.end_time is None:
        return False
    weekdays = block.days_of_week or []
    if weekdays and slot.slot_date.weekday() not in weekdays:
        return False
    return slot.start_minute < to_minutes(block.end_time) and slot.end_minute > to_minutes(block.start_time)


def is_blocked(slot: SlotInstance, blocks: list[BlockedPeriod]) -> bool:
    for block in blocks:
        if block.block_type == BlockType.DATE_RANGE and blocks_date(block, slot.slot_date):
            return True
        if block.block_type == BlockType.TIME_SEGMENT and blocks_segment(block, slot):
            return True
    return False


def filter_blocked(slots: list[SlotInstance], blocks: list[BlockedPeriod]) -> list[SlotInstance]:
    if not blocks:
        return slots
    return [s for s in slots if not is_blocked(s, blocks)]


async def load_blocks(db: AsyncSession, calendar_id: int) -> list[BlockedPeriod]:
    result = await db.execute(
        select(BlockedPeriod).where(BlockedPeriod.calendar_id == calendar_id).order_by(BlockedPeriod.id)
    )
    return list(result.scalars().all())
