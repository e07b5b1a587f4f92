"""Capacity ledger rows.

One row per slot instance that has ever been booked, created on first
reservation. Unbooked instances of recurring templates never get a row.
places_booked is the running sum of places on non-cancelled bookings and is
only ever changed by a single conditional UPDATE (see services/capacity.py).
"""

from datetime import date

from sqlalchemy import CheckConstraint, Date, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from slotbook.models.base import Base, TimestampMixin


class SlotLedger(TimestampMixin, Base):
    __tablename__ = "slot_ledger"

    id: Mapped[int] = mapped_column(primary_key=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False)
    time_slot_configuration_id: Mapped[int] = mapped_column(
        ForeignKey("time_slot_configurations.id", ondelete="CASCADE"), nullable=False
    )
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    places_booked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("time_slot_configuration_id", "slot_date", name="uq_slot_ledger_instance"),
        CheckConstraint("places_booked >= 0", name="ck_slot_ledger_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<SlotLedger config={self.time_slot_configuration_id} {self.slot_date} booked={self.places_booked}>"
