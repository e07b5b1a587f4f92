"""Seed the database with demo calendars.

Run with: python -m scripts.seed
Creates two calendars for organisation 1 (a tennis court with hourly slots
and a fitness class with shared places) and prints bearer tokens for a
member and an admin.
"""

import asyncio
from datetime import date, time

from sqlalchemy import select

from slotbook.core.auth import create_access_token
from slotbook.core.database import async_session_factory, engine
from slotbook.models import (
    Base,
    BlockedPeriod,
    BlockType,
    Calendar,
    DurationOption,
    TimeSlotConfiguration,
)

ORGANISATION_ID = 1
ADMIN_USER_ID = 1
MEMBER_USER_ID = 2

WEEKDAYS = [0, 1, 2, 3, 4]
EVERY_DAY = [0, 1, 2, 3, 4, 5, 6]

CALENDARS = [
    {
        "name": "Clissold Park Court 1",
        "description": "Hard court, floodlit.",
        "display_colour": "#2e7d32",
        "max_days_in_advance": 14,
        "allow_cancellations": True,
        "cancel_days_in_advance": 1,
        "supported_payment_methods": ["card"],
        "refund_payment_automatically": True,
        # One template per hour 07:00-20:00, 60 or 90 minutes
        "slots": [
            {
                "days_of_week": EVERY_DAY,
                "start_time": time(hour, 0),
                "places_available": 1,
                "options": [("1 hour", 60, 800), ("90 minutes", 90, 1200)],
            }
            for hour in range(7, 21)
        ],
        "blocks": [
            # Weekly coaching session
            {
                "block_type": BlockType.TIME_SEGMENT,
                "days_of_week": [2],
                "start_time": time(17, 0),
                "end_time": time(19, 0),
                "reason": "Club coaching",
            },
        ],
    },
    {
        "name": "Morning Circuits",
        "description": "Outdoor circuit class, up to 12 people.",
        "display_colour": "#ef6c00",
        "min_days_in_advance": 0,
        "max_days_in_advance": 28,
        "use_terms_and_conditions": True,
        "terms_and_conditions": "Participants exercise at their own risk.",
        "slots": [
            {
                "days_of_week": WEEKDAYS,
                "start_time": time(7, 30),
                "places_available": 12,
                "options": [("Class", 45, 500)],
            },
            {
                "days_of_week": [5],
                "start_time": time(9, 0),
                "places_available": 12,
                "recurrence_weeks": 2,
                "options": [("Saturday special", 60, 0)],
            },
        ],
        "blocks": [],
    },
]


async def seed():
    # Create tables (in dev; production uses migrations)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        # Check if already seeded
        result = await db.execute(select(Calendar).where(Calendar.organisation_id == ORGANISATION_ID))
        if result.scalars().first():
            print("Database already seeded - skipping.")
            return

        total_templates = 0
        for data in CALENDARS:
            data = dict(data)
            slots = data.pop("slots")
            blocks = data.pop("blocks")

            calendar = Calendar(organisation_id=ORGANISATION_ID, **data)
            db.add(calendar)
            await db.flush()

            for i, slot_data in enumerate(slots):
                config = TimeSlotConfiguration(
                    calendar_id=calendar.id,
                    days_of_week=slot_data["days_of_week"],
                    start_time=slot_data["start_time"],
                    effective_date_start=date.today(),
                    recurrence_weeks=slot_data.get("recurrence_weeks", 1),
                    places_available=slot_data["places_available"],
                    order=0,
                    duration_options=[
                        DurationOption(label=label, duration_minutes=minutes, price_pence=price, order=j)
                        for j, (label, minutes, price) in enumerate(slot_data["options"])
                    ],
                )
                db.add(config)
                total_templates += 1

            for block_data in blocks:
                db.add(BlockedPeriod(calendar_id=calendar.id, **block_data))

        await db.commit()

        print(f"Seeded organisation {ORGANISATION_ID}")
        print(f"  {len(CALENDARS)} calendars")
        print(f"  {total_templates} time slot configurations")
        print("  Tokens:")
        print(f"    admin:  {create_access_token(str(ADMIN_USER_ID), ORGANISATION_ID, role='admin')}")
        print(f"    member: {create_access_token(str(MEMBER_USER_ID), ORGANISATION_ID)}")


if __name__ == "__main__":
    asyncio.run(seed())
