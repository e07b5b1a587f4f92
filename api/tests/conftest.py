"""Shared test fixtures.

Tests run against a throwaway SQLite file so the ledger's conditional UPDATE
and concurrent sessions are exercised for real. The URL must be set before
the settings module is first imported.
"""

import os
import tempfile
from datetime import date, datetime, time

_db_dir = tempfile.mkdtemp(prefix="slotbook-tests-")
os.environ["SB_DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ.setdefault("SB_STRIPE_WEBHOOK_SECRET", "whsec_test")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from slotbook.core.auth import create_access_token  # noqa: E402
from slotbook.core.database import async_session_factory, engine  # noqa: E402
from slotbook.main import app  # noqa: E402
from slotbook.models import (  # noqa: E402
    Base,
    Booking,
    Calendar,
    CalendarStatus,
    DurationOption,
    TimeSlotConfiguration,
)
from slotbook.services.booking_rules import LOCAL_TZ  # noqa: E402
from slotbook.services.bookings import create_booking  # noqa: E402
from slotbook.services.slot_generator import format_slot_id  # noqa: E402

ORG_ID = 1
OTHER_ORG_ID = 2
MEMBER_ID = 100
OTHER_MEMBER_ID = 101
ADMIN_ID = 1


@pytest.fixture(autouse=True)
async def _dispose_engine_pool():
    """Dispose stale engine pool connections before each test.

    The global engine is created at import time. When pytest-asyncio creates a new
    event loop for tests, any existing pooled connections are bound to the old loop
    and will fail with 'Future attached to a different loop'. Disposing before each
    test forces fresh connections in the current loop.
    """
    await engine.dispose()
    yield


@pytest.fixture(autouse=True)
async def _schema(_dispose_engine_pool):
    """Fresh tables for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db():
    async with async_session_factory() as session:
        yield session


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def auth_headers(user_id: int = MEMBER_ID, organisation_id: int = ORG_ID, role: str = "member") -> dict:
    token = create_access_token(str(user_id), organisation_id, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def member_headers() -> dict:
    return auth_headers()


@pytest.fixture
def admin_headers() -> dict:
    return auth_headers(ADMIN_ID, role="admin")


async def make_calendar(
    db,
    *,
    days_of_week: list[int] | None = None,
    start_time: time = time(10, 0),
    effective_date_start: date = date(2020, 1, 6),
    places_available: int = 2,
    min_places_required: int | None = None,
    recurrence_weeks: int = 1,
    options: list[tuple[str, int, int]] | None = None,
    **calendar_fields,
) -> tuple[Calendar, TimeSlotConfiguration]:
    """Create and commit a calendar with a single time slot configuration."""
    fields = {
        "organisation_id": ORG_ID,
        "name": "Court 1",
        "status": CalendarStatus.OPEN,
        "min_days_in_advance": 0,
        "max_days_in_advance": 90,
    }
    fields.update(calendar_fields)
    calendar = Calendar(**fields)
    db.add(calendar)
    await db.flush()

    config = TimeSlotConfiguration(
        calendar_id=calendar.id,
        days_of_week=days_of_week if days_of_week is not None else [0, 1, 2, 3, 4, 5, 6],
        start_time=start_time,
        effective_date_start=effective_date_start,
        recurrence_weeks=recurrence_weeks,
        places_available=places_available,
        min_places_required=min_places_required,
        order=0,
        duration_options=[
            DurationOption(label=label, duration_minutes=minutes, price_pence=price, order=i)
            for i, (label, minutes, price) in enumerate(options or [("1 hour", 60, 2000)])
        ],
    )
    db.add(config)
    await db.commit()
    return calendar, config


# Monday morning, fixed so the advance window and "today" are deterministic
NOW = datetime(2030, 1, 7, 8, 0, tzinfo=LOCAL_TZ)
TODAY = NOW.date()
WEDNESDAY = date(2030, 1, 9)
SATURDAY = date(2030, 1, 12)


def slot_id_for(config: TimeSlotConfiguration, day: date, option_index: int = 0) -> str:
    return format_slot_id(config.id, day, config.duration_options[option_index].id)


async def book(calendar_id: int, slot_id: str, places: int = 1, user_id: int = MEMBER_ID, **kwargs) -> Booking:
    """Create a booking in its own session and commit, like one API request."""
    async with async_session_factory() as db:
        calendar = await db.get(Calendar, calendar_id)
        try:
            booking = await create_booking(db, calendar, slot_id, places, user_id, now=NOW, **kwargs)
            await db.commit()
            return booking
        except Exception:
            await db.rollback()
            raise
