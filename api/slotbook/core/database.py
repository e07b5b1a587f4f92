"""Async database engine and session management.

Tenant-aware: calendars carry their organisation id and every lookup is
scoped by the principal's organisation. Capacity coordination relies on the
store's transactional guarantees, so replicas share no in-process state.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from slotbook.core.config import settings
from slotbook.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQLite serialises writers itself; give a waiting writer time to get the lock
        return {"connect_args": {"timeout": settings.booking_timeout_seconds}}
    return {
        "pool_size": 20,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_timeout": settings.database_pool_timeout_seconds,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    **_engine_options(settings.database_url),
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session. Used as a FastAPI dependency."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, TimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@asynccontextmanager
async def store_guard(timeout: float | None = None) -> AsyncIterator[None]:
    """Bound a multi-step store operation and translate infrastructure failures.

    Connection loss, lock timeouts and the overall deadline all surface as
    StoreUnavailable so callers can retry with backoff. Nothing is retried here.
    """
    try:
        async with asyncio.timeout(timeout or settings.booking_timeout_seconds):
            yield
    except Exception as exc:
        if not _is_transient(exc):
            raise
        logger.warning("Store unavailable: %s", exc)
        raise StoreUnavailable("The booking store is temporarily unavailable. Please retry.") from exc
