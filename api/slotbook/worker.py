"""Celery worker: outbound refund requests to the payment provider.

Refunds are requested after the cancelling transaction commits. Tasks are
acknowledged late and retried with backoff, so delivery is at-least-once;
Stripe's idempotency key makes repeats harmless. A periodic sweep re-sends
refunds that were requested but never confirmed by the provider's webhook.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import stripe
from celery import Celery
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from slotbook.core.config import settings
from slotbook.models.base import utcnow
from slotbook.services.bookings import RefundRequest, refunds_awaiting_confirmation
from slotbook.services.stripe_service import create_refund

logger = logging.getLogger(__name__)

REFUND_SWEEP_STALE_MINUTES = 60


def stale_after(minutes: int) -> datetime:
    return utcnow() - timedelta(minutes=minutes)

celery_app = Celery(
    "slotbook",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.timezone,
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "resend-unconfirmed-refunds": {
            "task": "slotbook.resend_unconfirmed_refunds",
            "schedule": 15 * 60.0,
        },
    },
)


@celery_app.task(
    name="slotbook.request_refund",
    autoretry_for=(stripe.StripeError,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=10,
)
def request_refund(booking_id: int, amount_pence: int, payment_reference: str | None) -> str | None:
    """Ask Stripe to refund a cancelled booking. Confirmation arrives via webhook."""
    if not payment_reference:
        logger.warning("Refund for booking %s has no payment reference; needs manual refund", booking_id)
        return None
    refund = create_refund(payment_reference, amount_pence, booking_id)
    logger.info("Refund %s requested for booking %s (%sp)", refund.id, booking_id, amount_pence)
    return refund.id


def dispatch_refund(refund: RefundRequest) -> None:
    """Enqueue a refund request. A broker outage is logged; the sweep retries later.

    Publishing blocks, so async callers run this in a thread.
    """
    try:
        request_refund.apply_async(
            args=(refund.booking_id, refund.amount_pence, refund.payment_reference),
            retry=False,
        )
    except Exception:
        logger.exception("Could not enqueue refund for booking %s", refund.booking_id)


async def _collect_unconfirmed_refunds() -> list[RefundRequest]:
    # Tasks run outside the API's event loop, so they get their own short-lived engine
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        async with async_sessionmaker(engine, class_=AsyncSession)() as db:
            return await refunds_awaiting_confirmation(db, stale_after(REFUND_SWEEP_STALE_MINUTES))
    finally:
        await engine.dispose()


@celery_app.task(name="slotbook.resend_unconfirmed_refunds")
def resend_unconfirmed_refunds() -> int:
    refunds = asyncio.run(_collect_unconfirmed_refunds())
    for refund in refunds:
        dispatch_refund(refund)
    if refunds:
        logger.info("Re-sent %d unconfirmed refund request(s)", len(refunds))
    return len(refunds)
