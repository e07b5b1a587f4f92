"""Stripe webhook handler.

Processes payment_intent.succeeded and charge.refunded events. Both are
applied idempotently, so Stripe's redeliveries are harmless.
"""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request, status

from slotbook.core.database import async_session_factory
from slotbook.services.bookings import find_booking_for_payment, record_payment, record_refund
from slotbook.services.stripe_service import construct_webhook_event
from slotbook.worker import dispatch_refund

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request):
    """Handle Stripe webhook events.

    Uses a dedicated DB session (not the request-scoped one) because webhook
    processing must commit independently of any ongoing request.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = construct_webhook_event(payload, sig_header)
    except Exception:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature") from None

    event_type = event["type"]
    data = event["data"]["object"]

    if event_type == "payment_intent.succeeded":
        await _handle_payment_succeeded(data)
    elif event_type == "charge.refunded":
        await _handle_charge_refunded(data)

    return {"status": "ok"}


def _booking_id(obj: dict) -> int | None:
    raw = (obj.get("metadata") or {}).get("booking_id")
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


async def _handle_payment_succeeded(payment_intent: dict) -> None:
    """Mark the booking as paid and remember the PaymentIntent for refunds.

    A payment that settles after its booking was cancelled is refunded.
    """
    pi_id = payment_intent["id"]

    async with async_session_factory() as db:
        booking = await find_booking_for_payment(db, _booking_id(payment_intent), pi_id)
        if booking is None:
            logger.warning("Payment %s does not match a booking", pi_id)
            return

        outcome = await record_payment(db, booking, pi_id)
        await db.commit()

    if outcome and outcome.refund:
        await asyncio.to_thread(dispatch_refund, outcome.refund)


async def _handle_charge_refunded(charge: dict) -> None:
    """Record the provider's refund confirmation."""
    pi_id = charge.get("payment_intent")

    async with async_session_factory() as db:
        booking = await find_booking_for_payment(db, _booking_id(charge), pi_id)
        if booking is None:
            logger.warning("Refund for charge %s does not match a booking", charge.get("id"))
            return

        await record_refund(db, booking)
        await db.commit()
