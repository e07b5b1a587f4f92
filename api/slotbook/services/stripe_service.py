"""Stripe integration for refunds and webhook verification.

Wraps the Stripe Python SDK. All amounts are in pence (GBP). Payments are
taken by the payments service; this engine only asks for refunds and reads
the provider's confirmations.
"""

import stripe

from slotbook.core.config import settings


def _configure() -> None:
    """Set the Stripe API key from settings."""
    stripe.api_key = settings.stripe_secret_key


def refund_idempotency_key(booking_id: int) -> str:
    return f"refund-booking-{booking_id}"


def create_refund(payment_intent_id: str, amount_pence: int, booking_id: int) -> stripe.Refund:
    """Refund a booking's payment.

    The idempotency key is derived from the booking, so a redelivered task
    cannot refund twice.
    """
    _configure()

    return stripe.Refund.create(
        payment_intent=payment_intent_id,
        amount=amount_pence,
        metadata={"booking_id": str(booking_id)},
        idempotency_key=refund_idempotency_key(booking_id),
    )


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event."""
    return stripe.Webhook.construct_event(
        payload,
        sig_header,
        settings.stripe_webhook_secret,
    )
