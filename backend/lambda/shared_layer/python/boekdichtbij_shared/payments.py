"""boekdichtbij_shared.payments — Stripe calls used by the lifecycle.

Three things only: resolve a payment intent from a checkout session, issue
the unfilled-booking refund with a deterministic idempotency key, and verify
webhook signatures. Stripe SDK errors are wrapped in `PaymentProviderError`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from boekdichtbij_shared.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET

logger = logging.getLogger(__name__)

_ALREADY_REFUNDED_CODES = {"charge_already_refunded"}


class PaymentProviderError(Exception):
    """Stripe rejected the request or could not be reached."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class InvalidWebhook(ValueError):
    """Stripe-Signature does not match, or the payload is not a Stripe event."""


def refund_idempotency_key(booking_id: str) -> str:
    return f"refund:{booking_id}"


def _api_key() -> str:
    if not STRIPE_SECRET_KEY:
        raise PaymentProviderError("STRIPE_SECRET_KEY not set", code="not_configured")
    return STRIPE_SECRET_KEY


def _object_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return getattr(value, "id", None)


def retrieve_payment_intent_id(session_id: str) -> Optional[str]:
    """Payment intent id behind a checkout session, or None when it has none."""
    try:
        session = stripe.checkout.Session.retrieve(session_id, api_key=_api_key())
    except stripe.StripeError as exc:
        raise PaymentProviderError(
            f"Checkout session {session_id} retrieval failed: {exc}",
            code=getattr(exc, "code", None),
        ) from exc
    return _object_id(getattr(session, "payment_intent", None))


def _refund_summary(refund: Any, already_refunded: bool) -> Dict[str, Any]:
    return {
        "refundId": refund.id,
        "amountCents": getattr(refund, "amount", None),
        "refundStatus": getattr(refund, "status", None),
        "alreadyRefunded": already_refunded,
    }


def create_refund(
    booking_id: str,
    payment_intent_id: str,
    *,
    reason: str = "unfilled",
) -> Dict[str, Any]:
    """Refund a booking's payment in full.

    Keyed by `refund:<bookingId>`, so a repeated call after a crash returns
    the original refund. When Stripe reports the charge as already refunded
    the existing refund is looked up by payment intent instead.
    """
    api_key = _api_key()
    try:
        refund = stripe.Refund.create(
            payment_intent=payment_intent_id,
            reason="requested_by_customer",
            metadata={"bookingId": booking_id, "reason": reason},
            idempotency_key=refund_idempotency_key(booking_id),
            api_key=api_key,
        )
        return _refund_summary(refund, already_refunded=False)
    except stripe.StripeError as exc:
        code = getattr(exc, "code", None)
        if code not in _ALREADY_REFUNDED_CODES:
            raise PaymentProviderError(f"Refund for {booking_id} failed: {exc}", code=code) from exc
        logger.info("[INFO] Payment %s already refunded; looking up refund", payment_intent_id)

    try:
        existing = stripe.Refund.list(payment_intent=payment_intent_id, limit=1, api_key=api_key)
    except stripe.StripeError as exc:
        raise PaymentProviderError(
            f"Refund lookup for {booking_id} failed: {exc}",
            code=getattr(exc, "code", None),
        ) from exc
    refunds = list(getattr(existing, "data", None) or [])
    if not refunds:
        raise PaymentProviderError(
            f"Stripe reports {payment_intent_id} refunded but lists no refund",
            code="refund_not_found",
        )
    return _refund_summary(refunds[0], already_refunded=True)


def construct_webhook_event(
    payload: str,
    signature_header: str,
    *,
    secret: Optional[str] = None,
) -> Dict[str, Any]:
    """Verify the Stripe-Signature header and return the event as a plain dict."""
    secret = STRIPE_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        raise InvalidWebhook("STRIPE_WEBHOOK_SECRET not set")
    if not signature_header:
        raise InvalidWebhook("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret)
    except stripe.SignatureVerificationError as exc:
        raise InvalidWebhook(str(exc)) from exc
    try:
        event = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as exc:
        raise InvalidWebhook(f"Invalid webhook payload: {exc}") from exc
    if not isinstance(event, dict):
        raise InvalidWebhook("Webhook payload is not an object")
    return event
