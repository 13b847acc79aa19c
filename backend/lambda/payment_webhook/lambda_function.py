"""payment_webhook/lambda_function.py

Stripe webhook receiver. Turns a completed payment into the
PENDING_PAYMENT -> PENDING_ASSIGNMENT transition and starts dispatch.

Events handled:
    checkout.session.completed   (payment_status == "paid")
    payment_intent.succeeded
Everything else is acknowledged and ignored.

Responses:
    400  bad signature / payload, or no booking id in the event
    500  record store unavailable before the transition was stored (Stripe retries)
    200  everything else, including unknown bookings and duplicate deliveries

Environment variables:
    STRIPE_WEBHOOK_SECRET     default: ""
    DYNAMODB_TABLE            default: boekdichtbij_main
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.bookings import confirm_payment, find_booking_id_by_session
from boekdichtbij_shared.http_utils import _error, _header, _raw_body, _response
from boekdichtbij_shared.payments import InvalidWebhook, construct_webhook_event

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references arrive as an id string or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id") or None
    return value or None


def _checkout_refs(session: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    session_id = session.get("id")
    booking_id = (session.get("metadata") or {}).get("bookingId") or session.get("client_reference_id")
    if not booking_id and session_id:
        booking_id = find_booking_id_by_session(session_id)
    return booking_id, _ref_id(session.get("payment_intent")), session_id


def lambda_handler(event: Dict, context: Any) -> Dict:
    payload = _raw_body(event)
    signature = _header(event, "Stripe-Signature")
    try:
        stripe_event = construct_webhook_event(payload, signature)
    except InvalidWebhook as exc:
        logger.warning("[WARNING] Rejected Stripe webhook: %s", exc)
        return _error(400, "Invalid webhook signature or payload.")

    event_type = stripe_event.get("type") or ""
    obj = (stripe_event.get("data") or {}).get("object") or {}
    logger.info("[INFO] Stripe event %s (%s)", stripe_event.get("id"), event_type)

    try:
        if event_type == "checkout.session.completed":
            if obj.get("payment_status") != "paid":
                return _response(200, {"received": True, "ignored": "session_not_paid"})
            booking_id, payment_intent, session_id = _checkout_refs(obj)
        elif event_type == "payment_intent.succeeded":
            booking_id = (obj.get("metadata") or {}).get("bookingId")
            payment_intent, session_id = obj.get("id"), None
        else:
            return _response(200, {"received": True, "ignored": event_type})

        if not booking_id:
            logger.error("[ERROR] Stripe event %s carries no booking id", stripe_event.get("id"))
            return _error(400, "Missing bookingId.")

        result = confirm_payment(booking_id, payment_intent, session_id)
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Payment confirmation failed for event %s: %s", stripe_event.get("id"), exc)
        return _error(500, "Booking store unavailable.")

    return _response(200, {"received": True, **result})
