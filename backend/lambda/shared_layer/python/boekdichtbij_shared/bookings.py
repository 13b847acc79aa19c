"""boekdichtbij_shared.bookings — Booking creation, lookup and payment confirmation.

Creation writes a PENDING_PAYMENT booking; checkout session creation itself
lives with the checkout flow. `confirm_payment` is the single entry into the
assignment lifecycle: it makes the PENDING_PAYMENT -> PENDING_ASSIGNMENT
transition durable first, then registers the deadline and wave schedules and
runs wave 1 as best-effort follow-ups.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional

import ulid

from boekdichtbij_shared.areas import AREAS
from boekdichtbij_shared.config import (
    ASSIGNMENT_WINDOW_MINUTES,
    GSI_PAYMENT_SESSION,
    WAVE_DELAY_MINUTES,
)
from boekdichtbij_shared.dispatch import dispatch_wave
from boekdichtbij_shared.events import record_event
from boekdichtbij_shared.notifier import normalize_phone
from boekdichtbij_shared.scheduler import schedule_assignment_deadline, schedule_wave
from boekdichtbij_shared.serialization import _emit_structured_observability, _iso, _utcnow
from boekdichtbij_shared.state_machine import (
    ASSIGNED,
    CANCELLED,
    PENDING_PAYMENT,
    REFUNDED,
    apply_transition,
    load_booking,
    run_side_effects,
)
from boekdichtbij_shared.store import BOOKING_SK, booking_pk, put_item, query, status_index_keys

logger = logging.getLogger(__name__)

__all__ = [
    "BookingValidationError",
    "confirm_payment",
    "create_booking",
    "find_booking_id_by_session",
    "get_booking",
    "public_booking_view",
]

REQUIRED_FIELDS = (
    "area",
    "serviceKey",
    "serviceName",
    "durationMin",
    "priceCents",
    "payoutCents",
    "timeWindowLabel",
    "address",
    "postcode",
    "place",
    "customerName",
    "phone",
)
_INT_FIELDS = ("durationMin", "priceCents", "payoutCents")
_OPTIONAL_FIELDS = ("windowStart", "windowEnd", "email", "requiredGender")
_GENDERS = ("men", "women")


class BookingValidationError(ValueError):
    """Booking payload rejected; `errors` lists every problem found."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def _session_index_keys(session_id: str, booking_id: str) -> Dict[str, str]:
    return {"GSI3PK": f"STRIPE_SESSION#{session_id}", "GSI3SK": f"BOOKING#{booking_id}"}


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def _validate(payload: Dict[str, Any]) -> Dict[str, Any]:
    errors: List[str] = []
    clean: Dict[str, Any] = {}
    for field in REQUIRED_FIELDS:
        value = payload.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"'{field}' is required")
            continue
        clean[field] = value.strip() if isinstance(value, str) else value

    for field in _INT_FIELDS:
        if field not in clean:
            continue
        value = clean[field]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            errors.append(f"'{field}' must be a positive integer")

    area = clean.get("area")
    if area is not None and not (AREAS.get(area) or {}).get("enabled"):
        errors.append(f"Unknown or disabled area '{area}'")

    if "phone" in clean:
        phone = normalize_phone(clean["phone"])
        if len(phone) < 8:
            errors.append("'phone' is not a valid phone number")
        clean["phone"] = phone

    for field in _OPTIONAL_FIELDS:
        value = payload.get(field)
        if value not in (None, ""):
            clean[field] = value
    if clean.get("requiredGender") and clean["requiredGender"] not in _GENDERS:
        errors.append(f"'requiredGender' must be one of {', '.join(_GENDERS)}")

    if errors:
        raise BookingValidationError(errors)
    return clean


def create_booking(payload: Dict[str, Any], *, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    """Validate and store a new PENDING_PAYMENT booking. Returns the stored record."""
    fields = _validate(payload or {})
    booking_id = str(ulid.ULID())
    created_at = _iso(now or _utcnow())
    item: Dict[str, Any] = {
        "PK": booking_pk(booking_id),
        "SK": BOOKING_SK,
        "type": "BOOKING",
        "bookingId": booking_id,
        "status": PENDING_PAYMENT,
        "createdAt": created_at,
        "updatedAt": created_at,
        **fields,
        **status_index_keys(fields["area"], PENDING_PAYMENT, created_at, booking_id),
    }
    put_item(item, condition="attribute_not_exists(PK)")
    logger.info("[INFO] Created booking %s in %s", booking_id, fields["area"])
    record_event(booking_id, "booking_created", {"area": fields["area"], "serviceKey": fields["serviceKey"]})
    return item


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_booking(booking_id: str) -> Optional[Dict[str, Any]]:
    return load_booking(booking_id)


def public_booking_view(booking: Dict[str, Any]) -> Dict[str, Any]:
    """What the customer may see. Provider contact details and the accept code stay hidden."""
    status = booking.get("status")
    return {
        "bookingId": booking.get("bookingId"),
        "status": status,
        "area": booking.get("area"),
        "serviceName": booking.get("serviceName"),
        "durationMin": booking.get("durationMin"),
        "priceCents": booking.get("priceCents"),
        "timeWindowLabel": booking.get("timeWindowLabel"),
        "assignmentDeadline": booking.get("assignmentDeadline"),
        "assigned": status == ASSIGNED,
        "refunded": status == REFUNDED,
        "createdAt": booking.get("createdAt"),
    }


def find_booking_id_by_session(session_id: str) -> Optional[str]:
    if not session_id:
        return None
    items, _ = query(
        "GSI3PK = :pk",
        values={":pk": f"STRIPE_SESSION#{session_id}"},
        index=GSI_PAYMENT_SESSION,
        limit=1,
    )
    return items[0].get("bookingId") if items else None


# ---------------------------------------------------------------------------
# Payment confirmation
# ---------------------------------------------------------------------------


def confirm_payment(
    booking_id: str,
    payment_intent_ref: Optional[str] = None,
    session_ref: Optional[str] = None,
    *,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Move a paid booking into assignment and start dispatch.

    The returned dict is final once the transition is stored; schedule or
    dispatch failures after that point are logged and reported under
    `sideEffects` only. Store errors before the transition propagate so the
    webhook can ask the payment provider to retry.
    """
    now = now or _utcnow()
    booking = load_booking(booking_id)
    if booking is None:
        logger.warning("[WARNING] Payment confirmed for unknown booking %s", booking_id)
        return {"ok": False, "bookingId": booking_id, "status": "booking_not_found"}

    if booking.get("status") == CANCELLED:
        logger.error("[ERROR] Payment received for cancelled booking %s", booking_id)
        record_event(
            booking_id,
            "payment_after_cancel",
            {"paymentIntentId": payment_intent_ref, "sessionId": session_ref},
        )
        return {"ok": False, "bookingId": booking_id, "status": "booking_cancelled"}
    if booking.get("status") != PENDING_PAYMENT:
        logger.info("[INFO] Duplicate payment confirmation for %s (%s)", booking_id, booking.get("status"))
        return {"ok": True, "bookingId": booking_id, "status": "already_confirmed"}

    deadline = now + dt.timedelta(minutes=ASSIGNMENT_WINDOW_MINUTES)
    fields: Dict[str, Any] = {
        "assignmentDeadline": _iso(deadline),
        "paymentConfirmedAt": _iso(now),
        "stripePaymentStatus": "PAID",
    }
    if payment_intent_ref:
        fields["stripePaymentIntentId"] = payment_intent_ref
    if session_ref:
        fields["stripeSessionId"] = session_ref
        fields.update(_session_index_keys(session_ref, booking_id))

    result = apply_transition(booking, "payment_confirmed", fields, now=_iso(now))
    if not result.applied:
        if result.outcome == "missing":
            return {"ok": False, "bookingId": booking_id, "status": "booking_not_found"}
        return {"ok": True, "bookingId": booking_id, "status": "already_confirmed"}

    side_effects = run_side_effects(
        booking_id,
        "payment_confirmed",
        {
            "record_event": lambda: record_event(
                booking_id,
                "payment_confirmed",
                {"paymentIntentId": payment_intent_ref, "sessionId": session_ref},
            ),
            "schedule_deadline": lambda: schedule_assignment_deadline(booking_id, _iso(deadline)),
            "schedule_wave2": lambda: schedule_wave(
                booking_id, 2, now + dt.timedelta(minutes=WAVE_DELAY_MINUTES[2])
            ),
            "schedule_wave3": lambda: schedule_wave(
                booking_id, 3, now + dt.timedelta(minutes=WAVE_DELAY_MINUTES[3])
            ),
            "dispatch_wave1": lambda: dispatch_wave(booking_id, 1),
        },
    )
    _emit_structured_observability(
        component="bookings",
        event="payment_confirmed",
        booking_id=booking_id,
        extra={"assignment_deadline": _iso(deadline)},
    )
    return {
        "ok": True,
        "bookingId": booking_id,
        "status": "confirmed",
        "assignmentDeadline": _iso(deadline),
        "sideEffects": side_effects,
    }
