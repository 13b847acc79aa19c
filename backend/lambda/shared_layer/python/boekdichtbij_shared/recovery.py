"""boekdichtbij_shared.recovery — Assignment deadline enforcement and refund.

`enforce_deadline(booking_id)` is what both the one-shot deadline schedule
and the expiry sweep run. Every step is its own atomic write or Stripe call
and the procedure can be re-entered after a crash at any point:

    1. load; ASSIGNED / REFUNDED / refundId present      -> already resolved
    2. anything but PENDING_ASSIGNMENT or UNFILLED with a
       pending-or-absent refund marker                    -> unexpected state
    3. PENDING_ASSIGNMENT before its deadline              -> not due
    4. PENDING_ASSIGNMENT -> UNFILLED (lost race: re-read, resume if UNFILLED)
    5. resolve the payment intent (stored, else via the checkout session)
    6. refundState = REFUND_PENDING recovery marker
    7. Stripe refund keyed `refund:<bookingId>`
    8. UNFILLED -> REFUNDED with refundId
    9. audit event, drop the wave schedules (best effort)

Per-booking problems come back as a result dict with a descriptive status;
nothing here raises for them, because the callers are schedulers and
sweeps that would otherwise retry blindly.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.events import record_event
from boekdichtbij_shared.payments import (
    PaymentProviderError,
    create_refund,
    refund_idempotency_key,
    retrieve_payment_intent_id,
)
from boekdichtbij_shared.scheduler import cancel_booking_schedules
from boekdichtbij_shared.serialization import (
    _emit_structured_observability,
    _iso,
    _parse_iso,
    _utcnow,
)
from boekdichtbij_shared.state_machine import (
    ASSIGNED,
    PENDING_ASSIGNMENT,
    REFUNDED,
    REFUND_BLOCKED,
    REFUND_DONE,
    REFUND_PENDING,
    UNFILLED,
    apply_transition,
    load_booking,
    run_side_effects,
)
from boekdichtbij_shared.store import BOOKING_SK, ConditionFailed, booking_pk, update_item

logger = logging.getLogger(__name__)

__all__ = ["enforce_deadline"]

RESOLVED_STATUSES = ("already_assigned", "already_refunded")


def _result(booking_id: str, status: str, ok: bool = True, **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"ok": ok, "bookingId": booking_id, "status": status}
    out.update(extra)
    _emit_structured_observability(
        component="recovery",
        event="deadline_procedure",
        booking_id=booking_id,
        error_code="" if ok else status,
        extra={"status": status},
    )
    return out


def _already_resolved(booking: Dict[str, Any]) -> Optional[str]:
    if booking.get("status") == ASSIGNED:
        return "already_assigned"
    if booking.get("status") == REFUNDED or booking.get("refundId"):
        return "already_refunded"
    return None


def _refundable_unfilled(booking: Dict[str, Any]) -> bool:
    return booking.get("status") == UNFILLED and booking.get("refundState") in (None, REFUND_PENDING)


# ---------------------------------------------------------------------------
# Steps 5-9
# ---------------------------------------------------------------------------


def _resolve_payment_intent(booking: Dict[str, Any]) -> Dict[str, Any]:
    """Returns {"paymentIntentId": ...} or {"error": status} for the caller."""
    booking_id = booking["bookingId"]
    payment_intent = booking.get("stripePaymentIntentId")
    if payment_intent:
        return {"paymentIntentId": payment_intent}

    session_id = booking.get("stripeSessionId")
    if session_id:
        try:
            payment_intent = retrieve_payment_intent_id(session_id)
        except PaymentProviderError as exc:
            logger.error("[ERROR] Session lookup failed for %s: %s", booking_id, exc)
            record_event(
                booking_id,
                "stripe_session_retrieval_failed",
                {"sessionId": session_id, "error": str(exc), "code": exc.code},
            )
            return {"error": "payment_lookup_failed"}
        if payment_intent:
            try:
                update_item(
                    booking_pk(booking_id),
                    BOOKING_SK,
                    {"stripePaymentIntentId": payment_intent},
                    condition="attribute_not_exists(stripePaymentIntentId)",
                )
            except ConditionFailed:
                pass
            except (BotoCoreError, ClientError) as exc:
                logger.warning("[WARNING] Could not store payment intent for %s: %s", booking_id, exc)
            return {"paymentIntentId": payment_intent}

    logger.error("[ERROR] No payment reference for %s; refund impossible", booking_id)
    try:
        update_item(
            booking_pk(booking_id),
            BOOKING_SK,
            {"refundState": REFUND_BLOCKED, "updatedAt": _iso(_utcnow())},
            condition="#status = :unfilled AND attribute_not_exists(refundId)",
            names={"#status": "status"},
            values={":unfilled": UNFILLED},
        )
    except ConditionFailed:
        logger.warning("[WARNING] %s changed while marking refund blocked", booking_id)
    record_event(booking_id, "refund_skipped", {"reason": "no_payment_reference"})
    return {"error": "refund_skipped_no_payment"}


def _mark_refund_pending(booking: Dict[str, Any], now_iso: str) -> Optional[str]:
    """Write the REFUND_PENDING marker. Returns a terminal status on loss."""
    if booking.get("refundState") == REFUND_PENDING:
        return None
    booking_id = booking["bookingId"]
    try:
        updated = update_item(
            booking_pk(booking_id),
            BOOKING_SK,
            {"refundState": REFUND_PENDING, "refundRequestedAt": now_iso, "updatedAt": now_iso},
            condition=(
                "#status = :unfilled AND "
                "(attribute_not_exists(refundState) OR refundState <> :done)"
            ),
            names={"#status": "status"},
            values={":unfilled": UNFILLED, ":done": REFUND_DONE},
        )
    except ConditionFailed:
        current = load_booking(booking_id) or {}
        resolved = _already_resolved(current)
        if resolved:
            return resolved
        logger.error("[ERROR] Could not mark refund pending for %s (status=%s)", booking_id, current.get("status"))
        return "unexpected_state"
    booking.update(updated)
    return None


def _refund(booking: Dict[str, Any], now: dt.datetime) -> Dict[str, Any]:
    booking_id = booking["bookingId"]
    now_iso = _iso(now)

    resolved = _resolve_payment_intent(booking)
    if "error" in resolved:
        return _result(booking_id, resolved["error"], ok=False)
    payment_intent = resolved["paymentIntentId"]

    terminal = _mark_refund_pending(booking, now_iso)
    if terminal:
        return _result(booking_id, terminal, ok=terminal in RESOLVED_STATUSES)

    try:
        refund = create_refund(booking_id, payment_intent)
    except PaymentProviderError as exc:
        logger.error("[ERROR] Refund failed for %s: %s", booking_id, exc)
        record_event(
            booking_id,
            "refund_failed",
            {"paymentIntentId": payment_intent, "error": str(exc), "code": exc.code},
        )
        return _result(booking_id, "refund_failed", ok=False, error=str(exc))

    result = apply_transition(
        booking,
        "refund_completed",
        {
            "refundId": refund["refundId"],
            "refundAmountCents": refund.get("amountCents"),
            "refundState": REFUND_DONE,
            "refundedAt": now_iso,
            "stripePaymentIntentId": payment_intent,
        },
        now=now_iso,
    )
    if not result.applied:
        current = result.booking or {}
        if current.get("status") == REFUNDED:
            return _result(booking_id, "already_refunded", refundId=current.get("refundId"))
        logger.error(
            "[ERROR] Refund %s issued but %s could not move to REFUNDED (status=%s)",
            refund["refundId"],
            booking_id,
            current.get("status"),
        )
        record_event(
            booking_id,
            "refunded_transition_failed",
            {"refundId": refund["refundId"], "currentStatus": current.get("status")},
        )
        return _result(booking_id, "refunded_transition_failed", ok=False, refundId=refund["refundId"])

    run_side_effects(
        booking_id,
        "refund_completed",
        {
            "record_event": lambda: record_event(
                booking_id,
                "refund_issued",
                {
                    "refundId": refund["refundId"],
                    "amountCents": refund.get("amountCents"),
                    "idempotencyKey": refund_idempotency_key(booking_id),
                    "alreadyRefunded": refund.get("alreadyRefunded"),
                },
            ),
            "cancel_schedules": lambda: cancel_booking_schedules(booking_id, ("wave2", "wave3")),
        },
    )
    return _result(booking_id, "refunded", refundId=refund["refundId"])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def enforce_deadline(
    booking_id: str,
    *,
    now: Optional[dt.datetime] = None,
    source: str = "scheduler",
) -> Dict[str, Any]:
    """Expire an unaccepted booking and refund it. Safe to call any number of times."""
    now = now or _utcnow()
    booking = load_booking(booking_id)
    if booking is None:
        logger.warning("[WARNING] Deadline for unknown booking %s", booking_id)
        return _result(booking_id, "booking_not_found", ok=False)

    resolved = _already_resolved(booking)
    if resolved:
        return _result(booking_id, resolved)

    status = booking.get("status")
    if status != PENDING_ASSIGNMENT and not _refundable_unfilled(booking):
        logger.error(
            "[ERROR] Deadline for %s in unexpected state %s (refundState=%s)",
            booking_id,
            status,
            booking.get("refundState"),
        )
        return _result(booking_id, "unexpected_state", ok=False, bookingStatus=status)

    if status == PENDING_ASSIGNMENT:
        deadline = _parse_iso(booking.get("assignmentDeadline"))
        if deadline is None:
            logger.error("[ERROR] Booking %s has no assignment deadline", booking_id)
            return _result(booking_id, "missing_deadline", ok=False)
        if now < deadline:
            return _result(booking_id, "not_due", assignmentDeadline=booking.get("assignmentDeadline"))

        transition = apply_transition(booking, "deadline_expired", {"unfilledAt": _iso(now)}, now=_iso(now))
        if transition.applied:
            booking = transition.booking
            run_side_effects(
                booking_id,
                "deadline_expired",
                {"record_event": lambda: record_event(booking_id, "booking_unfilled", {"source": source})},
            )
        else:
            current = transition.booking
            if current is None:
                return _result(booking_id, "booking_not_found", ok=False)
            resolved = _already_resolved(current)
            if resolved:
                return _result(booking_id, resolved)
            if not _refundable_unfilled(current):
                logger.error("[ERROR] %s moved to %s during expiry", booking_id, current.get("status"))
                return _result(booking_id, "unexpected_state", ok=False, bookingStatus=current.get("status"))
            logger.info("[INFO] %s already UNFILLED by another run; resuming refund", booking_id)
            booking = current

    return _refund(booking, now)
