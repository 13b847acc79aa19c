"""boekdichtbij_shared.dispatch — Multi-wave provider broadcast.

Wave 1 runs right after payment confirmation and offers the booking to the
three best-ranked eligible providers in its area. Wave 2 (+5 min) offers it
to up to five more from the same area. Wave 3 (+10 min) spills over to
neighbouring areas. No provider is ever offered the same booking twice.

Re-running a wave is harmless:
    - wave 1 stops when any Broadcast exists, waves 2/3 when one of their
      own wave exists;
    - each wave claims `wave<N>DispatchedAt` on the booking with a
      conditional write, so concurrent duplicates cannot both send;
    - Broadcast records are keyed by provider and reserved with
      `attribute_not_exists(SK)` before the message goes out, so a provider
      is never messaged twice for one booking.

A failed send to one provider is recorded (deliveryStatus=FAILED) and the
wave carries on with the rest. A Broadcast left in SENDING means the send
outcome could not be written; the provider still counts as offered.
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.areas import neighbor_areas
from boekdichtbij_shared.config import (
    ACCEPT_CODE_ALPHABET,
    ACCEPT_CODE_LENGTH,
    WAVE_DELAY_MINUTES,
    WAVE_SIZES,
)
from boekdichtbij_shared.events import record_event
from boekdichtbij_shared.messages import build_broadcast_message
from boekdichtbij_shared.notifier import NotifierError, send_whatsapp
from boekdichtbij_shared.providers import select_providers
from boekdichtbij_shared.serialization import _emit_structured_observability, _now_z, _parse_iso
from boekdichtbij_shared.state_machine import PENDING_ASSIGNMENT, load_booking
from boekdichtbij_shared.store import (
    BOOKING_SK,
    ConditionFailed,
    accept_code_pk,
    booking_children,
    booking_pk,
    broadcast_sk,
    put_item,
    update_item,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AcceptCodeError",
    "dispatch_wave",
    "issue_accept_code",
    "list_broadcasts",
    "wave_claimed",
    "wave_due_at",
]

_ACCEPT_CODE_ATTEMPTS = 5
_MAX_ERROR_LENGTH = 500


class AcceptCodeError(RuntimeError):
    """No unique accept code could be allocated."""


def _claim_attribute(wave: int) -> str:
    return f"wave{wave}DispatchedAt"


def wave_claimed(booking: Dict[str, Any], wave: int) -> bool:
    return bool(booking.get(_claim_attribute(wave)))


def wave_due_at(booking: Dict[str, Any], wave: int) -> Optional[dt.datetime]:
    """When `wave` should run for a paid booking; None without a payment time."""
    confirmed = _parse_iso(booking.get("paymentConfirmedAt"))
    if confirmed is None:
        return None
    return confirmed + dt.timedelta(minutes=WAVE_DELAY_MINUTES[wave])


def list_broadcasts(booking_id: str) -> List[Dict[str, Any]]:
    return booking_children(booking_id, "BROADCAST#")


# ---------------------------------------------------------------------------
# Accept code
# ---------------------------------------------------------------------------


def _generate_code() -> str:
    return "".join(secrets.choice(ACCEPT_CODE_ALPHABET) for _ in range(ACCEPT_CODE_LENGTH))


def issue_accept_code(booking: Dict[str, Any]) -> str:
    """Return the booking's accept code, allocating and persisting one if needed.

    The reverse lookup `ACCEPT#<code>` is claimed first so two bookings can
    never share a code; the booking then takes the code only if it has none.
    When another invocation got there first its code is returned instead.
    """
    existing = booking.get("acceptCode")
    if existing:
        return existing

    booking_id = booking["bookingId"]
    for _ in range(_ACCEPT_CODE_ATTEMPTS):
        code = _generate_code()
        now = _now_z()
        try:
            put_item(
                {
                    "PK": accept_code_pk(code),
                    "SK": BOOKING_SK,
                    "type": "ACCEPT_CODE",
                    "bookingId": booking_id,
                    "createdAt": now,
                },
                condition="attribute_not_exists(PK)",
            )
        except ConditionFailed:
            logger.info("[INFO] Accept code collision for %s, retrying", booking_id)
            continue

        try:
            update_item(
                booking_pk(booking_id),
                BOOKING_SK,
                {"acceptCode": code, "updatedAt": now},
                condition="attribute_exists(PK) AND attribute_not_exists(acceptCode)",
            )
        except ConditionFailed:
            current = load_booking(booking_id) or {}
            winner = current.get("acceptCode")
            if not winner:
                raise AcceptCodeError(f"Booking {booking_id} vanished while issuing accept code")
            booking["acceptCode"] = winner
            return winner
        booking["acceptCode"] = code
        return code
    raise AcceptCodeError(f"No unique accept code after {_ACCEPT_CODE_ATTEMPTS} attempts")


# ---------------------------------------------------------------------------
# Waves
# ---------------------------------------------------------------------------


def _result(booking_id: str, wave: int, status: str, **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "ok": True,
        "bookingId": booking_id,
        "wave": wave,
        "status": status,
        "sent": 0,
        "failed": 0,
        "providerIds": [],
    }
    out.update(extra)
    return out


def _claim_wave(booking: Dict[str, Any], wave: int, now: str) -> Optional[str]:
    """Conditionally mark the wave as started. Returns a skip reason on loss."""
    booking_id = booking["bookingId"]
    attribute = _claim_attribute(wave)
    try:
        update_item(
            booking_pk(booking_id),
            BOOKING_SK,
            {attribute: now},
            condition=f"#status = :pending AND attribute_not_exists({attribute})",
            names={"#status": "status"},
            values={":pending": PENDING_ASSIGNMENT},
        )
    except ConditionFailed:
        current = load_booking(booking_id) or {}
        if current.get("status") != PENDING_ASSIGNMENT:
            return f"status_{str(current.get('status') or 'missing').lower()}"
        return "already_dispatched"
    booking[attribute] = now
    return None


def _release_claim(booking_id: str, wave: int, claimed_at: str) -> None:
    attribute = _claim_attribute(wave)
    try:
        update_item(
            booking_pk(booking_id),
            BOOKING_SK,
            {attribute: None},
            condition=f"{attribute} = :claimed",
            values={":claimed": claimed_at},
        )
    except (ConditionFailed, BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Could not release wave %d claim for %s: %s", wave, booking_id, exc)


def _candidates(
    booking: Dict[str, Any],
    wave: int,
    notified: set,
) -> List[Tuple[Dict[str, Any], str]]:
    limit = WAVE_SIZES[wave]
    required_gender = booking.get("requiredGender")
    if wave < 3:
        picks = select_providers(
            booking["area"], limit, exclude_ids=notified, required_gender=required_gender
        )
        return [(provider, booking["area"]) for provider in picks]

    chosen: List[Tuple[Dict[str, Any], str]] = []
    excluded = set(notified)
    for area in neighbor_areas(booking["area"]):
        picks = select_providers(
            area,
            limit - len(chosen),
            exclude_ids=excluded,
            required_gender=required_gender,
        )
        for provider in picks:
            chosen.append((provider, area))
            excluded.add(provider["providerId"])
        if len(chosen) >= limit:
            break
    return chosen


def _send_broadcast(
    booking: Dict[str, Any],
    provider: Dict[str, Any],
    wave: int,
    source_area: str,
    text: str,
) -> Optional[Dict[str, Any]]:
    """Reserve the provider's Broadcast, send the offer, then record the outcome.

    Returns None when the provider already holds a Broadcast for this booking.
    """
    booking_id = booking["bookingId"]
    provider_id = provider["providerId"]
    phone = provider.get("whatsappPhone") or ""
    sent_at = _now_z()
    record: Dict[str, Any] = {
        "PK": booking_pk(booking_id),
        "SK": broadcast_sk(provider_id),
        "type": "BROADCAST",
        "bookingId": booking_id,
        "providerId": provider_id,
        "providerPhone": phone,
        "wave": wave,
        "sentAt": sent_at,
        "sourceArea": source_area,
        "deliveryStatus": "SENDING",
    }
    try:
        put_item(record, condition="attribute_not_exists(SK)")
    except ConditionFailed:
        logger.warning("[WARNING] Broadcast for %s/%s already recorded, not resending", booking_id, provider_id)
        return None
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Could not reserve broadcast %s/%s, offer not sent: %s", booking_id, provider_id, exc)
        record["deliveryStatus"] = "FAILED"
        record["errorMessage"] = f"store: {exc}"[:_MAX_ERROR_LENGTH]
        return record

    outcome: Dict[str, Any]
    try:
        delivery = send_whatsapp(phone, text)
    except Exception as exc:
        logger.error("[ERROR] Wave %d send to %s failed for %s: %s", wave, provider_id, booking_id, exc)
        outcome = {"deliveryStatus": "FAILED", "errorMessage": str(exc)[:_MAX_ERROR_LENGTH]}
    else:
        outcome = {
            "deliveryStatus": "STUBBED" if delivery.get("mode") == "stub" else "SENT",
            "deliveryId": delivery.get("deliveryId"),
            # Provider inbox index only lists offers that reached the provider.
            "GSI4PK": f"PROVIDER#{provider_id}",
            "GSI4SK": f"SENT#{sent_at}#BOOKING#{booking_id}",
        }
    record.update(outcome)

    try:
        update_item(booking_pk(booking_id), broadcast_sk(provider_id), outcome, condition="attribute_exists(SK)")
    except (ConditionFailed, BotoCoreError, ClientError) as exc:
        logger.error(
            "[ERROR] Broadcast %s/%s stays SENDING, outcome %s not recorded: %s",
            booking_id,
            provider_id,
            outcome["deliveryStatus"],
            exc,
        )
    return record


def dispatch_wave(booking_id: str, wave: int) -> Dict[str, Any]:
    """Run wave 1, 2 or 3 for a booking. Never raises for per-booking conditions."""
    if wave not in WAVE_SIZES:
        raise ValueError(f"Unknown wave {wave}")

    booking = load_booking(booking_id)
    if booking is None:
        logger.warning("[WARNING] Wave %d: booking %s not found", wave, booking_id)
        return _result(booking_id, wave, "skipped", ok=False, reason="booking_not_found")
    status = booking.get("status")
    if status != PENDING_ASSIGNMENT:
        logger.info("[INFO] Wave %d: booking %s is %s, nothing to do", wave, booking_id, status)
        return _result(booking_id, wave, "skipped", reason=f"status_{str(status).lower()}")

    broadcasts = list_broadcasts(booking_id)
    if wave == 1 and broadcasts:
        return _result(booking_id, wave, "skipped", reason="already_dispatched")
    if wave > 1 and any(int(b.get("wave") or 0) == wave for b in broadcasts):
        return _result(booking_id, wave, "skipped", reason="already_dispatched")

    now = _now_z()
    skip_reason = _claim_wave(booking, wave, now)
    if skip_reason:
        logger.info("[INFO] Wave %d: claim lost for %s (%s)", wave, booking_id, skip_reason)
        return _result(booking_id, wave, "skipped", reason=skip_reason)

    notified = {b.get("providerId") for b in broadcasts if b.get("providerId")}
    try:
        accept_code = issue_accept_code(booking)
        candidates = _candidates(booking, wave, notified)
    except (BotoCoreError, ClientError, AcceptCodeError):
        # Nothing was sent yet; give the wave back so a retry or sweep can run it.
        _release_claim(booking_id, wave, now)
        raise

    if not candidates:
        reason = "no_eligible_neighbors" if wave == 3 else "no_eligible_providers"
        logger.info("[INFO] Wave %d: no eligible providers for %s (%s)", wave, booking_id, reason)
        record_event(booking_id, "broadcast_skipped", {"wave": wave, "reason": reason})
        _emit_structured_observability(
            component="dispatch",
            event="wave_empty",
            booking_id=booking_id,
            extra={"wave": wave, "reason": reason},
        )
        return _result(booking_id, wave, "no_eligible_providers", reason=reason)

    text = build_broadcast_message(booking, accept_code)
    records = []
    for provider, source_area in candidates:
        record = _send_broadcast(booking, provider, wave, source_area, text)
        if record is not None:
            records.append(record)
    provider_ids = [r["providerId"] for r in records]
    sent = sum(1 for r in records if r["deliveryStatus"] != "FAILED")
    failed = len(records) - sent

    record_event(
        booking_id,
        "broadcast_sent",
        {"wave": wave, "sent": sent, "failed": failed, "providerIds": provider_ids},
    )
    _emit_structured_observability(
        component="dispatch",
        event="wave_dispatched",
        booking_id=booking_id,
        extra={"wave": wave, "sent": sent, "failed": failed},
    )
    return _result(
        booking_id,
        wave,
        "dispatched",
        sent=sent,
        failed=failed,
        providerIds=provider_ids,
    )
