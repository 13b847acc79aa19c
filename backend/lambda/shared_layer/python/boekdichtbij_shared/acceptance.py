"""boekdichtbij_shared.acceptance — Resolve provider replies into at most one assignment.

Providers answer a broadcast on WhatsApp with a button (`accept_<bookingId>`
/ `decline_<bookingId>`) or free text ("JA K7M2Q", "ja", "NEE"). The
resolver maps the sender to a provider, finds the booking the reply is
about, and races for it with the single conditional ASSIGNED transition.
Whoever loses the race is told the booking is taken; nobody gets a 5xx.

Unknown senders are ignored without a reply so the inbound channel does
not retry.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from boekdichtbij_shared import messages
from boekdichtbij_shared.config import GSI_PROVIDER_INBOX
from boekdichtbij_shared.dispatch import list_broadcasts
from boekdichtbij_shared.events import record_event
from boekdichtbij_shared.notifier import normalize_phone, send_whatsapp
from boekdichtbij_shared.providers import get_provider, provider_id_for_phone
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
    apply_transition,
    load_booking,
    run_side_effects,
)
from boekdichtbij_shared.store import (
    BOOKING_SK,
    accept_code_pk,
    booking_pk,
    broadcast_sk,
    get_item,
    query,
)

logger = logging.getLogger(__name__)

ACCEPT_TOKENS = frozenset({"JA", "YES", "ACCEPTEREN", "ACCEPT"})
DECLINE_TOKENS = frozenset({"NEE", "NO", "WEIGEREN"})

_CODE_RE = re.compile(r"^[A-Z0-9]{4,6}$")
_INBOX_SCAN_LIMIT = 20


@dataclass
class InboundIntent:
    action: str
    booking_id: Optional[str] = None
    accept_code: Optional[str] = None
    malformed_code: bool = False


@dataclass
class InboundResult:
    outcome: str
    reply: Optional[str] = None
    booking_id: Optional[str] = None
    provider_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _extract_code(rest: str) -> InboundIntent:
    remainder = rest.strip()
    if remainder.startswith("CODE"):
        remainder = remainder[len("CODE"):].lstrip(" :")
    token = remainder.split(" ", 1)[0].strip(".,!?") if remainder else ""
    if not token:
        return InboundIntent("accept")
    if _CODE_RE.match(token):
        return InboundIntent("accept", accept_code=token)
    return InboundIntent("accept", malformed_code=True)


def parse_inbound(body_text: Optional[str], button_payload: Optional[str] = None) -> InboundIntent:
    """Classify a reply as accept / decline / unknown."""
    payload = (button_payload or "").strip()
    lowered = payload.lower()
    if lowered.startswith("accept_") and len(payload) > len("accept_"):
        return InboundIntent("accept", booking_id=payload[len("accept_"):])
    if lowered.startswith("decline_") and len(payload) > len("decline_"):
        return InboundIntent("decline", booking_id=payload[len("decline_"):])

    text = " ".join((body_text or "").upper().split())
    if not text:
        return InboundIntent("unknown")
    first, _, rest = text.partition(" ")
    first = first.strip(".,!?")
    if first in ACCEPT_TOKENS:
        return _extract_code(rest)
    if first in DECLINE_TOKENS:
        return InboundIntent("decline")
    return InboundIntent("unknown")


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------


def _booking_id_for_code(code: str) -> Optional[str]:
    mapping = get_item(accept_code_pk(code), BOOKING_SK, consistent=False)
    return (mapping or {}).get("bookingId") or None


def open_offers(provider_id: str) -> List[Dict[str, Any]]:
    """Bookings still awaiting assignment that were offered to this provider, newest first."""
    items, _ = query(
        "GSI4PK = :pk",
        values={":pk": f"PROVIDER#{provider_id}"},
        index=GSI_PROVIDER_INBOX,
        scan_forward=False,
        limit=_INBOX_SCAN_LIMIT,
    )
    seen = set()
    offers: List[Dict[str, Any]] = []
    for item in items:
        booking_id = item.get("bookingId")
        if not booking_id or booking_id in seen:
            continue
        seen.add(booking_id)
        booking = load_booking(booking_id)
        if booking and booking.get("status") == PENDING_ASSIGNMENT:
            offers.append(booking)
    return offers


def _was_offered(booking_id: str, provider_id: str) -> bool:
    return get_item(booking_pk(booking_id), broadcast_sk(provider_id), consistent=True) is not None


# ---------------------------------------------------------------------------
# Post-assignment notifications
# ---------------------------------------------------------------------------


def _notify_winner(booking: Dict[str, Any], phone: str) -> None:
    send_whatsapp(phone, messages.build_assigned_confirmation())
    send_whatsapp(phone, messages.build_winner_details(booking))


def notify_losers(booking_id: str, winner_id: str) -> Dict[str, str]:
    """Tell every other offered provider the booking is gone, one at a time."""
    results: Dict[str, str] = {}
    for broadcast in list_broadcasts(booking_id):
        provider_id = broadcast.get("providerId")
        if not provider_id or provider_id == winner_id:
            continue
        if broadcast.get("deliveryStatus") == "FAILED":
            results[provider_id] = "skipped_undelivered"
            continue
        try:
            phone = broadcast.get("providerPhone") or (get_provider(provider_id) or {}).get("whatsappPhone")
            if not phone:
                results[provider_id] = "skipped_no_phone"
                continue
            send_whatsapp(phone, messages.ALREADY_TAKEN)
            results[provider_id] = "notified"
        except Exception as exc:
            logger.error("[ERROR] Failed to notify losing provider %s for %s: %s", provider_id, booking_id, exc)
            results[provider_id] = "failed"
    return results


def _record_assignment_events(booking_id: str, provider_id: str, accepted_at: dt.datetime) -> None:
    record_event(booking_id, "provider_accepted", {"providerId": provider_id}, at=_iso(accepted_at))
    later = accepted_at + dt.timedelta(milliseconds=1)
    record_event(booking_id, "booking_assigned", {"providerId": provider_id}, at=_iso(later))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _resolve_target(provider_id: str, intent: InboundIntent) -> InboundResult:
    """Returns InboundResult with outcome 'resolved' and booking_id, or a terminal reply."""
    if intent.booking_id:
        return InboundResult("resolved", booking_id=intent.booking_id, provider_id=provider_id)
    if intent.malformed_code:
        return InboundResult("invalid_code", messages.INVALID_CODE, provider_id=provider_id)
    if intent.accept_code:
        booking_id = _booking_id_for_code(intent.accept_code)
        if not booking_id:
            return InboundResult("invalid_code", messages.INVALID_CODE, provider_id=provider_id)
        return InboundResult("resolved", booking_id=booking_id, provider_id=provider_id)

    offers = open_offers(provider_id)
    if not offers:
        return InboundResult("no_open_booking", messages.NO_OPEN_BOOKING, provider_id=provider_id)
    if len(offers) > 1:
        return InboundResult("ambiguous", messages.AMBIGUOUS_BOOKING, provider_id=provider_id)
    return InboundResult("resolved", booking_id=offers[0]["bookingId"], provider_id=provider_id)


def _accept(
    booking: Dict[str, Any],
    provider_id: str,
    provider_phone: str,
    now: dt.datetime,
    via: str,
) -> InboundResult:
    booking_id = booking["bookingId"]
    status = booking.get("status")
    if status == ASSIGNED and booking.get("assignedProviderId") == provider_id:
        return InboundResult("already_assigned_to_you", messages.ASSIGNED_CONFIRM, booking_id, provider_id)
    if status == ASSIGNED:
        return InboundResult("already_taken", messages.ALREADY_TAKEN, booking_id, provider_id)
    if status != PENDING_ASSIGNMENT:
        return InboundResult("window_closed", messages.WINDOW_CLOSED, booking_id, provider_id)

    deadline = _parse_iso(booking.get("assignmentDeadline"))
    if deadline is not None and now >= deadline:
        logger.info("[INFO] Late acceptance by %s for %s (deadline %s)", provider_id, booking_id, deadline)
        return InboundResult("window_closed", messages.WINDOW_CLOSED, booking_id, provider_id)

    result = apply_transition(
        booking,
        "provider_accepted",
        {"assignedProviderId": provider_id, "assignedAt": _iso(now), "acceptedVia": via},
        now=_iso(now),
    )
    if not result.applied:
        current = result.booking or {}
        if current.get("assignedProviderId") == provider_id:
            return InboundResult("already_assigned_to_you", messages.ASSIGNED_CONFIRM, booking_id, provider_id)
        logger.info("[INFO] Provider %s lost the race for %s (%s)", provider_id, booking_id, result.outcome)
        return InboundResult("already_taken", messages.ALREADY_TAKEN, booking_id, provider_id)

    assigned = result.booking
    run_side_effects(
        booking_id,
        "provider_accepted",
        {
            "cancel_schedules": lambda: cancel_booking_schedules(booking_id),
            "record_event": lambda: _record_assignment_events(booking_id, provider_id, now),
            "notify_winner": lambda: _notify_winner(assigned, provider_phone),
            "notify_losers": lambda: notify_losers(booking_id, provider_id),
        },
    )
    _emit_structured_observability(
        component="acceptance",
        event="booking_assigned",
        booking_id=booking_id,
        extra={"provider_id": provider_id, "via": via},
    )
    return InboundResult("assigned", None, booking_id, provider_id)


def handle_inbound_message(
    from_phone: str,
    body_text: Optional[str],
    button_payload: Optional[str] = None,
    *,
    now: Optional[dt.datetime] = None,
) -> InboundResult:
    """Process one inbound provider message. The result's reply goes back to the sender."""
    now = now or _utcnow()
    phone = normalize_phone(from_phone)
    provider_id = provider_id_for_phone(phone)
    if not provider_id:
        logger.info("[INFO] Ignoring inbound message from unknown sender %s", phone)
        return InboundResult("unknown_sender")

    intent = parse_inbound(body_text, button_payload)
    if intent.action == "unknown":
        return InboundResult("unknown_reply", messages.UNKNOWN_REPLY, provider_id=provider_id)

    target = _resolve_target(provider_id, intent)
    if target.outcome != "resolved":
        if intent.action == "decline" and target.outcome in ("no_open_booking", "ambiguous"):
            return InboundResult("declined", messages.DECLINE_ACK, provider_id=provider_id)
        return target

    booking_id = target.booking_id
    booking = load_booking(booking_id)
    if booking is None or not _was_offered(booking_id, provider_id):
        logger.warning("[WARNING] Provider %s replied for %s without an offer", provider_id, booking_id)
        return InboundResult("no_open_booking", messages.NO_OPEN_BOOKING, booking_id, provider_id)

    if intent.action == "decline":
        record_event(booking_id, "provider_declined", {"providerId": provider_id})
        return InboundResult("declined", messages.DECLINE_ACK, booking_id, provider_id)

    if intent.booking_id:
        via = "button"
    elif intent.accept_code:
        via = "code"
    else:
        via = "reply"
    return _accept(booking, provider_id, phone, now, via)
