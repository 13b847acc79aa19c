"""testkit.py — Fixtures shared by the layer and handler tests.

`LifecycleTestCase` wires a fresh FakeDynamoDB, a recording notifier, a
recording scheduler and an idempotency-aware Stripe refund double into the
shared layer for the duration of each test.
"""

from __future__ import annotations

import datetime as dt
import itertools
import threading
import unittest
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import patch

from fake_ddb import FakeDynamoDB

from boekdichtbij_shared import acceptance, bookings, dispatch, payments, recovery, store
from boekdichtbij_shared.notifier import NotifierError
from boekdichtbij_shared.serialization import _iso
from boekdichtbij_shared.store import (
    BOOKING_SK,
    PHONE_SK,
    PROVIDER_SK,
    booking_pk,
    phone_pk,
    provider_pk,
    status_index_keys,
)

NOW = dt.datetime(2026, 3, 2, 9, 0, 0, tzinfo=dt.timezone.utc)


def minutes(n: float) -> dt.timedelta:
    return dt.timedelta(minutes=n)


def phone_for(provider_id: str) -> str:
    digits = "".join(ch for ch in provider_id if ch.isdigit()) or "0"
    return f"+3161000{int(digits):04d}"


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def booking_item(
    booking_id: str = "B1",
    *,
    area: str = "ridderkerk",
    status: str = "PENDING_ASSIGNMENT",
    created_at: Optional[dt.datetime] = None,
    confirmed_at: Optional[dt.datetime] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    created = _iso(created_at or NOW - minutes(2))
    item: Dict[str, Any] = {
        "PK": booking_pk(booking_id),
        "SK": BOOKING_SK,
        "type": "BOOKING",
        "bookingId": booking_id,
        "status": status,
        "area": area,
        "serviceKey": "haircut_men",
        "serviceName": "Knippen heren",
        "durationMin": 30,
        "priceCents": 3500,
        "payoutCents": 2800,
        "timeWindowLabel": "Vandaag 14:00-16:00",
        "address": "Dorpsstraat 1",
        "postcode": "2981 AA",
        "place": "Ridderkerk",
        "customerName": "Jan Jansen",
        "phone": "+31612345678",
        "createdAt": created,
        "updatedAt": created,
    }
    if status != "PENDING_PAYMENT":
        confirmed = confirmed_at or NOW
        item.update(
            {
                "paymentConfirmedAt": _iso(confirmed),
                "assignmentDeadline": _iso(confirmed + minutes(15)),
                "stripePaymentStatus": "PAID",
                "stripePaymentIntentId": f"pi_{booking_id}",
                "stripeSessionId": f"cs_{booking_id}",
            }
        )
    item.update(overrides)
    item.update(status_index_keys(item["area"], item["status"], item["createdAt"], booking_id))
    return {k: v for k, v in item.items() if v is not None}


def provider_items(
    provider_id: str,
    *,
    area: str = "ridderkerk",
    rank: int = 100,
    **overrides: Any,
) -> List[Dict[str, Any]]:
    phone = overrides.pop("whatsappPhone", phone_for(provider_id))
    profile: Dict[str, Any] = {
        "PK": provider_pk(provider_id),
        "SK": PROVIDER_SK,
        "type": "PROVIDER",
        "providerId": provider_id,
        "area": area,
        "isActive": True,
        "claimedAt": "2026-01-01T00:00:00.000Z",
        "whatsappPhone": phone,
        "whatsappStatus": "VALID",
        "reliabilityScore": rank,
        "GSI2PK": f"AREA#{area}",
        "GSI2SK": f"RANK#{rank:06d}#PROVIDER#{provider_id}",
    }
    profile.update(overrides)
    mapping = {"PK": phone_pk(phone), "SK": PHONE_SK, "type": "PHONE", "providerId": provider_id}
    return [profile, mapping]


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """send_whatsapp replacement; phones in `failing` raise NotifierError."""

    def __init__(self):
        self.sent: List[Dict[str, str]] = []
        self.failing: set = set()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def send(self, to_e164: str, text: str) -> Dict[str, str]:
        if to_e164 in self.failing:
            raise NotifierError(f"Twilio rejected {to_e164}")
        with self._lock:
            sid = f"SM{next(self._ids):06d}"
            self.sent.append({"to": to_e164, "text": text, "sid": sid})
        return {"deliveryId": sid, "mode": "twilio"}

    def texts_to(self, phone: str) -> List[str]:
        return [m["text"] for m in self.sent if m["to"] == phone]


class FakeStripeRefunds:
    """Behaves like Stripe for repeated requests carrying the same idempotency key."""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.by_key: Dict[str, SimpleNamespace] = {}
        self.error: Optional[Exception] = None
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def create(self, **kwargs: Any) -> SimpleNamespace:
        with self._lock:
            self.requests.append(kwargs)
            if self.error is not None:
                raise self.error
            key = kwargs["idempotency_key"]
            if key not in self.by_key:
                self.by_key[key] = SimpleNamespace(
                    id=f"re_{next(self._ids):04d}", amount=3500, status="succeeded"
                )
            return self.by_key[key]


class LifecycleTestCase(unittest.TestCase):
    """Shared layer against the in-memory table with recording collaborators."""

    def setUp(self):
        self.ddb = FakeDynamoDB()
        self.notifier = RecordingNotifier()
        self.refunds = FakeStripeRefunds()
        self.scheduled: List[tuple] = []
        self.cancelled: List[tuple] = []

        def _schedule_deadline(booking_id, deadline_iso):
            self.scheduled.append(("deadline", booking_id, deadline_iso))
            return True

        def _schedule_wave(booking_id, wave, run_at):
            self.scheduled.append((f"wave{wave}", booking_id, _iso(run_at)))
            return True

        def _cancel(booking_id, kinds=("deadline", "wave2", "wave3")):
            self.cancelled.append((booking_id, tuple(kinds)))
            return {kind: "ok" for kind in kinds}

        patches = [
            patch.object(store, "_get_ddb", return_value=self.ddb),
            patch.object(dispatch, "send_whatsapp", side_effect=self.notifier.send),
            patch.object(acceptance, "send_whatsapp", side_effect=self.notifier.send),
            patch.object(bookings, "schedule_assignment_deadline", side_effect=_schedule_deadline),
            patch.object(bookings, "schedule_wave", side_effect=_schedule_wave),
            patch.object(acceptance, "cancel_booking_schedules", side_effect=_cancel),
            patch.object(recovery, "cancel_booking_schedules", side_effect=_cancel),
            patch.object(payments, "STRIPE_SECRET_KEY", "sk_test_123"),
            patch.object(payments.stripe.Refund, "create", self.refunds.create),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    # -- seeding ---------------------------------------------------------

    def seed_booking(self, booking_id: str = "B1", **kwargs: Any) -> Dict[str, Any]:
        item = booking_item(booking_id, **kwargs)
        self.ddb.seed(item)
        return item

    def seed_providers(self, count: int, *, area: str = "ridderkerk", start: int = 1, **kwargs: Any) -> List[str]:
        ids = []
        for n in range(start, start + count):
            provider_id = f"P{n}"
            for item in provider_items(provider_id, area=area, rank=n * 10, **kwargs):
                self.ddb.seed(item)
            ids.append(provider_id)
        return ids

    def seed_provider(self, provider_id: str, **kwargs: Any) -> None:
        for item in provider_items(provider_id, **kwargs):
            self.ddb.seed(item)

    # -- reading ---------------------------------------------------------

    def booking(self, booking_id: str = "B1") -> Dict[str, Any]:
        return self.ddb.get(booking_pk(booking_id), BOOKING_SK)

    def broadcasts(self, booking_id: str = "B1") -> List[Dict[str, Any]]:
        return self.ddb.items_with_prefix(booking_pk(booking_id), "BROADCAST#")

    def event_names(self, booking_id: str = "B1") -> List[str]:
        return [e["eventName"] for e in self.ddb.items_with_prefix(booking_pk(booking_id), "EVENT#")]
