"""test_lifecycle.py — Paid booking from confirmation to ASSIGNED or REFUNDED."""

from __future__ import annotations

import unittest

from testkit import NOW, LifecycleTestCase, minutes, phone_for

from boekdichtbij_shared import acceptance, bookings, dispatch, messages, recovery, sweeps


class AssignedInSecondWaveTests(LifecycleTestCase):
    def test_wave_two_provider_wins_and_deadline_is_a_no_op(self):
        self.seed_providers(10)
        self.seed_booking("B1", status="PENDING_PAYMENT")

        bookings.confirm_payment("B1", "pi_B1", "cs_B1", now=NOW)
        self.assertEqual(sorted(b["providerId"] for b in self.broadcasts()), ["P1", "P2", "P3"])

        dispatch.dispatch_wave("B1", 2)
        offered = sorted(b["providerId"] for b in self.broadcasts())
        self.assertEqual(offered, [f"P{n}" for n in range(1, 9)])

        code = self.booking()["acceptCode"]
        self.notifier.sent.clear()
        result = acceptance.handle_inbound_message(phone_for("P5"), f"JA {code}", now=NOW + minutes(7))

        self.assertEqual(result.outcome, "assigned")
        booking = self.booking()
        self.assertEqual((booking["status"], booking["assignedProviderId"]), ("ASSIGNED", "P5"))
        self.assertEqual(len(self.notifier.texts_to(phone_for("P5"))), 2)
        for loser in ("P1", "P2", "P3", "P4", "P6", "P7", "P8"):
            self.assertEqual(self.notifier.texts_to(phone_for(loser)), [messages.ALREADY_TAKEN])
        self.assertEqual(self.notifier.texts_to(phone_for("P9")), [])

        deadline = recovery.enforce_deadline("B1", now=NOW + minutes(15))
        self.assertEqual(deadline["status"], "already_assigned")
        self.assertEqual(self.refunds.requests, [])

        wave3 = dispatch.dispatch_wave("B1", 3)
        self.assertEqual(wave3["reason"], "status_assigned")


class UnfilledAndRefundedTests(LifecycleTestCase):
    def test_nobody_accepts_then_exactly_one_refund(self):
        self.seed_providers(3)
        self.seed_booking("B2", status="PENDING_PAYMENT")

        bookings.confirm_payment("B2", "pi_B2", "cs_B2", now=NOW)
        dispatch.dispatch_wave("B2", 2)
        dispatch.dispatch_wave("B2", 3)

        first = recovery.enforce_deadline("B2", now=NOW + minutes(15))
        self.assertEqual(first["status"], "refunded")
        booking = self.booking("B2")
        self.assertEqual(booking["status"], "REFUNDED")

        stats = sweeps.expire_pending(["ridderkerk"], now=NOW + minutes(16))
        resweep = sweeps.resweep_unfilled(["ridderkerk"], now=NOW + minutes(30))
        repeat = recovery.enforce_deadline("B2", now=NOW + minutes(31))

        self.assertEqual(stats["scanned"], 0)
        self.assertEqual(resweep["scanned"], 0)
        self.assertEqual(repeat["status"], "already_refunded")
        self.assertEqual(len(self.refunds.requests), 1)
        self.assertEqual(self.refunds.requests[0]["idempotency_key"], "refund:B2")
        self.assertEqual(self.booking("B2")["refundId"], booking["refundId"])

        late = acceptance.handle_inbound_message(phone_for("P1"), "JA", now=NOW + minutes(16))
        self.assertEqual(late.outcome, "no_open_booking")


if __name__ == "__main__":
    unittest.main()
