"""test_sweeps.py — Backstop jobs over the status index."""

from __future__ import annotations

import unittest
from unittest.mock import patch

from testkit import NOW, LifecycleTestCase, minutes

from boekdichtbij_shared import sweeps
from boekdichtbij_shared.serialization import _iso
from boekdichtbij_shared.state_machine import REFUND_BLOCKED, REFUND_PENDING

AREAS = ["ridderkerk"]


class CancelUnpaidTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.seed_booking("B5", status="PENDING_PAYMENT", created_at=NOW - minutes(30))
        self.seed_booking("B6", status="PENDING_PAYMENT", created_at=NOW - minutes(2))

    def test_dry_run_reports_without_writing(self):
        stats = sweeps.cancel_unpaid(AREAS, now=NOW, dry_run=True)

        self.assertEqual(stats["wouldCancel"], ["B5"])
        self.assertEqual(stats["cancelled"], 0)
        self.assertTrue(stats["dryRun"])
        self.assertEqual(self.booking("B5")["status"], "PENDING_PAYMENT")

    def test_cancels_only_past_grace(self):
        stats = sweeps.cancel_unpaid(AREAS, now=NOW)

        self.assertEqual((stats["scanned"], stats["cancelled"]), (1, 1))
        cancelled = self.booking("B5")
        self.assertEqual(cancelled["status"], "CANCELLED")
        self.assertEqual(cancelled["cancelReason"], "payment_timeout")
        self.assertIn("booking_cancelled_unpaid", self.event_names("B5"))
        self.assertEqual(self.booking("B6")["status"], "PENDING_PAYMENT")

    def test_custom_grace(self):
        stats = sweeps.cancel_unpaid(AREAS, now=NOW, grace_minutes=1)
        self.assertEqual(stats["cancelled"], 2)

    def test_store_error_is_counted(self):
        self.ddb.inject_error("update_item")
        stats = sweeps.cancel_unpaid(AREAS, now=NOW)
        self.assertEqual(stats["errors"], 1)
        self.assertEqual(self.booking("B5")["status"], "PENDING_PAYMENT")


class ExpirePendingTests(LifecycleTestCase):
    def test_only_overdue_bookings_expire(self):
        self.seed_booking("B1", confirmed_at=NOW - minutes(20))
        self.seed_booking("B2", confirmed_at=NOW)
        self.seed_booking("B3", assignmentDeadline=None)
        self.seed_booking("B4", status="ASSIGNED", assignedProviderId="P1", confirmed_at=NOW - minutes(20))

        stats = sweeps.expire_pending(AREAS, now=NOW)

        self.assertEqual(stats["scanned"], 3)
        self.assertEqual(stats["expired"], 1)
        self.assertEqual(stats["skipped_not_due"], 1)
        self.assertEqual(stats["skipped_missing_deadline"], 1)
        self.assertEqual(self.booking("B1")["status"], "REFUNDED")
        self.assertEqual(self.booking("B2")["status"], "PENDING_ASSIGNMENT")
        self.assertEqual(self.booking("B4")["status"], "ASSIGNED")

    def test_rerun_finds_nothing(self):
        self.seed_booking("B1", confirmed_at=NOW - minutes(20))
        sweeps.expire_pending(AREAS, now=NOW)
        stats = sweeps.expire_pending(AREAS, now=NOW + minutes(1))

        self.assertEqual(stats["scanned"], 0)
        self.assertEqual(len(self.refunds.requests), 1)


class DispatchWavesTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.seed_providers(10)

    def test_runs_every_due_wave_that_never_fired(self):
        self.seed_booking("B1", confirmed_at=NOW - minutes(6))

        stats = sweeps.dispatch_waves(AREAS, now=NOW)

        self.assertEqual((stats["wave1"], stats["wave2"], stats["wave3"]), (1, 1, 0))
        self.assertEqual(len(self.broadcasts("B1")), 8)

    def test_second_pass_sends_nothing(self):
        self.seed_booking("B1", confirmed_at=NOW - minutes(6))
        sweeps.dispatch_waves(AREAS, now=NOW)
        sent = len(self.notifier.sent)

        stats = sweeps.dispatch_waves(AREAS, now=NOW + minutes(1))
        self.assertEqual((stats["wave1"], stats["wave2"]), (0, 0))
        self.assertEqual(len(self.notifier.sent), sent)

    def test_overdue_booking_is_left_for_expiry(self):
        self.seed_booking("B1", confirmed_at=NOW - minutes(20))
        stats = sweeps.dispatch_waves(AREAS, now=NOW)

        self.assertEqual(stats["scanned"], 1)
        self.assertEqual(self.notifier.sent, [])


class ResweepUnfilledTests(LifecycleTestCase):
    def test_retries_stuck_refunds_only(self):
        stale = _iso(NOW - minutes(30))
        self.seed_booking("B7", status="UNFILLED", refundState=REFUND_PENDING, updatedAt=stale)
        self.seed_booking("B8", status="UNFILLED", refundState=REFUND_BLOCKED, updatedAt=stale)
        self.seed_booking("B9", status="UNFILLED", updatedAt=_iso(NOW - minutes(1)))

        stats = sweeps.resweep_unfilled(AREAS, now=NOW)

        self.assertEqual(stats["scanned"], 2)
        self.assertEqual(stats["refunded"], 1)
        self.assertEqual(stats["skipped"], 1)
        self.assertEqual(self.booking("B7")["status"], "REFUNDED")
        self.assertEqual(self.booking("B8")["status"], "UNFILLED")
        self.assertEqual(self.booking("B9")["status"], "UNFILLED")
        self.assertEqual([r["idempotency_key"] for r in self.refunds.requests], ["refund:B7"])

    def test_blocked_refunds_do_not_use_up_the_limit(self):
        stale = _iso(NOW - minutes(30))
        for n in range(5):
            self.seed_booking(
                f"X{n}",
                status="UNFILLED",
                refundState=REFUND_BLOCKED,
                created_at=NOW - minutes(120 - n),
                updatedAt=stale,
            )
        self.seed_booking("B7", status="UNFILLED", refundState=REFUND_PENDING, updatedAt=stale)

        for _ in range(2):
            stats = sweeps.resweep_unfilled(AREAS, now=NOW, limit_per_area=5)

        self.assertEqual(self.booking("B7")["status"], "REFUNDED")
        self.assertEqual([r["idempotency_key"] for r in self.refunds.requests], ["refund:B7"])
        self.assertEqual(stats["scanned"], 0)


class RunSweepsTests(LifecycleTestCase):
    def test_unknown_job(self):
        with self.assertRaises(ValueError):
            sweeps.run_sweeps("vacuum")

    def test_dry_run_only_previews_cancellations(self):
        self.seed_booking("B5", status="PENDING_PAYMENT", created_at=NOW - minutes(30))
        self.seed_booking("B1", confirmed_at=NOW - minutes(20))

        results = sweeps.run_sweeps("all", areas=AREAS, now=NOW, dry_run=True)

        self.assertEqual(list(results), list(sweeps.JOBS))
        self.assertEqual(results["cancel_unpaid"]["wouldCancel"], ["B5"])
        self.assertEqual(results["expire_pending"], {"skipped": "dry_run"})
        self.assertEqual(self.booking("B1")["status"], "PENDING_ASSIGNMENT")

    def test_single_job(self):
        self.seed_booking("B1", confirmed_at=NOW - minutes(20))
        results = sweeps.run_sweeps("expire_pending", areas=AREAS, now=NOW)

        self.assertEqual(list(results), ["expire_pending"])
        self.assertEqual(results["expire_pending"]["expired"], 1)

    def test_default_areas_cover_every_bookable_area(self):
        with patch.object(sweeps, "SWEEP_AREAS", ()):
            self.assertEqual(
                sweeps._areas(None),
                ["ridderkerk", "barendrecht", "rotterdam-zuid", "schiedam", "vlaardingen"],
            )
        with patch.object(sweeps, "SWEEP_AREAS", ("hoogvliet", "schiedam")):
            self.assertEqual(sweeps._areas(None)[:3], ["hoogvliet", "schiedam", "ridderkerk"])
            self.assertEqual(len(sweeps._areas(None)), 6)
        self.assertEqual(sweeps._areas(["barendrecht"]), ["barendrecht"])

    def test_booking_in_hidden_area_still_expires(self):
        self.seed_booking("B3", area="schiedam", confirmed_at=NOW - minutes(20))

        with patch.object(sweeps, "SWEEP_AREAS", ()):
            results = sweeps.run_sweeps("all", now=NOW)

        self.assertEqual(results["expire_pending"]["expired"], 1)
        self.assertEqual(self.booking("B3")["status"], "REFUNDED")


if __name__ == "__main__":
    unittest.main()
