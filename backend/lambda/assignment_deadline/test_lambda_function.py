"""test_lambda_function.py — Deadline schedule target tests for assignment_deadline."""

from __future__ import annotations

import importlib.util
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

from testkit import NOW, LifecycleTestCase, minutes  # noqa: E402

_spec = importlib.util.spec_from_file_location(
    "assignment_deadline",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
assignment_deadline = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(assignment_deadline)

LONG_AGO = NOW - minutes(60 * 24 * 400)


class AssignmentDeadlineHandlerTests(LifecycleTestCase):
    def test_missing_booking_id(self):
        resp = assignment_deadline.lambda_handler({}, None)
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(resp["body"]["status"], "missing_booking_id")

    def test_expires_and_refunds(self):
        self.seed_booking("B2", confirmed_at=LONG_AGO)
        resp = assignment_deadline.lambda_handler({"bookingId": "B2"}, None)

        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(resp["body"]["status"], "refunded")
        self.assertEqual(self.booking("B2")["status"], "REFUNDED")
        self.assertIn("booking_unfilled", self.event_names("B2"))

    def test_repeated_delivery_refunds_once(self):
        self.seed_booking("B2", confirmed_at=LONG_AGO)
        assignment_deadline.lambda_handler({"bookingId": "B2"}, None)
        resp = assignment_deadline.lambda_handler({"bookingId": "B2"}, None)

        self.assertEqual(resp["body"]["status"], "already_refunded")
        self.assertEqual(len(self.refunds.requests), 1)

    def test_assigned_booking(self):
        self.seed_booking("B1", status="ASSIGNED", assignedProviderId="P5", confirmed_at=LONG_AGO)
        resp = assignment_deadline.lambda_handler({"bookingId": "B1"}, None)

        self.assertEqual(resp["body"]["status"], "already_assigned")
        self.assertEqual(self.refunds.requests, [])

    def test_unknown_booking(self):
        resp = assignment_deadline.lambda_handler({"bookingId": "GHOST"}, None)
        self.assertEqual(resp["statusCode"], 200)
        self.assertFalse(resp["body"]["ok"])


if __name__ == "__main__":
    unittest.main()
