"""test_lambda_function.py — Scheduler target tests for wave_dispatch."""

from __future__ import annotations

import importlib.util
import os
import sys
import unittest

from botocore.exceptions import ClientError

sys.path.insert(0, os.path.dirname(__file__))

from testkit import LifecycleTestCase  # noqa: E402

_spec = importlib.util.spec_from_file_location(
    "wave_dispatch",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
wave_dispatch = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(wave_dispatch)


class WaveDispatchHandlerTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.seed_booking("B1")
        self.seed_providers(10)

    def test_scheduled_wave_two(self):
        wave_dispatch.lambda_handler({"bookingId": "B1", "wave": 1}, None)
        result = wave_dispatch.lambda_handler({"bookingId": "B1", "wave": 2}, None)

        self.assertEqual(result["status"], "dispatched")
        self.assertEqual(result["providerIds"], ["P4", "P5", "P6", "P7", "P8"])

    def test_wave_defaults_to_one(self):
        result = wave_dispatch.lambda_handler({"bookingId": "B1"}, None)
        self.assertEqual(result["providerIds"], ["P1", "P2", "P3"])

    def test_repeated_invocation_is_skipped(self):
        wave_dispatch.lambda_handler({"bookingId": "B1", "wave": "2"}, None)
        again = wave_dispatch.lambda_handler({"bookingId": "B1", "wave": "2"}, None)
        self.assertEqual(again["status"], "skipped")

    def test_invalid_events(self):
        for event in ({}, {"bookingId": "B1", "wave": 4}, {"bookingId": "B1", "wave": "two"}, None):
            result = wave_dispatch.lambda_handler(event, None)
            self.assertFalse(result["ok"])
            self.assertEqual(result["status"], "invalid_event")
        self.assertEqual(self.notifier.sent, [])

    def test_store_errors_propagate_for_retry(self):
        self.ddb.inject_error("get_item")
        with self.assertRaises(ClientError):
            wave_dispatch.lambda_handler({"bookingId": "B1", "wave": 2}, None)


if __name__ == "__main__":
    unittest.main()
