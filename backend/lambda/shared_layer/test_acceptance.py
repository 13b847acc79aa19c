"""test_acceptance.py — Provider replies, target resolution and the acceptance race."""

from __future__ import annotations

import http.client
import threading
import unittest
from unittest.mock import patch

from testkit import NOW, LifecycleTestCase, minutes, phone_for

from boekdichtbij_shared import acceptance, dispatch, messages
from boekdichtbij_shared.acceptance import parse_inbound


class ParseInboundTests(unittest.TestCase):
    def test_button_payloads(self):
        self.assertEqual(parse_inbound("", "accept_B1").booking_id, "B1")
        decline = parse_inbound(None, "decline_B1")
        self.assertEqual((decline.action, decline.booking_id), ("decline", "B1"))

    def test_text_with_code(self):
        intent = parse_inbound("ja k7m2q")
        self.assertEqual((intent.action, intent.accept_code), ("accept", "K7M2Q"))
        self.assertEqual(parse_inbound("JA code: K7M2Q").accept_code, "K7M2Q")
        self.assertEqual(parse_inbound("Accepteren K7M2Q!").accept_code, "K7M2Q")

    def test_text_without_code(self):
        intent = parse_inbound("  Ja ")
        self.assertEqual(intent.action, "accept")
        self.assertIsNone(intent.accept_code)
        self.assertFalse(intent.malformed_code)

    def test_malformed_code(self):
        self.assertTrue(parse_inbound("JA bedankt-jongens").malformed_code)

    def test_decline_and_unknown(self):
        self.assertEqual(parse_inbound("nee").action, "decline")
        self.assertEqual(parse_inbound("Weigeren").action, "decline")
        self.assertEqual(parse_inbound("hoi, hoe laat?").action, "unknown")
        self.assertEqual(parse_inbound("").action, "unknown")


class AcceptanceTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.seed_booking("B1", confirmed_at=NOW)
        self.seed_providers(10)
        dispatch.dispatch_wave("B1", 1)
        self.code = self.booking()["acceptCode"]
        self.notifier.sent.clear()

    def reply(self, provider_id, body, button=None, at=minutes(7)):
        return acceptance.handle_inbound_message(
            f"whatsapp:{phone_for(provider_id)}", body, button, now=NOW + at
        )

    def test_accept_with_code_assigns(self):
        result = self.reply("P1", f"JA {self.code}")

        self.assertEqual(result.outcome, "assigned")
        self.assertIsNone(result.reply)
        booking = self.booking()
        self.assertEqual(booking["status"], "ASSIGNED")
        self.assertEqual(booking["assignedProviderId"], "P1")
        self.assertEqual(booking["acceptedVia"], "code")
        self.assertEqual(booking["GSI1PK"], "AREA#ridderkerk#STATUS#ASSIGNED")

    def test_winner_and_losers_are_notified(self):
        self.reply("P1", f"JA {self.code}")

        winner_texts = self.notifier.texts_to(phone_for("P1"))
        self.assertEqual(len(winner_texts), 2)
        self.assertIn(messages.ASSIGNED_CONFIRM, winner_texts[0])
        self.assertIn("Naam klant: Jan Jansen", winner_texts[1])
        for loser in ("P2", "P3"):
            self.assertEqual(self.notifier.texts_to(phone_for(loser)), [messages.ALREADY_TAKEN])

    def test_assignment_side_effects(self):
        self.reply("P1", f"JA {self.code}")

        self.assertEqual(self.cancelled, [("B1", ("deadline", "wave2", "wave3"))])
        names = self.event_names()
        self.assertIn("provider_accepted", names)
        self.assertIn("booking_assigned", names)
        self.assertLess(names.index("provider_accepted"), names.index("booking_assigned"))

    def test_plain_ja_with_single_open_offer(self):
        result = self.reply("P2", "ja")
        self.assertEqual(result.outcome, "assigned")
        self.assertEqual(self.booking()["acceptedVia"], "reply")

    def test_button_accept(self):
        result = self.reply("P3", "Accepteren", button="accept_B1")
        self.assertEqual(result.outcome, "assigned")
        self.assertEqual(self.booking()["acceptedVia"], "button")

    def test_several_open_offers_need_a_code(self):
        self.seed_booking("B2", confirmed_at=NOW)
        dispatch.dispatch_wave("B2", 1)

        ambiguous = self.reply("P1", "JA")
        self.assertEqual(ambiguous.outcome, "ambiguous")
        self.assertEqual(ambiguous.reply, messages.AMBIGUOUS_BOOKING)

        resolved = self.reply("P1", f"JA {self.code}")
        self.assertEqual((resolved.outcome, resolved.booking_id), ("assigned", "B1"))

    def test_unknown_sender_gets_no_reply(self):
        result = acceptance.handle_inbound_message("whatsapp:+31699999999", "JA", now=NOW)
        self.assertEqual(result.outcome, "unknown_sender")
        self.assertIsNone(result.reply)

    def test_unknown_reply_hint(self):
        result = self.reply("P1", "hoe laat is het?")
        self.assertEqual((result.outcome, result.reply), ("unknown_reply", messages.UNKNOWN_REPLY))

    def test_unknown_code(self):
        result = self.reply("P1", "JA ZZZZ9")
        self.assertEqual((result.outcome, result.reply), ("invalid_code", messages.INVALID_CODE))
        self.assertEqual(self.booking()["status"], "PENDING_ASSIGNMENT")

    def test_provider_without_offer_cannot_accept(self):
        result = self.reply("P9", f"JA {self.code}")
        self.assertEqual(result.outcome, "no_open_booking")
        self.assertEqual(self.booking()["status"], "PENDING_ASSIGNMENT")

    def test_reply_after_deadline(self):
        result = self.reply("P1", f"JA {self.code}", at=minutes(16))
        self.assertEqual((result.outcome, result.reply), ("window_closed", messages.WINDOW_CLOSED))
        self.assertEqual(self.booking()["status"], "PENDING_ASSIGNMENT")

    def test_second_acceptor_is_told_it_is_taken(self):
        self.reply("P1", f"JA {self.code}")
        late = self.reply("P2", f"JA {self.code}")
        again = self.reply("P1", f"JA {self.code}")

        self.assertEqual((late.outcome, late.reply), ("already_taken", messages.ALREADY_TAKEN))
        self.assertEqual(again.outcome, "already_assigned_to_you")
        self.assertEqual(self.booking()["assignedProviderId"], "P1")

    def test_decline(self):
        result = self.reply("P2", "NEE")
        self.assertEqual((result.outcome, result.reply), ("declined", messages.DECLINE_ACK))
        self.assertIn("provider_declined", self.event_names())
        self.assertEqual(self.booking()["status"], "PENDING_ASSIGNMENT")

    def test_undelivered_losers_are_not_messaged(self):
        self.seed_booking("B3", confirmed_at=NOW)
        self.notifier.failing.add(phone_for("P2"))
        dispatch.dispatch_wave("B3", 1)
        code = self.booking("B3")["acceptCode"]
        self.notifier.failing.clear()
        self.notifier.sent.clear()

        acceptance.handle_inbound_message(phone_for("P1"), f"JA {code}", now=NOW + minutes(1))
        self.assertEqual(self.notifier.texts_to(phone_for("P2")), [])
        self.assertEqual(self.notifier.texts_to(phone_for("P3")), [messages.ALREADY_TAKEN])

    def test_one_broken_loser_send_does_not_stop_the_others(self):
        def send(to_e164, text):
            if to_e164 == phone_for("P2"):
                raise http.client.RemoteDisconnected("closed")
            return self.notifier.send(to_e164, text)

        with patch.object(acceptance, "send_whatsapp", side_effect=send):
            results = acceptance.notify_losers("B1", "P1")

        self.assertEqual(results, {"P2": "failed", "P3": "notified"})
        self.assertEqual(self.notifier.texts_to(phone_for("P3")), [messages.ALREADY_TAKEN])


class AcceptanceRaceTests(LifecycleTestCase):
    def test_exactly_one_winner(self):
        self.seed_booking("B1", confirmed_at=NOW)
        self.seed_providers(8)
        dispatch.dispatch_wave("B1", 1)
        dispatch.dispatch_wave("B1", 2)
        code = self.booking()["acceptCode"]

        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def attempt(provider_id):
            barrier.wait()
            outcome = acceptance.handle_inbound_message(phone_for(provider_id), f"JA {code}", now=NOW + minutes(7))
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(f"P{n}",)) for n in range(1, 9)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        outcomes = sorted(r.outcome for r in results)
        self.assertEqual(outcomes.count("assigned"), 1)
        self.assertEqual(outcomes.count("already_taken"), 7)
        winner = next(r.provider_id for r in results if r.outcome == "assigned")
        self.assertEqual(self.booking()["assignedProviderId"], winner)


if __name__ == "__main__":
    unittest.main()
