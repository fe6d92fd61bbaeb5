#!/usr/bin/env python3
"""
Unit tests for webhook signature and replay verification
"""

import unittest

from payguard.events import InMemoryEventSink
from payguard.schemas import Severity, WebhookEnvelope
from payguard.signatures import SignatureVerifier, compute_signature, sign

SECRET = "whsec_test_yellowcard"
NOW = 1700000000
BODY = b'{"event":"payment.completed","reference":"ref-123","amount":5000}'


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def envelope(body=BODY, signature=None, timestamp=NOW, source="yellowcard", secret=SECRET):
    if signature is None:
        signature = sign(body, secret, timestamp)
    return WebhookEnvelope(
        raw_body=body,
        signature_header=signature,
        timestamp_header=None if timestamp is None else str(timestamp),
        source_tag=source,
        source_ip="41.58.10.2",
        user_agent="YellowCard-Webhooks/1.0",
    )


class TestSignatureVerifier(unittest.TestCase):

    def setUp(self):
        self.sink = InMemoryEventSink()
        self.clock = FixedClock(NOW)
        self.verifier = SignatureVerifier({"yellowcard": SECRET}, self.sink, clock=self.clock)

    def test_valid_signature_accepted_without_events(self):
        result = self.verifier.verify(envelope())
        self.assertTrue(result.valid)
        self.assertEqual(result.http_status, 200)
        self.assertEqual(result.source_tag, "yellowcard")
        self.assertEqual(self.sink.events, [])

    def test_signature_without_prefix_accepted(self):
        bare = compute_signature(BODY, SECRET, NOW)
        self.assertTrue(self.verifier.verify(envelope(signature=bare)).valid)

    def test_uppercase_hex_accepted(self):
        bare = compute_signature(BODY, SECRET, NOW).upper()
        self.assertTrue(self.verifier.verify(envelope(signature=bare)).valid)

    def test_timestamp_at_tolerance_edge_accepted(self):
        self.clock.now = NOW + 300
        self.assertTrue(self.verifier.verify(envelope()).valid)

    def test_replay_after_tolerance_rejected(self):
        self.clock.now = NOW + 301
        result = self.verifier.verify(envelope())
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "webhook_replay")
        self.assertEqual(result.http_status, 401)
        self.assertEqual(len(self.sink.events), 1)
        self.assertEqual(self.sink.events[0].event_type, "webhook_replay")
        self.assertEqual(self.sink.events[0].severity, Severity.HIGH)

    def test_future_timestamp_rejected(self):
        self.clock.now = NOW - 301
        self.assertEqual(self.verifier.verify(envelope()).reason, "webhook_replay")

    def test_single_bit_flip_in_body_rejected(self):
        signature = sign(BODY, SECRET, NOW)
        tampered = bytes([BODY[0] ^ 0x01]) + BODY[1:]
        result = self.verifier.verify(envelope(body=tampered, signature=signature))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "invalid_signature")
        self.assertEqual(len(self.sink.events), 1)
        self.assertEqual(self.sink.events[0].severity, Severity.HIGH)

    def test_signature_for_other_timestamp_rejected(self):
        signature = sign(BODY, SECRET, NOW - 10)
        result = self.verifier.verify(envelope(signature=signature))
        self.assertEqual(result.reason, "invalid_signature")

    def test_wrong_secret_rejected(self):
        result = self.verifier.verify(envelope(secret="someone-else"))
        self.assertEqual(result.reason, "invalid_signature")

    def test_missing_signature(self):
        result = self.verifier.verify(envelope(signature=""))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "missing_signature")
        self.assertEqual(result.http_status, 401)
        self.assertEqual(len(self.sink.events), 1)
        self.assertEqual(self.sink.events[0].severity, Severity.MEDIUM)

    def test_missing_timestamp(self):
        result = self.verifier.verify(envelope(timestamp=None, signature="sha256=abc"))
        self.assertEqual(result.reason, "missing_timestamp")
        self.assertEqual(self.sink.events[0].severity, Severity.MEDIUM)

    def test_non_numeric_timestamp(self):
        env = envelope().model_copy(update={"timestamp_header": "yesterday"})
        result = self.verifier.verify(env)
        self.assertEqual(result.reason, "invalid_timestamp")
        self.assertEqual(len(self.sink.events), 1)

    def test_unknown_source(self):
        result = self.verifier.verify(envelope(source="paystack"))
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "unknown_source")
        self.assertEqual(self.sink.events[0].details["source"], "paystack")

    def test_explicit_source_tag_overrides_envelope(self):
        verifier = SignatureVerifier({"yellowcard": SECRET, "stripe": "other"}, self.sink, clock=self.clock)
        self.assertFalse(verifier.verify(envelope(), source_tag="stripe").valid)

    def test_internal_error_fails_closed_with_500(self):
        class ExplodingSecrets(dict):
            def get(self, key, default=None):
                raise RuntimeError("secret store down")

        verifier = SignatureVerifier({}, self.sink, clock=self.clock)
        verifier.secrets = ExplodingSecrets()
        result = verifier.verify(envelope())
        self.assertFalse(result.valid)
        self.assertEqual(result.reason, "verification_error")
        self.assertEqual(result.http_status, 500)
        self.assertEqual(len(self.sink.events), 1)
        self.assertEqual(self.sink.events[0].event_type, "verification_error")

    def test_sink_failure_does_not_change_outcome(self):
        class BrokenSink(InMemoryEventSink):
            def append(self, event):
                raise IOError("disk full")

        verifier = SignatureVerifier({"yellowcard": SECRET}, BrokenSink(), clock=self.clock)
        self.clock.now = NOW + 1000
        self.assertEqual(verifier.verify(envelope()).reason, "webhook_replay")

    def test_custom_tolerance(self):
        verifier = SignatureVerifier({"yellowcard": SECRET}, self.sink, tolerance_seconds=60, clock=self.clock)
        self.clock.now = NOW + 61
        self.assertEqual(verifier.verify(envelope()).reason, "webhook_replay")


class TestSigningHelpers(unittest.TestCase):

    def test_sign_has_prefix(self):
        self.assertTrue(sign(BODY, SECRET, NOW).startswith("sha256="))

    def test_str_and_bytes_bodies_sign_identically(self):
        self.assertEqual(compute_signature(BODY.decode("utf-8"), SECRET, NOW),
                         compute_signature(BODY, SECRET, NOW))

    def test_signature_depends_on_timestamp(self):
        self.assertNotEqual(compute_signature(BODY, SECRET, NOW), compute_signature(BODY, SECRET, NOW + 1))


if __name__ == "__main__":
    unittest.main()
