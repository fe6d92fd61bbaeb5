#!/usr/bin/env python3
"""
Tests for the security event sinks, Kafka fan-out, behaviour analysis and the
history circuit breaker
"""

import json
import threading
import time
import unittest
from datetime import timedelta
from unittest import mock

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from payguard.behavior import BehaviorAnalysisWorker, analyze_amount_pattern, analyze_timing_pattern
from payguard.circuit_breaker import (
    CallTimeoutError, CircuitBreaker, CircuitBreakerConfig, CircuitBreakerException, CircuitState,
)
from payguard.db import make_engine, make_session_factory
from payguard.error_handling import ErrorCodes, ServiceError
from payguard.events import InMemoryEventSink, SqlEventSink, safe_append
from payguard.kafka import TOPIC_SECURITY_EVENTS, KafkaEventSink
from payguard.models import Base, SecurityEventRecord
from payguard.schemas import HistoricalAttempt, PaymentAttempt, ReviewItem, SecurityEvent, Severity, utcnow


def make_attempt(attempt_id, seconds_ago=0, **overrides):
    fields = dict(
        attempt_id=attempt_id,
        user_id="user-1",
        amount=2500,
        currency="KES",
        provider_id="MPESA",
        country_code="KE",
        phone_number="+254701234567",
        timestamp=utcnow() - timedelta(seconds=seconds_ago),
    )
    fields.update(overrides)
    return PaymentAttempt(**fields)


class TestSqlEventSink(unittest.TestCase):

    def setUp(self):
        self.engine = make_engine("sqlite://")
        Base.metadata.create_all(bind=self.engine)
        self.sink = SqlEventSink(make_session_factory(self.engine))

    def tearDown(self):
        self.engine.dispose()

    def test_append_and_read_events(self):
        self.sink.append(SecurityEvent(event_type="invalid_signature", severity=Severity.HIGH,
                                       ip="41.58.10.2", details={"source": "yellowcard"}))
        self.sink.append(SecurityEvent(event_type="payment_approved", severity=Severity.LOW, user_id="user-1"))
        with self.sink.SessionLocal() as db:
            rows = db.execute(select(SecurityEventRecord).order_by(SecurityEventRecord.id)).scalars().all()
        self.assertEqual([r.event_type for r in rows], ["invalid_signature", "payment_approved"])
        self.assertEqual(rows[0].details, {"source": "yellowcard"})
        self.assertEqual(rows[0].severity, "high")
        self.assertEqual(rows[0].ip, "41.58.10.2")

    def test_duplicate_attempt_id_rejected(self):
        self.sink.record_attempt(make_attempt("a"), "PENDING", 10)
        with self.assertRaises(ServiceError) as ctx:
            self.sink.record_attempt(make_attempt("a", user_id="user-2", amount=1), "PENDING", 0)
        self.assertEqual(ctx.exception.code, ErrorCodes.DUPLICATE_ATTEMPT)
        self.assertIsInstance(ctx.exception.original_error, IntegrityError)

        kept = self.sink.query_recent("user-1", 3600)
        self.assertEqual(len(kept), 1)
        self.assertEqual(kept[0].amount, 2500)
        self.assertEqual(self.sink.query_recent("user-2", 3600), [])

    def test_ping(self):
        self.assertTrue(self.sink.ping())
        broken = SqlEventSink(mock.Mock(side_effect=OperationalError("SELECT 1", {}, Exception("gone"))))
        self.assertFalse(broken.ping())

    def test_history_window_and_order(self):
        self.sink.record_attempt(make_attempt("a", seconds_ago=600), "PENDING", 10)
        self.sink.record_attempt(make_attempt("b", seconds_ago=60), "REVIEW", 65)
        self.sink.record_attempt(make_attempt("c", seconds_ago=7200), "PENDING", 0)
        self.sink.record_attempt(make_attempt("d", seconds_ago=30, user_id="user-2"), "PENDING", 0)

        recent = self.sink.query_recent("user-1", 3600)
        self.assertEqual([h.attempt_id for h in recent], ["b", "a"])
        self.assertEqual(recent[0].status, "REVIEW")
        self.assertEqual(recent[0].risk_score, 65)
        self.assertIsNotNone(recent[0].created_at.tzinfo)

    def test_update_attempt_status(self):
        self.sink.record_attempt(make_attempt("a"), "PENDING", 0)
        self.assertTrue(self.sink.update_attempt_status("a", "COMPLETED"))
        self.assertFalse(self.sink.update_attempt_status("missing", "FAILED"))
        self.assertEqual(self.sink.query_recent("user-1", 3600)[0].status, "COMPLETED")

    def test_review_queue(self):
        attempt = make_attempt("a")
        self.sink.enqueue_review(ReviewItem(attempt_id="a", user_id="user-1",
                                            attempt=attempt.model_dump(mode="json"),
                                            risk_score=70, factors=["new_user", "large_amount"]))
        pending = self.sink.pending_reviews()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].status, "PENDING")
        self.assertEqual(pending[0].factors, ["new_user", "large_amount"])
        self.assertEqual(pending[0].attempt["phone_number"], "+254701234567")

    def test_store_failure_raises_service_error(self):
        Base.metadata.drop_all(bind=self.engine)
        with self.assertRaises(ServiceError) as ctx:
            self.sink.query_recent("user-1", 3600)
        self.assertEqual(ctx.exception.code, ErrorCodes.DATABASE_ERROR)
        self.assertIsInstance(ctx.exception.original_error, OperationalError)

    def test_safe_append_swallows_store_failure(self):
        Base.metadata.drop_all(bind=self.engine)
        ok = safe_append(self.sink, SecurityEvent(event_type="x", severity=Severity.LOW))
        self.assertFalse(ok)


class TestInMemoryEventSink(unittest.TestCase):

    def test_history_excludes_other_users_and_old_rows(self):
        sink = InMemoryEventSink()
        sink.record_attempt(make_attempt("a", seconds_ago=10), "PENDING")
        sink.record_attempt(make_attempt("b", seconds_ago=10, user_id="user-2"), "PENDING")
        sink.record_attempt(make_attempt("c", seconds_ago=5000), "PENDING")
        self.assertEqual([h.attempt_id for h in sink.query_recent("user-1", 3600)], ["a"])

    def test_duplicate_attempt_id_rejected(self):
        sink = InMemoryEventSink()
        sink.record_attempt(make_attempt("a"), "PENDING", 10)
        with self.assertRaises(ServiceError) as ctx:
            sink.record_attempt(make_attempt("a", user_id="user-2"), "REJECTED", 95)
        self.assertEqual(ctx.exception.code, ErrorCodes.DUPLICATE_ATTEMPT)
        kept = sink.query_recent("user-1", 3600)
        self.assertEqual([(h.status, h.risk_score) for h in kept], [("PENDING", 10)])


class TestKafkaEventSink(unittest.TestCase):

    def setUp(self):
        self.inner = InMemoryEventSink()
        self.producer = mock.Mock()
        self.sink = KafkaEventSink(self.inner, self.producer)

    def test_every_event_published(self):
        event = SecurityEvent(event_type="high_risk_transaction", severity=Severity.HIGH, user_id="user-1",
                              details={"risk_score": 85})
        self.sink.append(event)

        self.assertEqual(self.inner.events, [event])
        self.producer.produce.assert_called_once()
        args, kwargs = self.producer.produce.call_args
        self.assertEqual(args[0], TOPIC_SECURITY_EVENTS)
        self.assertEqual(kwargs["key"], b"user-1")
        payload = json.loads(kwargs["value"])
        self.assertEqual(payload["event_type"], "high_risk_transaction")
        self.assertEqual(payload["details"], {"risk_score": 85})
        self.producer.poll.assert_called_once_with(0)

    def test_producer_failure_keeps_durable_write(self):
        self.producer.produce.side_effect = BufferError("local queue full")
        event = SecurityEvent(event_type="webhook_replay", severity=Severity.HIGH, ip="41.58.10.2")
        self.sink.append(event)
        self.assertEqual(self.inner.events, [event])

    def test_history_delegates_to_inner(self):
        self.sink.record_attempt(make_attempt("a"), "PENDING", 5)
        self.assertTrue(self.sink.update_attempt_status("a", "FAILED"))
        self.assertEqual(self.sink.query_recent("user-1", 60)[0].status, "FAILED")

    def test_ping_delegates_to_inner(self):
        self.assertTrue(self.sink.ping())

    def test_flush(self):
        self.producer.flush.return_value = 0
        self.assertEqual(self.sink.flush(1.0), 0)
        self.producer.flush.assert_called_once_with(1.0)


def history_rows(count, spacing_seconds, amount=2500, vary=False):
    now = utcnow()
    return [
        HistoricalAttempt(
            attempt_id=f"h{i}", user_id="user-1", currency="KES", provider_id="MPESA",
            amount=amount + (i * 137 if vary else 0),
            created_at=now - timedelta(seconds=10 + i * spacing_seconds + (i * i * 40 if vary else 0)),
        )
        for i in range(count)
    ]


class TestBehaviorAnalysis(unittest.TestCase):

    def test_regular_intervals_detected(self):
        self.assertEqual(analyze_timing_pattern(history_rows(6, 60)).pattern, "automated_regular_intervals")

    def test_irregular_intervals_are_normal(self):
        self.assertFalse(analyze_timing_pattern(history_rows(6, 60, vary=True)).suspicious)

    def test_slow_regular_intervals_are_normal(self):
        self.assertFalse(analyze_timing_pattern(history_rows(6, 3600)).suspicious)

    def test_insufficient_data(self):
        self.assertEqual(analyze_timing_pattern(history_rows(4, 60)).pattern, "insufficient_data")
        self.assertEqual(analyze_amount_pattern(history_rows(2, 60)).pattern, "insufficient_data")

    def test_amount_patterns(self):
        self.assertEqual(analyze_amount_pattern(history_rows(5, 3600)).pattern, "identical_amounts")
        round_numbers = [h.model_copy(update={"amount": 1000 * (i + 1)}) for i, h in enumerate(history_rows(5, 3600))]
        self.assertEqual(analyze_amount_pattern(round_numbers).pattern, "only_round_numbers")
        self.assertFalse(analyze_amount_pattern(history_rows(5, 3600, vary=True)).suspicious)

    def test_worker_records_alerts(self):
        sink = InMemoryEventSink()
        for row in history_rows(6, 60):
            sink.add_history(row)
        worker = BehaviorAnalysisWorker(sink)
        self.assertTrue(worker.submit("user-1"))
        self.assertEqual(worker.process_pending(), 1)

        self.assertEqual(len(sink.events_of_type("unusual_timing_pattern")), 1)
        amount_events = sink.events_of_type("unusual_amount_pattern")
        self.assertEqual(len(amount_events), 1)
        self.assertEqual(amount_events[0].severity, Severity.MEDIUM)
        self.assertEqual(amount_events[0].details["pattern"], "identical_amounts")

    def test_no_history_no_alerts(self):
        sink = InMemoryEventSink()
        self.assertEqual(BehaviorAnalysisWorker(sink).analyze_user("nobody"), [])

    def test_full_queue_drops_job(self):
        worker = BehaviorAnalysisWorker(InMemoryEventSink(), max_queue_size=1)
        self.assertTrue(worker.submit("user-1"))
        self.assertFalse(worker.submit("user-2"))

    def test_background_thread_processes_jobs(self):
        sink = InMemoryEventSink()
        for row in history_rows(6, 60):
            sink.add_history(row)
        worker = BehaviorAnalysisWorker(sink)
        worker.start()
        try:
            worker.submit("user-1")
            deadline = time.time() + 5
            while not sink.events_of_type("unusual_amount_pattern") and time.time() < deadline:
                time.sleep(0.01)
        finally:
            worker.stop()
        self.assertEqual(len(sink.events_of_type("unusual_amount_pattern")), 1)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCircuitBreaker(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(
            "history", CircuitBreakerConfig(failure_threshold=2, reset_timeout=30, success_threshold=1, timeout=0.2),
            clock=self.clock,
        )

    def tearDown(self):
        self.breaker.shutdown()

    def failing(self):
        raise ServiceError(ErrorCodes.DATABASE_ERROR, "down")

    def test_passes_results_through(self):
        self.assertEqual(self.breaker.call(lambda a, b: a + b, 2, b=3), 5)

    def test_slow_call_times_out(self):
        release = threading.Event()
        try:
            with self.assertRaises(CallTimeoutError):
                self.breaker.call(release.wait, 5)
        finally:
            release.set()
        self.assertEqual(self.breaker.failure_count, 1)

    def test_opens_after_threshold_and_recovers(self):
        for _ in range(2):
            with self.assertRaises(ServiceError):
                self.breaker.call(self.failing)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

        with self.assertRaises(CircuitBreakerException):
            self.breaker.call(lambda: "not called")

        self.clock.now += 31
        self.assertEqual(self.breaker.call(lambda: "ok"), "ok")
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.get_state()["state"], "CLOSED")

    def test_half_open_failure_reopens(self):
        for _ in range(2):
            with self.assertRaises(ServiceError):
                self.breaker.call(self.failing)
        self.clock.now += 31
        with self.assertRaises(ServiceError):
            self.breaker.call(self.failing)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)


if __name__ == "__main__":
    unittest.main()
