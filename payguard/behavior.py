"""
Background behavioural analysis over a user's last seven days of payments.

The request path only enqueues a user id; a daemon worker thread reads the
history and appends SecurityEvents. Findings influence future assessments only
and a full or failing worker never affects the request that triggered it.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from statistics import mean, pstdev
from typing import List, Optional

from .events import SecurityEventSink, safe_append
from .schemas import HistoricalAttempt, SecurityEvent, Severity, as_utc

logger = logging.getLogger(__name__)

ANALYSIS_WINDOW_SECONDS = 7 * 24 * 60 * 60

@dataclass
class PatternResult:
    suspicious: bool
    pattern: str

def analyze_timing_pattern(transactions: List[HistoricalAttempt]) -> PatternResult:
    """Very regular gaps between payments suggest automation"""
    if len(transactions) < 5:
        return PatternResult(False, "insufficient_data")

    ordered = sorted(transactions, key=lambda t: as_utc(t.created_at), reverse=True)
    intervals = [
        (as_utc(ordered[i - 1].created_at) - as_utc(ordered[i].created_at)).total_seconds()
        for i in range(1, len(ordered))
    ]
    avg_interval = mean(intervals)
    if avg_interval <= 0:
        return PatternResult(True, "automated_regular_intervals")

    coefficient_of_variation = pstdev(intervals) / avg_interval
    if coefficient_of_variation < 0.1 and avg_interval < 5 * 60:
        return PatternResult(True, "automated_regular_intervals")
    return PatternResult(False, "normal")

def analyze_amount_pattern(transactions: List[HistoricalAttempt]) -> PatternResult:
    if len(transactions) < 3:
        return PatternResult(False, "insufficient_data")

    amounts = [t.amount for t in transactions]
    if len(set(amounts)) == 1 and len(amounts) >= 5:
        return PatternResult(True, "identical_amounts")

    if len(amounts) >= 5 and all(amount % 1000 == 0 for amount in amounts):
        return PatternResult(True, "only_round_numbers")

    return PatternResult(False, "normal")

class BehaviorAnalysisWorker:
    """Consumes queued user ids and records behavioural alerts"""

    def __init__(self, sink: SecurityEventSink, max_queue_size: int = 1000):
        self.sink = sink
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue(maxsize=max_queue_size)
        self._thread: Optional[threading.Thread] = None

    def submit(self, user_id: str) -> bool:
        """Fire-and-forget hand-off; returns False when the job was dropped"""
        try:
            self._queue.put_nowait(user_id)
            return True
        except queue.Full:
            logger.warning(f"Behaviour analysis queue full, dropping job for {user_id}")
            return False

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="behavior-analysis", daemon=True)
        self._thread.start()
        logger.info("Behaviour analysis worker started")

    def stop(self, timeout: float = 5.0):
        if not self._thread:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Behaviour analysis queue still full at shutdown")
        self._thread.join(timeout)
        self._thread = None

    def _run(self):
        while True:
            user_id = self._queue.get()
            try:
                if user_id is None:
                    return
                self.analyze_user(user_id)
            except Exception as e:
                logger.error(f"Behaviour analysis failed for {user_id}: {e}")
            finally:
                self._queue.task_done()

    def process_pending(self) -> int:
        """Drain the queue on the calling thread; returns the number of jobs run"""
        processed = 0
        while True:
            try:
                user_id = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                if user_id is not None:
                    self.analyze_user(user_id)
                    processed += 1
            finally:
                self._queue.task_done()

    def analyze_user(self, user_id: str) -> List[SecurityEvent]:
        transactions = self.sink.query_recent(user_id, ANALYSIS_WINDOW_SECONDS)
        if not transactions:
            return []

        alerts = []
        timing = analyze_timing_pattern(transactions)
        if timing.suspicious:
            alerts.append(SecurityEvent(
                event_type="unusual_timing_pattern",
                severity=Severity.MEDIUM,
                user_id=user_id,
                details={"pattern": timing.pattern, "transactions": len(transactions),
                         "message": "User showing unusual transaction timing patterns"},
            ))

        amounts = analyze_amount_pattern(transactions)
        if amounts.suspicious:
            alerts.append(SecurityEvent(
                event_type="unusual_amount_pattern",
                severity=Severity.MEDIUM,
                user_id=user_id,
                details={"pattern": amounts.pattern, "transactions": len(transactions),
                         "message": "User showing unusual transaction amount patterns"},
            ))

        for alert in alerts:
            safe_append(self.sink, alert)
        return alerts
