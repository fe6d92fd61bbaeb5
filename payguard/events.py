"""
Security event sink: append-only audit log, payment attempt history and the
manual review queue.

Components only ever append events. Attempt history is read back by the risk
scorer as a plain most-recent-first list.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .error_handling import ErrorCodes, ServiceError
from .models import PaymentAttemptRecord, ReviewQueueRecord, SecurityEventRecord
from .schemas import (
    AttemptStatus, HistoricalAttempt, PaymentAttempt, ReviewItem, SecurityEvent, as_utc, utcnow,
)

logger = logging.getLogger(__name__)

class SecurityEventSink:
    """Persistence contract required by the guard pipeline"""

    def append(self, event: SecurityEvent) -> None:
        raise NotImplementedError

    def query_recent(self, user_id: str, within_seconds: int,
                     now: Optional[datetime] = None) -> List[HistoricalAttempt]:
        raise NotImplementedError

    def record_attempt(self, attempt: PaymentAttempt, status: AttemptStatus, risk_score: int = 0) -> None:
        """Insert only; an existing attempt_id raises ServiceError(DUPLICATE_ATTEMPT)"""
        raise NotImplementedError

    def update_attempt_status(self, attempt_id: str, status: AttemptStatus) -> bool:
        raise NotImplementedError

    def enqueue_review(self, item: ReviewItem) -> None:
        raise NotImplementedError

    def pending_reviews(self, limit: int = 100) -> List[ReviewItem]:
        raise NotImplementedError

    def ping(self) -> bool:
        return True

def duplicate_attempt(attempt_id: str, original_error: Exception = None) -> ServiceError:
    return ServiceError(ErrorCodes.DUPLICATE_ATTEMPT, f"Payment attempt {attempt_id} already recorded",
                        original_error)

def safe_append(sink: SecurityEventSink, event: SecurityEvent) -> bool:
    """Append an event; a logging failure never changes the decision already made"""
    try:
        sink.append(event)
        return True
    except Exception as e:
        logger.error(f"Failed to write security event {event.event_type}: {e}", extra={
            "event_type": event.event_type,
            "severity": event.severity.value
        })
        return False

def _history_from_attempt(attempt: PaymentAttempt, status: AttemptStatus, risk_score: int) -> HistoricalAttempt:
    return HistoricalAttempt(
        attempt_id=attempt.attempt_id,
        user_id=attempt.user_id,
        amount=attempt.amount,
        currency=attempt.currency,
        provider_id=attempt.provider_id,
        phone_number=attempt.phone_number,
        status=status,
        risk_score=risk_score,
        created_at=as_utc(attempt.timestamp),
    )

class InMemoryEventSink(SecurityEventSink):
    """Process-local sink, used by tests and single-instance deployments"""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[SecurityEvent] = []
        self._attempts: Dict[str, HistoricalAttempt] = {}
        self._reviews: Dict[str, ReviewItem] = {}

    def append(self, event: SecurityEvent) -> None:
        with self._lock:
            self.events.append(event)

    def events_of_type(self, event_type: str) -> List[SecurityEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def query_recent(self, user_id, within_seconds, now=None):
        cutoff = as_utc(now or utcnow()) - timedelta(seconds=within_seconds)
        with self._lock:
            rows = [a for a in self._attempts.values()
                    if a.user_id == user_id and as_utc(a.created_at) >= cutoff]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def record_attempt(self, attempt, status, risk_score=0):
        with self._lock:
            if attempt.attempt_id in self._attempts:
                raise duplicate_attempt(attempt.attempt_id)
            self._attempts[attempt.attempt_id] = _history_from_attempt(attempt, status, risk_score)

    def add_history(self, item: HistoricalAttempt) -> None:
        with self._lock:
            self._attempts[item.attempt_id] = item

    def update_attempt_status(self, attempt_id, status):
        with self._lock:
            current = self._attempts.get(attempt_id)
            if current is None:
                return False
            self._attempts[attempt_id] = current.model_copy(update={"status": status})
            return True

    def enqueue_review(self, item):
        with self._lock:
            self._reviews[item.attempt_id] = item

    def pending_reviews(self, limit=100):
        with self._lock:
            pending = [r for r in self._reviews.values() if r.status == "PENDING"]
        return sorted(pending, key=lambda r: r.created_at, reverse=True)[:limit]

def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)

class SqlEventSink(SecurityEventSink):
    """SQLAlchemy-backed sink; store failures surface as ServiceError"""

    def __init__(self, session_factory):
        self.SessionLocal = session_factory

    def append(self, event):
        try:
            with self.SessionLocal() as db:
                db.add(SecurityEventRecord(
                    event_type=event.event_type,
                    severity=event.severity.value,
                    user_id=event.user_id,
                    ip=event.ip,
                    user_agent=event.user_agent[:1000],
                    details=event.details,
                    risk_score_contribution=event.risk_score_contribution,
                    created_at=_naive_utc(event.created_at),
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise ServiceError(ErrorCodes.DATABASE_ERROR, "Failed to append security event", e)

    def query_recent(self, user_id, within_seconds, now=None):
        cutoff = _naive_utc(as_utc(now or utcnow()) - timedelta(seconds=within_seconds))
        try:
            with self.SessionLocal() as db:
                rows = db.execute(
                    select(PaymentAttemptRecord)
                    .where(PaymentAttemptRecord.user_id == user_id)
                    .where(PaymentAttemptRecord.created_at >= cutoff)
                    .order_by(PaymentAttemptRecord.created_at.desc())
                ).scalars().all()
        except SQLAlchemyError as e:
            raise ServiceError(ErrorCodes.DATABASE_ERROR, "Failed to read payment history", e)
        return [
            HistoricalAttempt(
                attempt_id=row.attempt_id,
                user_id=row.user_id,
                amount=row.amount,
                currency=row.currency,
                provider_id=row.provider_id,
                phone_number=row.phone_number or "",
                status=row.status,
                risk_score=row.risk_score or 0,
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]

    def record_attempt(self, attempt, status, risk_score=0):
        try:
            with self.SessionLocal() as db:
                db.add(PaymentAttemptRecord(
                    attempt_id=attempt.attempt_id,
                    user_id=attempt.user_id,
                    amount=attempt.amount,
                    currency=attempt.currency,
                    provider_id=attempt.provider_id,
                    phone_number=attempt.phone_number,
                    status=status,
                    risk_score=risk_score,
                    created_at=_naive_utc(attempt.timestamp),
                ))
                db.commit()
        except IntegrityError as e:
            raise duplicate_attempt(attempt.attempt_id, e)
        except SQLAlchemyError as e:
            raise ServiceError(ErrorCodes.DATABASE_ERROR, "Failed to record payment attempt", e)

    def ping(self) -> bool:
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Event store health check failed: {e}")
            return False

    def update_attempt_status(self, attempt_id, status):
        try:
            with self.SessionLocal() as db:
                result = db.execute(
                    update(PaymentAttemptRecord)
                    .where(PaymentAttemptRecord.attempt_id == attempt_id)
                    .values(status=status)
                )
                db.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise ServiceError(ErrorCodes.DATABASE_ERROR, "Failed to update payment attempt", e)

    def enqueue_review(self, item):
        try:
            with self.SessionLocal() as db:
                db.merge(ReviewQueueRecord(
                    attempt_id=item.attempt_id,
                    user_id=item.user_id,
                    transaction_data=item.attempt,
                    risk_score=item.risk_score,
                    risk_factors=item.factors,
                    status=item.status,
                    created_at=_naive_utc(item.created_at),
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise ServiceError(ErrorCodes.DATABASE_ERROR, "Failed to queue payment for review", e)

    def pending_reviews(self, limit=100):
        try:
            with self.SessionLocal() as db:
                rows = db.execute(
                    select(ReviewQueueRecord)
                    .where(ReviewQueueRecord.status == "PENDING")
                    .order_by(ReviewQueueRecord.created_at.desc())
                    .limit(limit)
                ).scalars().all()
        except SQLAlchemyError as e:
            raise ServiceError(ErrorCodes.DATABASE_ERROR, "Failed to read review queue", e)
        return [
            ReviewItem(
                attempt_id=row.attempt_id,
                user_id=row.user_id,
                attempt=row.transaction_data or {},
                risk_score=row.risk_score or 0,
                factors=row.risk_factors or [],
                status=row.status,
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]
