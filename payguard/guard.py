"""
PaymentGuard: the per-request entry point of the payment security pipeline.

Payment attempts move through

    RECEIVED -> RATE_CHECKED -> VALIDATED -> SCORED -> APPROVED | CHALLENGED | REJECTED

and webhook deliveries through

    RECEIVED -> RATE_CHECKED -> VALIDATED (signature) -> APPROVED | REJECTED

Stages run strictly in order and a failed stage short-circuits to REJECTED.
Every terminal payment decision writes exactly one audit SecurityEvent.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .behavior import BehaviorAnalysisWorker
from .circuit_breaker import CircuitBreaker
from .error_handling import ErrorCodes
from .events import SecurityEventSink, safe_append
from .rate_limiter import RateLimiter, RateLimitResult
from .risk_scoring import RiskScorer, is_high_risk
from .schemas import (
    HistoricalAttempt, PaymentAttempt, Recommendation, ReviewItem, RiskAssessment,
    SecurityEvent, Severity, WebhookEnvelope,
)
from .signatures import SignatureVerifier
from .validation import PaymentValidator, check_daily_limit

logger = logging.getLogger(__name__)

ESTIMATED_REVIEW_TIME = "1-24 hours"

class AttemptState(str, Enum):
    RECEIVED = "RECEIVED"
    RATE_CHECKED = "RATE_CHECKED"
    VALIDATED = "VALIDATED"
    SCORED = "SCORED"
    APPROVED = "APPROVED"
    CHALLENGED = "CHALLENGED"
    REJECTED = "REJECTED"

SIGNATURE_FAILURE_CODES = {
    "missing_signature": ErrorCodes.MISSING_SIGNATURE,
    "missing_timestamp": ErrorCodes.MISSING_SIGNATURE,
    "webhook_replay": ErrorCodes.WEBHOOK_REPLAY,
    "verification_error": ErrorCodes.VERIFICATION_ERROR,
}

@dataclass
class GuardDecision:
    state: AttemptState
    http_status: int
    reason: str
    message: str
    code: Optional[str] = None
    trail: List[AttemptState] = field(default_factory=list)
    attempt_id: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)
    risk_score: Optional[int] = None
    retry_after: Optional[int] = None
    estimated_review_time: Optional[str] = None
    fee: Optional[float] = None
    total: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    # Kept for audit only, never rendered to the payer
    assessment: Optional[RiskAssessment] = None

    @property
    def approved(self) -> bool:
        return self.state == AttemptState.APPROVED

    def public_context(self) -> Dict[str, Any]:
        """Client-facing details; risk factors are deliberately left out"""
        context: Dict[str, Any] = dict(self.context)
        if self.attempt_id:
            context["attempt_id"] = self.attempt_id
        if self.errors:
            context["errors"] = dict(self.errors)
        if self.risk_score is not None and self.code == ErrorCodes.SECURITY_BLOCK:
            context["risk_score"] = self.risk_score
        if self.retry_after is not None:
            context["retry_after"] = self.retry_after
        if self.estimated_review_time:
            context["estimated_review_time"] = self.estimated_review_time
        return context

class PaymentGuard:
    """Sequences rate limiting, verification, validation and scoring for one request"""

    def __init__(self, rate_limiter: RateLimiter, validator: PaymentValidator, scorer: RiskScorer,
                 sink: SecurityEventSink, verifier: Optional[SignatureVerifier] = None,
                 history_breaker: Optional[CircuitBreaker] = None,
                 behavior_worker: Optional[BehaviorAnalysisWorker] = None,
                 history_window_seconds: int = 24 * 60 * 60):
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.scorer = scorer
        self.sink = sink
        self.verifier = verifier
        self.history_breaker = history_breaker
        self.behavior_worker = behavior_worker
        self.history_window_seconds = history_window_seconds

    # Payment attempts

    def check_payment(self, attempt: PaymentAttempt) -> GuardDecision:
        trail = [AttemptState.RECEIVED]

        limit = self.rate_limiter.check(attempt.user_id, "payment", ip=attempt.source_ip)
        if not limit.allowed:
            return self._finish_payment(attempt, self._rate_limited(limit, trail, "Too many payment requests",
                                                                    ErrorCodes.PAYMENT_RATE_LIMIT))
        trail.append(AttemptState.RATE_CHECKED)

        validation = self.validator.validate(attempt)
        if not validation.valid:
            return self._finish_payment(attempt, GuardDecision(
                state=AttemptState.REJECTED,
                http_status=400,
                reason="validation_failed",
                code=ErrorCodes.VALIDATION_ERROR,
                message="Payment details are invalid",
                trail=trail,
                errors=validation.errors,
            ))
        trail.append(AttemptState.VALIDATED)

        history = self._load_history(attempt)
        if history is None:
            assessment = self.scorer.fallback()
        else:
            daily = check_daily_limit(attempt, history)
            if not daily.allowed:
                return self._finish_payment(attempt, GuardDecision(
                    state=AttemptState.REJECTED,
                    http_status=400,
                    reason="daily_limit_exceeded",
                    code=ErrorCodes.DAILY_LIMIT_EXCEEDED,
                    message=f"Daily limit exceeded. Limit: {daily.limit:,.2f}, Used: {daily.used_today:,.2f}",
                    trail=trail,
                    context={
                        "daily_limit": daily.limit,
                        "used_today": daily.used_today,
                        "remaining": daily.remaining,
                    },
                ))
            assessment = self.scorer.assess(attempt, history)
        trail.append(AttemptState.SCORED)

        if is_high_risk(assessment.score):
            logger.warning(f"High risk payment attempt {attempt.attempt_id} scored {assessment.score}")
            safe_append(self.sink, SecurityEvent(
                event_type="high_risk_transaction",
                severity=Severity.HIGH,
                user_id=attempt.user_id,
                ip=attempt.source_ip,
                user_agent=attempt.user_agent,
                details={
                    "attempt_id": attempt.attempt_id,
                    "risk_score": assessment.score,
                    "factors": list(assessment.factors),
                    "amount": attempt.amount,
                    "currency": attempt.currency,
                },
                risk_score_contribution=assessment.score,
            ))

        if assessment.recommendation == Recommendation.REJECT:
            status = "REJECTED"
            decision = GuardDecision(
                state=AttemptState.REJECTED,
                http_status=403,
                reason="risk_rejected",
                code=ErrorCodes.SECURITY_BLOCK,
                message="Transaction blocked for security reasons",
                trail=trail,
                risk_score=assessment.score,
                assessment=assessment,
            )
        elif assessment.recommendation == Recommendation.REVIEW:
            status = "REVIEW"
            self._enqueue_review(attempt, assessment)
            decision = GuardDecision(
                state=AttemptState.CHALLENGED,
                http_status=202,
                reason="manual_review",
                code=ErrorCodes.MANUAL_REVIEW_REQUIRED,
                message="Transaction requires additional verification",
                trail=trail,
                risk_score=assessment.score,
                estimated_review_time=ESTIMATED_REVIEW_TIME,
                assessment=assessment,
            )
        else:
            status = "PENDING"
            decision = GuardDecision(
                state=AttemptState.APPROVED,
                http_status=200,
                reason="approved",
                message="Payment approved",
                trail=trail,
                risk_score=assessment.score,
                fee=validation.fee,
                total=validation.total,
                assessment=assessment,
            )

        self._record_attempt(attempt, status, assessment.score)
        if self.behavior_worker is not None:
            self.behavior_worker.submit(attempt.user_id)
        return self._finish_payment(attempt, decision)

    def report_outcome(self, attempt_id: str, status: str) -> bool:
        """Record the execution result (COMPLETED / FAILED) of an approved attempt"""
        updated = self.sink.update_attempt_status(attempt_id, status)
        if updated:
            logger.info(f"Payment attempt {attempt_id} marked {status}")
        return updated

    def _load_history(self, attempt: PaymentAttempt) -> Optional[List[HistoricalAttempt]]:
        args = (attempt.user_id, self.history_window_seconds, attempt.timestamp)
        try:
            if self.history_breaker is not None:
                return self.history_breaker.call(self.sink.query_recent, *args)
            return self.sink.query_recent(*args)
        except Exception as e:
            logger.error(f"Payment history unavailable for user {attempt.user_id}: {e}")
            return None

    def _enqueue_review(self, attempt: PaymentAttempt, assessment: RiskAssessment):
        try:
            self.sink.enqueue_review(ReviewItem(
                attempt_id=attempt.attempt_id,
                user_id=attempt.user_id,
                attempt=attempt.model_dump(mode="json", exclude={"headers"}),
                risk_score=assessment.score,
                factors=list(assessment.factors),
            ))
        except Exception as e:
            logger.error(f"Error queuing attempt {attempt.attempt_id} for review: {e}")

    def _record_attempt(self, attempt: PaymentAttempt, status: str, score: int):
        try:
            self.sink.record_attempt(attempt, status, score)
        except Exception as e:
            logger.error(f"Failed to record payment attempt {attempt.attempt_id}: {e}")

    def _finish_payment(self, attempt: PaymentAttempt, decision: GuardDecision) -> GuardDecision:
        decision.trail.append(decision.state)
        decision.attempt_id = attempt.attempt_id
        assessment = decision.assessment

        details: Dict[str, Any] = {
            "attempt_id": attempt.attempt_id,
            "reason": decision.reason,
            "code": decision.code,
            "http_status": decision.http_status,
            "trail": [state.value for state in decision.trail],
            "amount": attempt.amount,
            "currency": attempt.currency,
            "provider": attempt.provider_id,
            "country": attempt.country_code,
        }
        if decision.errors:
            details["validation_errors"] = dict(decision.errors)
        if assessment is not None:
            details["risk_score"] = assessment.score
            details["factors"] = list(assessment.factors)
            details["recommendation"] = assessment.recommendation.value
        if decision.context:
            details.update(decision.context)

        safe_append(self.sink, SecurityEvent(
            event_type=f"payment_{decision.state.value.lower()}",
            severity=_decision_severity(decision),
            user_id=attempt.user_id,
            ip=attempt.source_ip,
            user_agent=attempt.user_agent,
            details=details,
            risk_score_contribution=assessment.score if assessment else 0,
        ))

        log = logger.info if decision.state == AttemptState.APPROVED else logger.warning
        log(f"Payment attempt {attempt.attempt_id} {decision.state.value}: {decision.reason}", extra={
            "user_id": attempt.user_id,
            "http_status": decision.http_status,
            "risk_score": assessment.score if assessment else None,
        })
        return decision

    def health(self) -> Dict[str, Any]:
        """Dependency status; ``ok`` is False when either store is unreachable"""
        try:
            counters = self.rate_limiter.store.stats()
        except Exception as e:
            logger.error(f"Counter store health check failed: {e}")
            counters = {"ok": False, "error": type(e).__name__}
        try:
            events_ok = bool(self.sink.ping())
        except Exception as e:
            logger.error(f"Event store health check failed: {e}")
            events_ok = False
        status: Dict[str, Any] = {
            "ok": bool(counters.get("ok")) and events_ok,
            "counter_store": counters,
            "event_store": {"ok": events_ok},
        }
        if self.history_breaker is not None:
            status["history_circuit"] = self.history_breaker.get_state()["state"]
        return status

    # Webhooks

    def check_webhook(self, envelope: WebhookEnvelope) -> GuardDecision:
        """Authenticate a provider webhook; webhooks are rate limited but never risk scored"""
        if self.verifier is None:
            raise RuntimeError("PaymentGuard was built without a SignatureVerifier")

        trail = [AttemptState.RECEIVED]
        identifier = envelope.source_ip or envelope.source_tag
        limit = self.rate_limiter.check(identifier, "webhook", ip=envelope.source_ip)
        if not limit.allowed:
            decision = self._rate_limited(limit, trail, "Too many webhook deliveries", ErrorCodes.RATE_LIMIT_EXCEEDED)
            decision.trail.append(decision.state)
            return decision
        trail.append(AttemptState.RATE_CHECKED)

        result = self.verifier.verify(envelope)
        if not result.valid:
            trail.append(AttemptState.REJECTED)
            return GuardDecision(
                state=AttemptState.REJECTED,
                http_status=result.http_status,
                reason=result.reason,
                code=SIGNATURE_FAILURE_CODES.get(result.reason, ErrorCodes.INVALID_SIGNATURE),
                message="Webhook signature verification failed",
                trail=trail,
            )

        trail.extend([AttemptState.VALIDATED, AttemptState.APPROVED])
        logger.info(f"Webhook from {envelope.source_tag} accepted")
        return GuardDecision(
            state=AttemptState.APPROVED,
            http_status=200,
            reason="accepted",
            message="Webhook accepted",
            trail=trail,
            context={"source": envelope.source_tag, "timestamp": result.timestamp},
        )

    @staticmethod
    def _rate_limited(limit: RateLimitResult, trail: List[AttemptState], message: str, code: str) -> GuardDecision:
        if limit.error:
            return GuardDecision(
                state=AttemptState.REJECTED,
                http_status=503,
                reason=limit.error,
                code=ErrorCodes.SERVICE_UNAVAILABLE,
                message="Rate limiting is temporarily unavailable",
                trail=trail,
                retry_after=limit.retry_after,
            )
        return GuardDecision(
            state=AttemptState.REJECTED,
            http_status=429,
            reason="rate_limited",
            code=code,
            message=message,
            trail=trail,
            retry_after=limit.retry_after,
        )

def _decision_severity(decision: GuardDecision) -> Severity:
    if decision.state == AttemptState.APPROVED:
        return Severity.LOW
    if decision.state == AttemptState.CHALLENGED:
        return Severity.MEDIUM
    return {
        "validation_failed": Severity.LOW,
        "rate_limited": Severity.MEDIUM,
        "daily_limit_exceeded": Severity.MEDIUM,
        "risk_rejected": Severity.HIGH,
    }.get(decision.reason, Severity.HIGH)
