"""
Deterministic weighted-factor fraud risk scoring.

Each factor independently contributes a fixed number of points when its
trigger fires. The score is the sum of the contributions clamped to 0-100 and
the recommendation is a step function of the score:

    score >= 90  -> REJECT
    score >= 60  -> REVIEW
    otherwise    -> APPROVE

Scores of 80 and above are additionally reported as high risk so the caller
can raise a notification even while the decision is still REVIEW.

The scorer never writes anything. It reads the attempt and the history it is
given; persisting the assessment is the caller's job.
"""
import ipaddress
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from statistics import mean
from typing import Iterable, List, Optional, Sequence

from .schemas import HistoricalAttempt, PaymentAttempt, Recommendation, RiskAssessment, as_utc
from .validation import clean_phone

logger = logging.getLogger(__name__)

REJECT_THRESHOLD = 90
REVIEW_THRESHOLD = 60
HIGH_RISK_THRESHOLD = 80

# Points per factor, in reporting order
FACTOR_POINTS = {
    "rapid_transactions": 25,
    "large_amount": 20,
    "new_user": 15,
    "high_velocity": 30,
    "multiple_failures": 20,
    "unusual_amount": 15,
    "suspicious_ip": 25,
    "automated_user_agent": 40,
    "missing_headers": 20,
    "unusual_user_agent": 15,
    "duplicate_payment": 50,
}

AUTOMATION_PATTERN = re.compile(r"bot|crawler|spider", re.IGNORECASE)

@dataclass(frozen=True)
class RiskThresholds:
    rapid_transactions: int = 5
    rapid_window_seconds: int = 5 * 60
    large_amount: float = 1000000
    new_user_days: int = 7
    velocity: int = 10
    velocity_window_seconds: int = 60 * 60
    multiple_failures: int = 3
    failure_window_seconds: int = 60 * 60
    unusual_amount_variance: float = 0.9
    duplicate_window_seconds: int = 5 * 60
    min_user_agent_length: int = 20
    max_user_agent_length: int = 500

def recommend(score: int) -> Recommendation:
    if score >= REJECT_THRESHOLD:
        return Recommendation.REJECT
    if score >= REVIEW_THRESHOLD:
        return Recommendation.REVIEW
    return Recommendation.APPROVE

def is_high_risk(score: int) -> bool:
    return score >= HIGH_RISK_THRESHOLD

class IpSet:
    """Exact addresses and CIDR networks, e.g. known abusive sources or trusted proxies"""

    def __init__(self, entries: Iterable[str] = ()):
        self.addresses = set()
        self.networks = []
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            if "/" in entry:
                self.networks.append(ipaddress.ip_network(entry, strict=False))
            else:
                self.addresses.add(str(ipaddress.ip_address(entry)))

    def __contains__(self, ip: str) -> bool:
        if not ip:
            return False
        try:
            address = ipaddress.ip_address(ip.strip())
        except ValueError:
            return False
        if str(address) in self.addresses:
            return True
        return any(address in network for network in self.networks)

class RiskScorer:
    """
    Fraud risk scoring for mobile money payment attempts.

    Args:
        thresholds: trigger thresholds for the history and amount factors
        suspicious_ips: addresses or CIDR ranges that add ``suspicious_ip``
    """

    def __init__(self, thresholds: Optional[RiskThresholds] = None,
                 suspicious_ips: Optional[Iterable[str]] = None):
        self.thresholds = thresholds or RiskThresholds()
        self.suspicious_ips = IpSet(suspicious_ips or ())

    @staticmethod
    def fallback() -> RiskAssessment:
        """Medium-risk assessment used whenever scoring cannot complete"""
        return RiskAssessment(score=50, factors=["assessment_error"], recommendation=Recommendation.REVIEW)

    def assess(self, attempt: PaymentAttempt, history: Sequence[HistoricalAttempt]) -> RiskAssessment:
        try:
            factors = self.evaluate_factors(attempt, list(history or ()))
        except Exception as e:
            logger.error(f"Risk assessment error for attempt {attempt.attempt_id}: {e}")
            return self.fallback()

        score = max(0, min(100, sum(FACTOR_POINTS[f] for f in factors)))
        return RiskAssessment(score=score, factors=factors, recommendation=recommend(score))

    def evaluate_factors(self, attempt: PaymentAttempt, history: List[HistoricalAttempt]) -> List[str]:
        """Names of the triggered factors in reporting order"""
        t = self.thresholds
        now = as_utc(attempt.timestamp)
        history = [h for h in history if h.attempt_id != attempt.attempt_id]
        triggered = set()

        def within(seconds: int) -> List[HistoricalAttempt]:
            cutoff = now - timedelta(seconds=seconds)
            return [h for h in history if cutoff <= as_utc(h.created_at) <= now]

        if len(within(t.rapid_window_seconds)) >= t.rapid_transactions:
            triggered.add("rapid_transactions")

        if attempt.amount >= t.large_amount:
            triggered.add("large_amount")

        if attempt.account_created_at is not None:
            if now - as_utc(attempt.account_created_at) < timedelta(days=t.new_user_days):
                triggered.add("new_user")

        if len(within(t.velocity_window_seconds)) >= t.velocity:
            triggered.add("high_velocity")

        failures = [h for h in within(t.failure_window_seconds) if h.status == "FAILED"]
        if len(failures) >= t.multiple_failures:
            triggered.add("multiple_failures")

        if self._is_unusual_amount(attempt.amount, history):
            triggered.add("unusual_amount")

        if attempt.source_ip in self.suspicious_ips:
            triggered.add("suspicious_ip")

        triggered.update(self._device_factors(attempt))

        if self._is_duplicate(attempt, within(t.duplicate_window_seconds)):
            triggered.add("duplicate_payment")

        return [name for name in FACTOR_POINTS if name in triggered]

    def _is_unusual_amount(self, amount: float, history: List[HistoricalAttempt]) -> bool:
        if not history:
            return False
        average = mean(h.amount for h in history)
        if average <= 0:
            return False
        return abs(amount - average) / average >= self.thresholds.unusual_amount_variance

    def _device_factors(self, attempt: PaymentAttempt) -> List[str]:
        factors = []
        user_agent = attempt.user_agent or ""

        if AUTOMATION_PATTERN.search(user_agent):
            factors.append("automated_user_agent")

        if not attempt.header("Accept") or not attempt.header("Accept-Encoding"):
            factors.append("missing_headers")

        if not (self.thresholds.min_user_agent_length <= len(user_agent) <= self.thresholds.max_user_agent_length):
            factors.append("unusual_user_agent")

        return factors

    @staticmethod
    def _is_duplicate(attempt: PaymentAttempt, recent: List[HistoricalAttempt]) -> bool:
        phone = clean_phone(attempt.phone_number)
        for prior in recent:
            if prior.status == "FAILED":
                continue
            if (prior.user_id == attempt.user_id
                    and prior.amount == attempt.amount
                    and prior.currency == attempt.currency
                    and prior.provider_id == attempt.provider_id
                    and clean_phone(prior.phone_number) == phone):
                return True
        return False
