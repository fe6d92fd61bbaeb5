import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

AttemptStatus = Literal["PENDING", "REVIEW", "REJECTED", "COMPLETED", "FAILED"]

class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REVIEW = "REVIEW"
    REJECT = "REJECT"

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class PaymentAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    amount: float
    currency: str
    provider_id: str
    country_code: str
    phone_number: str = ""
    source_ip: str = ""
    user_agent: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    headers: Dict[str, str] = {}
    account_created_at: Optional[datetime] = None
    user_role: str = "USER"

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive request header lookup"""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

class HistoricalAttempt(BaseModel):
    """A previously scored payment attempt and its current outcome"""
    attempt_id: str
    user_id: str
    amount: float
    currency: str
    provider_id: str
    phone_number: str = ""
    status: AttemptStatus = "PENDING"
    risk_score: int = 0
    created_at: datetime

class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    factors: List[str] = []
    recommendation: Recommendation
    computed_at: datetime = Field(default_factory=utcnow)

class WebhookEnvelope(BaseModel):
    raw_body: bytes
    signature_header: Optional[str] = None
    timestamp_header: Optional[str] = None
    source_tag: str
    source_ip: str = ""
    user_agent: str = ""

class SecurityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str
    severity: Severity
    user_id: Optional[str] = None
    ip: str = ""
    user_agent: str = ""
    details: Dict[str, Any] = {}
    risk_score_contribution: int = 0
    created_at: datetime = Field(default_factory=utcnow)

class ReviewItem(BaseModel):
    attempt_id: str
    user_id: str
    attempt: Dict[str, Any]
    risk_score: int
    factors: List[str] = []
    status: Literal["PENDING", "APPROVED", "REJECTED"] = "PENDING"
    created_at: datetime = Field(default_factory=utcnow)

class ProviderRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    country_code: str
    phone_pattern: str
    min_amount: float
    max_amount: float
    fee_percentage: float = 0.0
    fee_fixed: float = 0.0
    currency: str = ""
    dial_code: str = ""
    prefixes: Tuple[str, ...] = ()

class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    name: str
    ussd_code: str = ""
    processing_minutes: int = 5
    steps: Tuple[str, ...] = ()
    tips: Tuple[str, ...] = ()

# HTTP request bodies

class PaymentCheckRequest(BaseModel):
    amount: float
    currency: str
    provider_id: str
    country_code: str
    phone_number: str = ""

class OutcomeReport(BaseModel):
    status: Literal["COMPLETED", "FAILED"]
