"""
Phone number, amount and provider validation for mobile money payments.

All checks are pure: they look only at the attempt and the provider rule and
collect every field error instead of stopping at the first one.
"""
import re
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, Optional, Tuple

from .providers import COUNTRY_PHONE_RULES, ProviderDirectory
from .schemas import HistoricalAttempt, PaymentAttempt, ProviderRule, as_utc

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 100000
ROLE_DAILY_LIMITS = {
    "ADMIN": 10000000,
    "SUPPLIER": 1000000,
}
# (minimum account age in days, limit), checked in order
AGE_DAILY_LIMITS = (
    (30, 500000),
    (7, 200000),
    (0, 50000),
)

@dataclass
class ValidationResult:
    valid: bool
    errors: Dict[str, str] = field(default_factory=dict)
    fee: Optional[float] = None
    total: Optional[float] = None
    formatted_phone: Optional[str] = None

@dataclass
class DailyLimitCheck:
    allowed: bool
    limit: float
    used_today: float

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit - self.used_today)

def clean_phone(phone: Optional[str]) -> str:
    return re.sub(r"\s+", "", phone or "")

def national_number(phone: str, dial_code: str = "") -> str:
    """Strip the international dial code or the trunk prefix"""
    digits = re.sub(r"\D", "", phone or "")
    if dial_code and digits.startswith(dial_code) and len(digits) - len(dial_code) >= 8:
        return digits[len(dial_code):]
    if digits.startswith("0"):
        return digits[1:]
    return digits

def format_phone(phone: str, country_code: str) -> str:
    country = (country_code or "").upper()
    cleaned = clean_phone(phone)
    if country not in COUNTRY_PHONE_RULES:
        return cleaned
    dial_code = COUNTRY_PHONE_RULES[country][0]
    num = national_number(cleaned, dial_code)
    if len(num) < 8:
        return cleaned
    return f"+{dial_code} {num[:3]} {num[3:6]} {num[6:]}"

def calculate_fee(amount: float, rule: ProviderRule) -> Tuple[float, float]:
    """Return (fee, total) for an amount under the rule's fee schedule"""
    fee = amount * rule.fee_percentage / 100 + rule.fee_fixed
    return fee, amount + fee

def validate_phone(phone: Optional[str], rule: Optional[ProviderRule]) -> Optional[str]:
    cleaned = clean_phone(phone)
    if not cleaned:
        return "Phone number is required"
    if rule is None:
        return None

    if not re.match(rule.phone_pattern, cleaned):
        return f"Invalid phone number format for {rule.provider_id}"

    # An empty allow-list means the provider accepts every number in the country
    if rule.prefixes:
        prefix = national_number(cleaned, rule.dial_code)[:3]
        if prefix not in rule.prefixes:
            return f"This phone number is not compatible with {rule.provider_id}"
    return None

def validate_amount(amount: Optional[float], rule: Optional[ProviderRule]) -> Optional[str]:
    if amount is None or not amount > 0:
        return "Amount must be greater than 0"
    if rule is None:
        return None
    if amount < rule.min_amount:
        return f"Minimum amount is {rule.currency} {rule.min_amount:,.2f}".strip()
    if amount > rule.max_amount:
        return f"Maximum amount is {rule.currency} {rule.max_amount:,.2f}".strip()
    return None

class PaymentValidator:
    """Validates a payment attempt against the provider directory"""

    def __init__(self, directory: ProviderDirectory):
        self.directory = directory

    def validate(self, attempt: PaymentAttempt, rule: Optional[ProviderRule] = None) -> ValidationResult:
        errors: Dict[str, str] = {}

        if rule is None:
            rule = self.directory.lookup(attempt.provider_id, attempt.country_code)
        if rule is None:
            errors["provider"] = (
                f"{attempt.provider_id or 'Provider'} is not available in {attempt.country_code or 'this country'}"
            )

        phone_error = validate_phone(attempt.phone_number, rule)
        if phone_error:
            errors["phone_number"] = phone_error

        amount_error = validate_amount(attempt.amount, rule)
        if amount_error:
            errors["amount"] = amount_error

        if errors:
            logger.info(f"Payment {attempt.attempt_id} failed validation", extra={
                "user_id": attempt.user_id,
                "fields": sorted(errors)
            })
            return ValidationResult(valid=False, errors=errors)

        fee, total = calculate_fee(attempt.amount, rule)
        return ValidationResult(
            valid=True,
            fee=fee,
            total=total,
            formatted_phone=format_phone(attempt.phone_number, rule.country_code),
        )

def daily_limit_for(role: Optional[str], account_age_days: Optional[float]) -> float:
    role = (role or "").upper()
    if role in ROLE_DAILY_LIMITS:
        return ROLE_DAILY_LIMITS[role]
    if account_age_days is None:
        return DEFAULT_DAILY_LIMIT
    for min_age, limit in AGE_DAILY_LIMITS:
        if account_age_days >= min_age:
            return limit
    return AGE_DAILY_LIMITS[-1][1]

def check_daily_limit(attempt: PaymentAttempt, history: Iterable[HistoricalAttempt]) -> DailyLimitCheck:
    """Completed volume of the attempt's calendar day (UTC) in the same currency"""
    now = as_utc(attempt.timestamp)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    used = sum(
        h.amount for h in history
        if h.status == "COMPLETED"
        and h.currency == attempt.currency
        and day_start <= as_utc(h.created_at) <= now
    )

    age_days = None
    if attempt.account_created_at is not None:
        age_days = (now - as_utc(attempt.account_created_at)) / timedelta(days=1)

    limit = daily_limit_for(attempt.user_role, age_days)
    return DailyLimitCheck(allowed=used + attempt.amount <= limit, limit=limit, used_today=used)
