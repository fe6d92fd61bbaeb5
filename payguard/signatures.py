"""
Webhook authentication: HMAC-SHA256 signature plus timestamp window.

The signed message is ``f"{timestamp}.{raw_body}"``. Deliveries whose
timestamp is more than ``REPLAY_TOLERANCE_SECONDS`` away from the local clock
are rejected before the signature is even looked at, so a captured request
cannot be replayed later.
"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from .events import SecurityEventSink, safe_append
from .schemas import SecurityEvent, Severity, WebhookEnvelope

logger = logging.getLogger(__name__)

REPLAY_TOLERANCE_SECONDS = 300
SIGNATURE_PREFIX = "sha256="

@dataclass
class VerificationResult:
    valid: bool
    reason: Optional[str] = None
    source_tag: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def http_status(self) -> int:
        if self.valid:
            return 200
        if self.reason == "verification_error":
            return 500
        return 401

def compute_signature(raw_body: Union[bytes, str], secret: str, timestamp: Union[int, str]) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    message = str(timestamp).encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

def sign(raw_body: Union[bytes, str], secret: str, timestamp: Union[int, str]) -> str:
    """Header value a provider would send for this body and timestamp"""
    return SIGNATURE_PREFIX + compute_signature(raw_body, secret, timestamp)

class SignatureVerifier:
    """Verifies inbound webhook deliveries, one secret per upstream provider"""

    def __init__(self, secrets: Dict[str, str], sink: SecurityEventSink,
                 tolerance_seconds: int = REPLAY_TOLERANCE_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.secrets = dict(secrets)
        self.sink = sink
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(self, envelope: WebhookEnvelope, source_tag: Optional[str] = None) -> VerificationResult:
        source = source_tag or envelope.source_tag
        try:
            return self._verify(envelope, source)
        except Exception as e:
            logger.error(f"Webhook signature verification error for {source}: {e}")
            return self._fail(envelope, source, "verification_error", Severity.HIGH,
                              {"error": type(e).__name__})

    def _verify(self, envelope: WebhookEnvelope, source: str) -> VerificationResult:
        if not envelope.signature_header:
            return self._fail(envelope, source, "missing_signature", Severity.MEDIUM,
                              {"error": "Missing signature header"})
        if not envelope.timestamp_header:
            return self._fail(envelope, source, "missing_timestamp", Severity.MEDIUM,
                              {"error": "Missing timestamp header"})

        try:
            webhook_timestamp = int(envelope.timestamp_header.strip())
        except ValueError:
            return self._fail(envelope, source, "invalid_timestamp", Severity.MEDIUM,
                              {"error": "Timestamp header is not unix seconds"})

        current_timestamp = int(self.clock())
        time_difference = abs(current_timestamp - webhook_timestamp)
        if time_difference > self.tolerance_seconds:
            return self._fail(envelope, source, "webhook_replay", Severity.HIGH, {
                "time_difference": time_difference,
                "webhook_timestamp": webhook_timestamp,
                "current_timestamp": current_timestamp,
            })

        secret = self.secrets.get(source)
        if not secret:
            return self._fail(envelope, source, "unknown_source", Severity.HIGH,
                              {"error": "No webhook secret configured for source"})

        expected = compute_signature(envelope.raw_body, secret, envelope.timestamp_header.strip())
        provided = envelope.signature_header.strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]

        if not hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
            return self._fail(envelope, source, "invalid_signature", Severity.HIGH,
                              {"signature_prefix": provided[:8]})

        return VerificationResult(valid=True, source_tag=source, timestamp=webhook_timestamp)

    def _fail(self, envelope: WebhookEnvelope, source: str, reason: str,
              severity: Severity, details: dict) -> VerificationResult:
        logger.warning(f"Webhook from {source} rejected: {reason}", extra={
            "source_tag": source,
            "ip": envelope.source_ip
        })
        safe_append(self.sink, SecurityEvent(
            event_type=reason,
            severity=severity,
            ip=envelope.source_ip,
            user_agent=envelope.user_agent,
            details={"source": source, **details},
        ))
        return VerificationResult(valid=False, reason=reason, source_tag=source)
