"""
Fixed-window rate limiting keyed by (identifier, endpoint class).

The window a request falls into is ``floor(now / window) * window``. A counter
from an earlier window is discarded rather than merged, so bursts straddling a
window boundary are tolerated. Counters saturate at ``limit + 1``: rejected
requests are still counted but never push the count further.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from .error_handling import ErrorCodes, ServiceError
from .events import SecurityEventSink, safe_append
from .schemas import SecurityEvent, Severity

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RateLimitRule:
    requests: int
    window_seconds: int

DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "general": RateLimitRule(100, 3600),
    "auth": RateLimitRule(5, 300),
    "payment": RateLimitRule(10, 600),
    "webhook": RateLimitRule(1000, 3600),
    "withdrawal": RateLimitRule(3, 3600),
}

# Classes keyed by user id rather than by source address
USER_KEYED_CLASSES = {"payment", "withdrawal"}

@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int
    count: int = 0
    limit: int = 0
    retry_after: int = 0
    error: Optional[str] = None

class CounterStore:
    """Counter storage; ``increment`` must be atomic per key and return the post-increment count"""

    def increment(self, key: str, window_start: int, window_seconds: int, limit: int) -> int:
        raise NotImplementedError

    def sweep(self, now: int) -> int:
        """Drop counters whose window has ended; returns how many were removed"""
        return 0

    def stats(self) -> Dict[str, object]:
        return {"backend": type(self).__name__, "ok": True}

class InMemoryCounterStore(CounterStore):
    """
    Process-local counters guarded by a fixed pool of striped locks.

    Memory is bounded by the keys active in the current windows: expired
    counters are swept at most once per ``sweep_interval`` seconds.
    """

    def __init__(self, lock_timeout: float = 2.0, stripes: int = 64, sweep_interval: int = 60):
        self.lock_timeout = lock_timeout
        self.sweep_interval = sweep_interval
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._counters: Dict[str, Tuple[int, int, int]] = {}  # key -> (window_start, count, expires_at)
        self._sweep_lock = threading.Lock()
        self._next_sweep = 0

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def increment(self, key, window_start, window_seconds, limit):
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ServiceError(ErrorCodes.TIMEOUT_ERROR, f"Timed out waiting for rate limit counter {key}")
        try:
            current_window, count, _ = self._counters.get(key, (window_start, 0, 0))
            if current_window != window_start:
                count = 0
            if count <= limit:
                count += 1
            self._counters[key] = (window_start, count, window_start + window_seconds)
            return count
        finally:
            lock.release()

    def sweep(self, now):
        with self._sweep_lock:
            if now < self._next_sweep:
                return 0
            self._next_sweep = now + self.sweep_interval
        expired = [key for key, (_, _, expires_at) in list(self._counters.items()) if expires_at <= now]
        removed = 0
        for key in expired:
            lock = self._lock_for(key)
            # busy stripes are left for the next sweep
            if not lock.acquire(blocking=False):
                continue
            try:
                entry = self._counters.get(key)
                if entry is not None and entry[2] <= now:
                    del self._counters[key]
                    removed += 1
            finally:
                lock.release()
        if removed:
            logger.debug(f"Swept {removed} expired rate limit counters")
        return removed

    def peek(self, key: str) -> Optional[Tuple[int, int]]:
        entry = self._counters.get(key)
        return entry[:2] if entry else None

    def stats(self):
        return {"backend": "memory", "ok": True, "keys": len(self._counters)}

def rules_from_config(overrides: Optional[Mapping[str, object]] = None) -> Dict[str, RateLimitRule]:
    """Merge ``{"payment": [10, 600]}`` style overrides onto the defaults"""
    rules = dict(DEFAULT_RATE_LIMITS)
    for endpoint_class, value in (overrides or {}).items():
        if isinstance(value, RateLimitRule):
            rules[endpoint_class] = value
        else:
            requests, window_seconds = value
            rules[endpoint_class] = RateLimitRule(int(requests), int(window_seconds))
    return rules

class RateLimiter:
    """Check-and-increment limiter shared by all request handlers of a process"""

    def __init__(self, store: CounterStore, sink: SecurityEventSink,
                 rules: Optional[Dict[str, RateLimitRule]] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.sink = sink
        self.rules = rules or dict(DEFAULT_RATE_LIMITS)
        self.clock = clock

    def rule_for(self, endpoint_class: str) -> RateLimitRule:
        return self.rules.get(endpoint_class) or self.rules.get("general") or DEFAULT_RATE_LIMITS["general"]

    def _event_identity(self, identifier: str, endpoint_class: str, ip: str) -> Dict[str, object]:
        if endpoint_class in USER_KEYED_CLASSES:
            return {"user_id": identifier, "ip": ip}
        return {"user_id": None, "ip": ip or identifier}

    def check(self, identifier: str, endpoint_class: str, ip: str = "") -> RateLimitResult:
        """
        Count one request for ``identifier`` in ``endpoint_class``.
        ``ip`` is the caller's address, recorded on events for user-keyed classes.
        """
        rule = self.rule_for(endpoint_class)
        now = int(self.clock())
        window_start = now // rule.window_seconds * rule.window_seconds
        reset_at = window_start + rule.window_seconds
        key = f"rate_limit:{identifier}:{endpoint_class}"

        try:
            self.store.sweep(now)
            count = self.store.increment(key, window_start, rule.window_seconds, rule.requests)
        except Exception as e:
            # Security-critical: deny when the counter cannot be trusted
            logger.error(f"Rate limit check failed for {identifier}:{endpoint_class}: {e}")
            safe_append(self.sink, SecurityEvent(
                event_type="rate_limiter_error",
                severity=Severity.HIGH,
                details={"identifier": identifier, "endpoint": endpoint_class, "error": type(e).__name__},
                **self._event_identity(identifier, endpoint_class, ip),
            ))
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at,
                                   limit=rule.requests, retry_after=reset_at - now,
                                   error="rate_limiter_unavailable")

        if count <= rule.requests:
            return RateLimitResult(allowed=True, remaining=rule.requests - count, reset_at=reset_at,
                                   count=count, limit=rule.requests)

        logger.warning(f"Rate limit exceeded for {identifier}:{endpoint_class} - {count}/{rule.requests}")
        safe_append(self.sink, SecurityEvent(
            event_type="rate_limit_exceeded",
            severity=Severity.MEDIUM,
            details={
                "identifier": identifier,
                "endpoint": endpoint_class,
                "limit": rule.requests,
                "window": rule.window_seconds,
            },
            **self._event_identity(identifier, endpoint_class, ip),
        ))
        return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, count=count,
                               limit=rule.requests, retry_after=reset_at - now)
