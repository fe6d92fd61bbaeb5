"""
Circuit breaker for history store reads.

Wraps a blocking call with a hard timeout and stops calling the store after
repeated failures, so a slow or dead store costs each request at most one
timeout and then nothing until the reset period has passed.
"""
import time
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable, Any
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"      # Normal operation
    OPEN = "OPEN"          # Failing fast
    HALF_OPEN = "HALF_OPEN"  # Trying to recover

@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5  # Number of failures before opening
    reset_timeout: float = 60.0  # Seconds to wait before trying half-open
    success_threshold: int = 3   # Successes needed to close from half-open
    timeout: float = 2.0         # Operation timeout

class CircuitBreakerException(Exception):
    """Raised when circuit breaker is open"""
    pass

class CallTimeoutError(Exception):
    """Raised when the protected call exceeds the configured timeout"""
    pass

class CircuitBreaker:
    """Circuit breaker implementation"""

    def __init__(self, name: str, config: CircuitBreakerConfig, max_workers: int = 8,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.config = config
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0
        self.last_state_change = clock()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"cb-{name}")

    def _should_attempt_reset(self) -> bool:
        """Check if we should try to reset the circuit"""
        return (self.state == CircuitState.OPEN and
                self.clock() - self.last_failure_time >= self.config.reset_timeout)

    def _record_success(self):
        """Record a successful operation"""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    self.success_count = 0
                    self.last_state_change = self.clock()
                    logger.info(f"Circuit breaker {self.name} closed after recovery")
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    def _record_failure(self):
        """Record a failed operation"""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()

            if self.state == CircuitState.CLOSED:
                if self.failure_count >= self.config.failure_threshold:
                    self.state = CircuitState.OPEN
                    self.last_state_change = self.clock()
                    logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")
            elif self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                self.success_count = 0
                self.last_state_change = self.clock()
                logger.warning(f"Circuit breaker {self.name} re-opened during half-open state")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection"""

        with self._lock:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                self.last_state_change = self.clock()
                logger.info(f"Circuit breaker {self.name} entering half-open state")

            if self.state == CircuitState.OPEN:
                raise CircuitBreakerException(f"Circuit breaker {self.name} is open")

        future = self._executor.submit(func, *args, **kwargs)
        try:
            result = future.result(timeout=self.config.timeout)
        except FutureTimeoutError:
            future.cancel()
            self._record_failure()
            raise CallTimeoutError(f"{self.name} call exceeded {self.config.timeout}s")
        except Exception:
            self._record_failure()
            raise

        self._record_success()
        return result

    def get_state(self) -> dict:
        """Get current circuit breaker state"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
            "uptime_since_last_change": self.clock() - self.last_state_change
        }

    def shutdown(self):
        self._executor.shutdown(wait=False)

HISTORY_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    reset_timeout=30.0,
    success_threshold=2,
    timeout=2.0
)
