"""
Circuit Breaker - fail fast when a courier is down.

One breaker per provider adapter, so an outage at one courier never slows
down calls to another. The breaker does not retry anything; it only turns
repeated `unavailable` failures into an immediate refusal until the reset
timeout has passed.

States:
- CLOSED: Normal operation, all requests pass through
- OPEN: Too many failures, block requests
- HALF-OPEN: Let one request through after the reset timeout
"""

import logging
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF-OPEN"


class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker(name="pathao")
        if breaker.allow_request():
            try:
                result = call_courier()
                breaker.record_success()
            except ProviderError:
                breaker.record_failure()
    """

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[int] = None,
        name: str = "provider",
    ):
        self.failure_threshold = failure_threshold or settings.CIRCUIT_BREAKER_THRESHOLD
        self.reset_timeout = reset_timeout if reset_timeout is not None else settings.CIRCUIT_BREAKER_RESET_TIMEOUT
        self.name = name

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allow_request(self) -> bool:
        """
        Check if request should be allowed.

        Returns:
            True if request is allowed, False if blocked
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is not None:
                    elapsed = time.time() - self._last_failure_time
                    if elapsed >= self.reset_timeout:
                        logger.info(f"[CircuitBreaker:{self.name}] Transitioning to HALF-OPEN after {elapsed:.0f}s")
                        self._state = CircuitState.HALF_OPEN
                        return True

                logger.warning(f"[CircuitBreaker:{self.name}] Circuit OPEN - request blocked")
                return False

            # HALF-OPEN: Allow the test request
            return True

    def record_success(self):
        """Record successful request - reset failure count."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"[CircuitBreaker:{self.name}] Success in HALF-OPEN - closing circuit")

            self._failure_count = 0
            self._state = CircuitState.CLOSED
            self._last_failure_time = None

    def record_failure(self):
        """Record failed request - potentially open circuit."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"[CircuitBreaker:{self.name}] Failure in HALF-OPEN - reopening circuit")
                self._state = CircuitState.OPEN
                return

            if self._failure_count >= self.failure_threshold:
                logger.warning(
                    f"[CircuitBreaker:{self.name}] Threshold reached "
                    f"({self._failure_count}/{self.failure_threshold}) - opening circuit"
                )
                self._state = CircuitState.OPEN

    def get_status(self) -> dict:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "last_failure": datetime.fromtimestamp(self._last_failure_time).isoformat() if self._last_failure_time else None,
        }
