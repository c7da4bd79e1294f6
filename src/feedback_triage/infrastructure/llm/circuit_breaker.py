"""
Circuit Breaker
===============

Stops calling the LLM provider after repeated failures.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: After N consecutive failures, reject all requests for M seconds
- HALF_OPEN: After the cool-down, allow exactly one probe request. A probe
  that never reports back is written off after another cool-down.

One instance is created at startup and shared by reference, so every stage
of every job in the process sees the same state.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitSnapshot:
    """Point-in-time view of the breaker for health checks."""
    state: str
    consecutive_failures: int
    failure_threshold: int
    recovery_timeout: float
    seconds_until_probe: Optional[float]

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "consecutiveFailures": self.consecutive_failures,
            "failureThreshold": self.failure_threshold,
            "recoveryTimeoutSeconds": self.recovery_timeout,
            "secondsUntilProbe": self.seconds_until_probe,
        }


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    The clock is injectable so tests can move time without sleeping.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._probe_started_at: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state, promoting OPEN to HALF_OPEN after the cool-down."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allow_request(self) -> bool:
        """Check if a request may go out. In HALF_OPEN only the first caller gets through."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and self._probe_in_flight:
            if self._clock() - self._probe_started_at >= self.recovery_timeout:
                logger.warning("Circuit breaker probe never reported back, allowing another")
                self._probe_in_flight = False
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            self._probe_started_at = self._clock()
            logger.info("Circuit breaker half-open, allowing probe request")
            return True
        return False

    def release_probe(self) -> None:
        """The probe call was abandoned without an answer (cancelled); let the next caller probe."""
        if self._state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False

    def record_success(self) -> None:
        """Record successful request."""
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit breaker closed after successful probe")
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            was_open = self._state == CircuitState.OPEN
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._probe_in_flight = False
            if not was_open:
                logger.warning(
                    "Circuit breaker opened",
                    extra={
                        "failure_count": self._failure_count,
                        "recovery_timeout": self.recovery_timeout
                    }
                )

    def reset(self) -> None:
        """Force the breaker closed (admin operation)."""
        logger.info("Circuit breaker reset", extra={"previous_state": self._state})
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._probe_in_flight = False

    def snapshot(self) -> CircuitSnapshot:
        state = self.state
        remaining = None
        if state == CircuitState.OPEN and self._opened_at is not None:
            remaining = max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))
        return CircuitSnapshot(
            state=state,
            consecutive_failures=self._failure_count,
            failure_threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout,
            seconds_until_probe=remaining,
        )
