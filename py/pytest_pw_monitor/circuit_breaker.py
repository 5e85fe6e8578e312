"""Circuit breaker guarding automated recovery for a pipeline."""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """
    Tracks consecutive pipeline failures.

    closed -> open once ``threshold`` failures accumulate; open -> half-open
    when ``timeout`` has elapsed (see ``poll``); half-open -> closed after
    ``success_threshold`` successes, or straight back to open on any failure.
    """

    def __init__(
        self,
        threshold: int = 3,
        timeout: timedelta = timedelta(minutes=5),
        success_threshold: int = 1,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: datetime | None = None
        self.next_attempt_time: datetime | None = None

    @property
    def allows_recovery(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_failure(self) -> bool:
        """Count a failure. Returns True if this failure tripped the breaker."""
        now = self.clock()
        self.failure_count += 1
        self.last_failure_time = now

        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED and self.failure_count >= self.threshold
        ):
            self._trip(now)
            return True
        return False

    def record_success(self):
        self.success_count += 1
        if self.state == CircuitState.HALF_OPEN:
            if self.success_count >= self.success_threshold:
                self._close()
        elif self.state == CircuitState.CLOSED:
            self.failure_count = max(0, self.failure_count - 1)

    def poll(self) -> bool:
        """Move an expired open breaker to half-open. Returns True on change."""
        if self.state != CircuitState.OPEN or self.next_attempt_time is None:
            return False
        if self.clock() >= self.next_attempt_time:
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info("Circuit breaker moved to half-open")
            return True
        return False

    def _trip(self, now: datetime):
        self.state = CircuitState.OPEN
        self.next_attempt_time = now + self.timeout
        logger.warning(
            f"Circuit breaker opened after {self.failure_count} failures, "
            f"next attempt at {self.next_attempt_time.isoformat()}"
        )

    def _close(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_time = None
        logger.info("Circuit breaker closed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failureCount": self.failure_count,
            "successCount": self.success_count,
            "lastFailureTime": self.last_failure_time,
            "nextAttemptTime": self.next_attempt_time,
        }
