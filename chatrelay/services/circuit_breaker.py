"""
chatrelay: Circuit breaker.

Three-state breaker (CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN) wrapped
around every call to a remote dependency. One instance per dependency; the
state lives in process memory and starts fresh on every boot.
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from chatrelay.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Protects one dependency. ``execute`` is the only way calls get through."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at = 0.0

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        fallback: Optional[Callable[[], Any]] = None,
    ) -> Any:
        """Run ``operation`` through the breaker.

        While OPEN and before ``next_attempt_at`` the operation is not
        invoked: ``fallback()`` is returned when supplied, otherwise
        ``CircuitOpenError`` is raised. Callers must not spin on it.
        """
        if self.state == CircuitState.OPEN:
            now = self._clock()
            if now < self.next_attempt_at:
                if fallback is not None:
                    return fallback()
                raise CircuitOpenError(self.name, self.next_attempt_at - now)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.warning("Circuit %s HALF_OPEN, probing", self.name)

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.warning("Circuit %s CLOSED", self.name)

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.success_count = 0
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.next_attempt_at = self._clock() + self.timeout
            logger.warning(
                "Circuit %s OPEN after %d failure(s), retry in %.0fs",
                self.name, self.failure_count, self.timeout,
            )

    def get_state(self) -> dict:
        """Diagnostic snapshot for the health endpoint. Never mutates."""
        remaining = 0.0
        if self.state == CircuitState.OPEN:
            remaining = max(0.0, self.next_attempt_at - self._clock())
        return {
            "name": self.name,
            "state": self.state.value,
            "failureCount": self.failure_count,
            "successCount": self.success_count,
            "failureThreshold": self.failure_threshold,
            "successThreshold": self.success_threshold,
            "retryAfterSeconds": round(remaining, 1),
        }


class BreakerRegistry:
    """Independently configured breakers, one per downstream dependency."""

    FIRESTORE = "firestore"
    REALTIME_DB = "realtime_db"
    FCM = "fcm"

    def __init__(self, breakers: dict[str, CircuitBreaker]):
        self._breakers = dict(breakers)

    @classmethod
    def from_settings(cls, s, clock: Callable[[], float] = time.monotonic) -> "BreakerRegistry":
        return cls({
            cls.FIRESTORE: CircuitBreaker(
                cls.FIRESTORE,
                failure_threshold=s.firestore_failure_threshold,
                success_threshold=s.firestore_success_threshold,
                timeout=s.firestore_timeout_secs,
                clock=clock,
            ),
            cls.REALTIME_DB: CircuitBreaker(
                cls.REALTIME_DB,
                failure_threshold=s.realtime_failure_threshold,
                success_threshold=s.realtime_success_threshold,
                timeout=s.realtime_timeout_secs,
                clock=clock,
            ),
            cls.FCM: CircuitBreaker(
                cls.FCM,
                failure_threshold=s.fcm_failure_threshold,
                success_threshold=s.fcm_success_threshold,
                timeout=s.fcm_timeout_secs,
                clock=clock,
            ),
        })

    def get(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    @property
    def firestore(self) -> CircuitBreaker:
        return self._breakers[self.FIRESTORE]

    @property
    def realtime_db(self) -> CircuitBreaker:
        return self._breakers[self.REALTIME_DB]

    @property
    def fcm(self) -> CircuitBreaker:
        return self._breakers[self.FCM]

    def snapshot(self) -> dict[str, dict]:
        return {name: b.get_state() for name, b in self._breakers.items()}

    def healthy(self) -> bool:
        return all(b.state != CircuitState.OPEN for b in self._breakers.values())
