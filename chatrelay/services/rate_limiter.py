"""
chatrelay: Per-identity, per-operation rate limiter.

Fixed window counters kept in process memory. This is a best-effort abuse
guard, not a quota system: a restart resets every counter and each
horizontally scaled instance counts on its own, so the effective global
ceiling is ``ceiling x instances``. Swapping ``_counters`` for a shared
atomic-increment store keeps the ``check()`` contract unchanged.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from chatrelay.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

WINDOW_SECS = 60
DEFAULT_CEILING = 60

# Requests allowed per window, by operation name
OPERATION_LIMITS: dict[str, int] = {
    "updatePresence": 30,
    "getPresence": 60,
    "batchStatusUpdate": 60,
    "blockUser": 10,
    "unblockUser": 10,
    "reportUser": 5,
    "deleteUserAccount": 3,
    "resetUnreadCount": 60,
    "validateMessage": 120,
    "shouldSendReadReceipt": 120,
    "getUserProfile": 60,
    "sendBroadcast": 5,
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: Optional[int] = None


@dataclass
class _Counter:
    count: int
    window_reset_at: float


class RateLimiter:
    def __init__(
        self,
        limits: Optional[dict[str, int]] = None,
        window_secs: float = WINDOW_SECS,
        default_ceiling: int = DEFAULT_CEILING,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = {**OPERATION_LIMITS, **(limits or {})}
        self.window_secs = window_secs
        self.default_ceiling = default_ceiling
        self._clock = clock
        self._counters: dict[tuple[str, str], _Counter] = {}

    def ceiling(self, operation: str) -> int:
        return self.limits.get(operation, self.default_ceiling)

    def check(self, identity: str, operation: str) -> RateLimitResult:
        """Count one request and say whether it may proceed."""
        now = self._clock()
        ceiling = self.ceiling(operation)
        key = (identity, operation)
        counter = self._counters.get(key)

        if counter is None or now >= counter.window_reset_at:
            self._counters[key] = _Counter(count=1, window_reset_at=now + self.window_secs)
            self._evict_expired(now)
            return RateLimitResult(allowed=True, remaining=ceiling - 1)

        if counter.count >= ceiling:
            retry_after = max(1, math.ceil(counter.window_reset_at - now))
            return RateLimitResult(allowed=False, remaining=0, retry_after_seconds=retry_after)

        counter.count += 1
        return RateLimitResult(allowed=True, remaining=ceiling - counter.count)

    def enforce(self, identity: str, operation: str) -> RateLimitResult:
        """Like ``check`` but raises ``RateLimitExceeded`` on rejection."""
        result = self.check(identity, operation)
        if not result.allowed:
            logger.info(
                "Rate limit hit: %s on %s (retry in %ss)",
                identity, operation, result.retry_after_seconds,
            )
            raise RateLimitExceeded(operation, result.retry_after_seconds or 1)
        return result

    def _evict_expired(self, now: float) -> None:
        # Keeps the map bounded by active keys only
        if len(self._counters) < 10_000:
            return
        expired = [k for k, c in self._counters.items() if now >= c.window_reset_at]
        for k in expired:
            del self._counters[k]

    def reset(self) -> None:
        self._counters.clear()
