"""
chatrelay: Time budget for batch loops.
"""

import time
from typing import Callable, Optional


class Deadline:
    """A point in monotonic time after which loops should stop taking new pages."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._at = None if seconds is None else clock() + seconds

    def expired(self) -> bool:
        return self._at is not None and self._clock() >= self._at

    def remaining(self) -> Optional[float]:
        if self._at is None:
            return None
        return max(0.0, self._at - self._clock())

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)
