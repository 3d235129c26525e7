"""
chatrelay: Realtime Database gateway (presence store).
"""

import logging
from typing import Any, Callable, Optional

from firebase_admin import db as firebase_db

from chatrelay.services.circuit_breaker import CircuitBreaker
from chatrelay.services.firebase import run_blocking

logger = logging.getLogger(__name__)


class RealtimeGateway:
    """Thin async wrapper over ``firebase_admin.db`` references."""

    def __init__(self, breaker: CircuitBreaker, reference: Optional[Callable[[str], Any]] = None):
        self.breaker = breaker
        self._reference = reference or firebase_db.reference

    async def _call(self, fn):
        return await self.breaker.execute(lambda: run_blocking(fn))

    async def get(self, path: str) -> Any:
        return await self._call(lambda: self._reference(path).get())

    async def set(self, path: str, value: Any) -> None:
        await self._call(lambda: self._reference(path).set(value))

    async def update(self, path: str, values: dict) -> None:
        """Multi-path update. Keys may be nested paths like ``uid/online``."""
        if not values:
            return
        await self._call(lambda: self._reference(path).update(values))

    async def delete(self, path: str) -> None:
        await self._call(lambda: self._reference(path).delete())
