"""
chatrelay: Shared handler plumbing.

Trigger handlers have no synchronous caller waiting on them, so they never
raise: failures are logged with context and folded into a result dict.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional

from chatrelay.handlers.effects import Effect, LogWarning, NoOp, SendNotification
from chatrelay.services.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


class ProcessedEvents:
    """Bounded memory of event ids already handled by this process.

    Drops an obvious redelivery early. Correctness never depends on it:
    every planner is idempotent on document state.
    """

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self._seen: OrderedDict[str, float] = OrderedDict()

    def seen(self, key: str) -> bool:
        return key in self._seen

    def mark(self, key: str) -> None:
        self._seen[key] = time.monotonic()
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)

    def forget(self, key: str) -> None:
        self._seen.pop(key, None)


async def execute_effect(effect: Effect, dispatcher: NotificationDispatcher) -> dict:
    if isinstance(effect, SendNotification):
        delivery = await dispatcher.dispatch(effect)
        if delivery is None:
            return {"status": "noop", "reason": "no deliverable recipients"}
        return {"status": "sent", "delivery": delivery.to_dict()}
    if isinstance(effect, LogWarning):
        logger.warning(effect.message)
        return {"status": "noop", "reason": effect.message}
    if isinstance(effect, NoOp):
        if effect.reason:
            logger.debug(effect.reason)
        return {"status": "noop", "reason": effect.reason}
    raise TypeError(f"Unknown effect: {effect!r}")


async def run_handler(
    name: str,
    event_key: str,
    fn: Callable[[], Awaitable[dict]],
    timeout: float,
    processed: Optional[ProcessedEvents] = None,
    identity: str = "",
) -> dict[str, Any]:
    """Run one trigger handler with a timeout and full error containment."""
    dedup_key = f"{name}:{event_key}"
    if processed is not None and processed.seen(dedup_key):
        logger.info("%s: event %s already handled, skipping", name, event_key)
        return {"status": "duplicate"}

    started = time.monotonic()
    try:
        result = await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.error(
            "%s timed out (event=%s identity=%s duration=%dms)",
            name, event_key, identity or "-", elapsed_ms,
        )
        return {"status": "error", "reason": "timeout"}
    except Exception as e:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.exception(
            "%s failed (event=%s identity=%s duration=%dms): %s",
            name, event_key, identity or "-", elapsed_ms, e,
        )
        return {"status": "error", "reason": str(e)}

    if processed is not None and result.get("status") != "error":
        processed.mark(dedup_key)
    return result
