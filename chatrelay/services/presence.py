"""
chatrelay: Presence in the Realtime Database.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Sequence

from chatrelay.errors import InvalidArgument
from chatrelay.services.realtime import RealtimeGateway

logger = logging.getLogger(__name__)

MAX_PRESENCE_BATCH = 100
OFFLINE = {"online": False, "lastSeen": 0}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _visible_entry(value: Optional[dict]) -> dict:
    """Presence as others may see it; a hidden last-seen reads as 0."""
    entry = {**OFFLINE, **(value or {})}
    if entry.get("visible") is False:
        entry["lastSeen"] = 0
    return entry


class PresenceService:
    def __init__(self, realtime: RealtimeGateway, now_ms: Callable[[], int] = _now_ms):
        self.realtime = realtime
        self._now_ms = now_ms

    async def update_presence(self, uid: str, online: bool = True, last_seen: Optional[int] = None) -> dict:
        now = self._now_ms()
        entry = {"online": bool(online), "lastSeen": last_seen or now, "updatedAt": now}
        # update, not set: keeps the visibility flag written by the privacy sync
        await self.realtime.update(f"presence/{uid}", entry)
        return entry

    async def get_presence(self, user_ids: Sequence[str]) -> dict[str, dict]:
        ids = list(dict.fromkeys(u for u in user_ids if u))
        if not ids:
            raise InvalidArgument("userIds must be a non-empty array")
        if len(ids) > MAX_PRESENCE_BATCH:
            raise InvalidArgument(f"At most {MAX_PRESENCE_BATCH} userIds per request")

        values = await asyncio.gather(*(self.realtime.get(f"presence/{uid}") for uid in ids))
        return {uid: _visible_entry(value) for uid, value in zip(ids, values)}
