"""
chatrelay: Scheduled janitors.

Independent, idempotent sweeps. Each takes a ``Deadline`` and checks it
between pages; stopping early leaves data valid for the next run because
every delete is idempotent and every status change is guarded.
Overlapping runs of the same janitor are safe for the same reason.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

from firebase_admin import firestore

from chatrelay.services.deadline import Deadline
from chatrelay.services.firebase import StorageGateway
from chatrelay.services.push import PushGateway
from chatrelay.services.realtime import RealtimeGateway
from chatrelay.services.store import FirestoreGateway
from chatrelay.services.tokens import TOKENS_COLLECTION, TokenResolver

logger = logging.getLogger(__name__)

PAGE_SIZE = 500
STORY_SUBCOLLECTIONS = ("replies", "reactions", "views")
NON_TERMINAL_CALL_STATES = ("ringing", "calling")
CALL_MISSED = "missed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def storage_path_from_url(url: Optional[str]) -> Optional[str]:
    """Object path for a Firebase Storage download URL or ``gs://`` URI.

    Returns None for anything that is not recognisably a storage URL.
    """
    if not url or not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme == "gs":
        path = parsed.path.lstrip("/")
        return path or None
    if parsed.scheme in ("http", "https") and "/o/" in parsed.path:
        path = unquote(parsed.path.split("/o/", 1)[1])
        return path or None
    return None


class Janitors:
    def __init__(
        self,
        store: FirestoreGateway,
        tokens: TokenResolver,
        push: PushGateway,
        realtime: RealtimeGateway,
        storage: Optional[StorageGateway] = None,
        page_size: int = PAGE_SIZE,
        stale_call_secs: int = 120,
        stale_token_days: int = 60,
        token_validation_sample: int = 1000,
        presence_timeout_secs: int = 300,
        typing_timeout_secs: int = 30,
        notification_log_retention_days: int = 30,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.tokens = tokens
        self.push = push
        self.realtime = realtime
        self.storage = storage
        self.page_size = page_size
        self.stale_call_secs = stale_call_secs
        self.stale_token_days = stale_token_days
        self.token_validation_sample = token_validation_sample
        self.presence_timeout_secs = presence_timeout_secs
        self.typing_timeout_secs = typing_timeout_secs
        self.notification_log_retention_days = notification_log_retention_days
        self._now = now

    # ── Disappearing messages (every 5 minutes) ─────────

    async def sweep_disappearing_messages(self, deadline: Optional[Deadline] = None) -> dict:
        deadline = deadline or Deadline.never()
        now = self._now()
        rooms = await self.store.query("chat_rooms", [("disappearingDuration", ">", 0)])
        deleted, swept = 0, 0
        for room in rooms:
            if deadline.expired():
                break
            duration = int(room.data.get("disappearingDuration") or 0)
            if duration <= 0:
                continue
            cutoff = now - timedelta(seconds=duration)
            deleted += await self.store.delete_where(
                f"{room.path}/messages",
                [("createdAt", "<", cutoff)],
                page_size=self.page_size,
                deadline=deadline,
            )
            swept += 1
        return {"rooms": swept, "deleted": deleted}

    # ── Expired stories (hourly) ────────────────────────

    async def sweep_expired_stories(self, deadline: Optional[Deadline] = None) -> dict:
        deadline = deadline or Deadline.never()
        now = self._now()
        stories, nested, blobs = 0, 0, 0
        while not deadline.expired():
            page = await self.store.query("stories", [("expiresAt", "<", now)], limit=self.page_size)
            for story in page:
                if deadline.expired():
                    break
                for name in STORY_SUBCOLLECTIONS:
                    nested += await self.store.delete_collection(f"{story.path}/{name}", page_size=self.page_size)
                await self.store.delete(story.path)
                stories += 1
                blobs += await self._delete_story_media(story.data)
            if len(page) < self.page_size:
                break
        return {"stories": stories, "nested": nested, "media": blobs}

    async def _delete_story_media(self, story: dict) -> int:
        if self.storage is None:
            return 0
        deleted = 0
        for key in ("mediaUrl", "thumbnailUrl"):
            path = storage_path_from_url(story.get(key))
            if not path:
                continue
            try:
                if await self.storage.delete_blob(path):
                    deleted += 1
            except Exception as e:
                logger.warning("Story media %s not deleted: %s", path, e)
        return deleted

    # ── Stale calls (every 15 minutes) ──────────────────

    async def sweep_stale_calls(self, deadline: Optional[Deadline] = None) -> dict:
        """Force calls stuck ringing past the ring window into ``missed``."""
        deadline = deadline or Deadline.never()
        cutoff = self._now() - timedelta(seconds=self.stale_call_secs)
        calls = await self.store.query(
            "calls",
            [("status", "in", list(NON_TERMINAL_CALL_STATES)), ("createdAt", "<", cutoff)],
            limit=self.page_size,
        )
        missed = 0
        for call in calls:
            if deadline.expired():
                break
            applied = await self.store.update_if(
                call.path,
                "status",
                NON_TERMINAL_CALL_STATES,
                {"status": CALL_MISSED, "endedAt": firestore.SERVER_TIMESTAMP, "endReason": "timeout"},
            )
            if applied:
                missed += 1
        return {"checked": len(calls), "missed": missed}

    # ── Stale tokens (daily) ────────────────────────────

    async def sweep_stale_tokens(self, deadline: Optional[Deadline] = None) -> dict:
        deadline = deadline or Deadline.never()
        cutoff = self._now() - timedelta(days=self.stale_token_days)
        stale = await self.tokens.delete_stale(cutoff, page_size=self.page_size, deadline=deadline)

        validated, invalid = 0, 0
        if not deadline.expired() and self.token_validation_sample > 0:
            sample = await self.store.list_ids(TOKENS_COLLECTION, limit=self.token_validation_sample)
            validated = len(sample)
            if sample:
                failures = await self.push.validate_tokens(sample)
                invalid = await self.tokens.cleanup_invalid_tokens(failures)
        return {"staleDeleted": stale, "validated": validated, "invalidDeleted": invalid}

    # ── Stale presence (hourly) ─────────────────────────

    async def sweep_stale_presence(self, deadline: Optional[Deadline] = None) -> dict:
        presence = await self.realtime.get("presence") or {}
        now_ms = int(self._now().timestamp() * 1000)
        threshold = now_ms - self.presence_timeout_secs * 1000

        updates: dict = {}
        for uid, entry in presence.items():
            if not isinstance(entry, dict) or not entry.get("online"):
                continue
            updated_at = int(entry.get("updatedAt") or 0)
            if updated_at < threshold:
                updates[f"{uid}/online"] = False
                updates[f"{uid}/lastSeen"] = updated_at
        if updates:
            await self.realtime.update("presence", updates)
        return {"cleaned": len(updates) // 2}

    # ── Typing indicators (every minute) ────────────────

    async def sweep_typing_indicators(self, deadline: Optional[Deadline] = None) -> dict:
        cutoff = self._now() - timedelta(seconds=self.typing_timeout_secs)
        deleted = await self.store.delete_where(
            "typing", [("updatedAt", "<", cutoff)], page_size=self.page_size, group=True, deadline=deadline
        )
        return {"deleted": deleted}

    # ── Notification logs (daily) ───────────────────────

    async def sweep_notification_logs(self, deadline: Optional[Deadline] = None) -> dict:
        cutoff = self._now() - timedelta(days=self.notification_log_retention_days)
        deleted = await self.store.delete_where(
            "notificationLogs", [("createdAt", "<", cutoff)], page_size=self.page_size, deadline=deadline
        )
        return {"deleted": deleted}
