"""
chatrelay: Cascading account deletion.

Removes or redacts everything that references one identity, across
Firestore collections, subcollections, Storage prefixes and the presence
store. Each step runs on its own: a failing step is recorded in
``errors`` and the cascade moves on. The user's own document goes last so
concurrent readers keep seeing a real user for as long as possible.

The same cascade backs the self-service call and the identity-deleted
safety net, so it runs twice against the same identity routinely. Every
step treats "nothing left" as success.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from firebase_admin import firestore

from chatrelay.services.firebase import StorageGateway
from chatrelay.services.moderation import BLOCK_LIST_FIELDS
from chatrelay.services.realtime import RealtimeGateway
from chatrelay.services.store import FirestoreGateway, Write
from chatrelay.services.tokens import TokenResolver

logger = logging.getLogger(__name__)

PAGE_SIZE = 500

USER_SUBCOLLECTIONS = (
    "presence",
    "blockedUsers",
    "contacts",
    "settings",
    "sessions",
    "securityLog",
    "notifications",
    "chatSettings",
    "followers",
    "following",
)
STORY_SUBCOLLECTIONS = ("replies", "reactions", "views")
BACKUP_SUBCOLLECTIONS = ("data",)
STORAGE_PREFIXES = ("profile_images/{uid}/", "stories/{uid}/", "backups/{uid}/")

# (collection, array field holding member ids)
MEMBERSHIP_COLLECTIONS = (("chat_rooms", "membersIds"), ("chats", "participants"))

@dataclass
class CascadeDeletionResult:
    uid: str
    deleted_counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    def add(self, resource: str, count: int) -> None:
        self.deleted_counts[resource] = self.deleted_counts.get(resource, 0) + count

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "success": self.success,
            "deletedCounts": dict(self.deleted_counts),
            "errors": list(self.errors),
            "durationMs": self.duration_ms,
        }


class CascadeDeletionEngine:
    def __init__(
        self,
        store: FirestoreGateway,
        tokens: TokenResolver,
        realtime: RealtimeGateway,
        storage: Optional[StorageGateway] = None,
        page_size: int = PAGE_SIZE,
    ):
        self.store = store
        self.tokens = tokens
        self.realtime = realtime
        self.storage = storage
        self.page_size = page_size

    async def delete_user(self, uid: str) -> CascadeDeletionResult:
        if not uid:
            raise ValueError("uid is required")

        started = time.monotonic()
        result = CascadeDeletionResult(uid=uid)
        logger.info("🗑️ Cascade deletion started for %s", uid)

        steps: list[tuple[str, Callable[[str, CascadeDeletionResult], Awaitable[None]]]] = [
            ("user subcollections", self._delete_user_subcollections),
            ("stories", self._delete_stories),
            ("calls", self._delete_calls),
            ("chat memberships", self._remove_chat_memberships),
            ("notifications", self._delete_notifications),
            ("backups", self._delete_backups),
            ("delivery tokens", self._delete_tokens),
            ("reports", self._delete_reports),
            ("block references", self._remove_block_references),
            ("storage", self._delete_storage),
            ("realtime presence", self._delete_realtime_presence),
            ("user document", self._delete_user_document),
        ]
        for name, step in steps:
            try:
                await step(uid, result)
            except Exception as e:
                logger.error("Cascade step %r failed for %s: %s", name, uid, e)
                result.errors.append(f"{name}: {e}")

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Cascade deletion for %s finished in %dms: %d deleted, %d error(s)",
            uid, result.duration_ms, sum(result.deleted_counts.values()), len(result.errors),
        )
        return result

    # ── helpers ─────────────────────────────────────────

    async def _delete_with_subcollections(self, doc_path: str, subcollections: tuple[str, ...]) -> int:
        nested = 0
        for name in subcollections:
            nested += await self.store.delete_collection(f"{doc_path}/{name}", page_size=self.page_size)
        await self.store.delete(doc_path)
        return nested

    async def _update_where(self, collection: str, where, updates: dict) -> int:
        """Apply ``updates`` to every match. Updates must make the doc stop matching."""
        touched = 0
        while True:
            page = await self.store.query(collection, where, limit=self.page_size)
            if page:
                await self.store.commit([Write("update", d.path, updates) for d in page])
                touched += len(page)
            if len(page) < self.page_size:
                return touched

    # ── steps ───────────────────────────────────────────

    async def _delete_user_subcollections(self, uid: str, result: CascadeDeletionResult) -> None:
        for name in USER_SUBCOLLECTIONS:
            count = await self.store.delete_collection(f"users/{uid}/{name}", page_size=self.page_size)
            result.add(f"users/{name}", count)

    async def _delete_stories(self, uid: str, result: CascadeDeletionResult) -> None:
        result.add("stories", 0)
        while True:
            page = await self.store.query("stories", [("userId", "==", uid)], limit=self.page_size)
            for story in page:
                nested = await self._delete_with_subcollections(story.path, STORY_SUBCOLLECTIONS)
                result.add("stories", 1)
                result.add("stories/nested", nested)
            if len(page) < self.page_size:
                return

    async def _delete_calls(self, uid: str, result: CascadeDeletionResult) -> None:
        count = 0
        for field_name in ("callerId", "calleeId"):
            count += await self.store.delete_where("calls", [(field_name, "==", uid)], page_size=self.page_size)
        result.add("calls", count)

    async def _remove_chat_memberships(self, uid: str, result: CascadeDeletionResult) -> None:
        # Other members still use the room: remove the user, keep the room
        count = 0
        for collection, field_name in MEMBERSHIP_COLLECTIONS:
            count += await self._update_where(
                collection,
                [(field_name, "array_contains", uid)],
                {
                    field_name: firestore.ArrayRemove([uid]),
                    f"unreadCounts.{uid}": firestore.DELETE_FIELD,
                },
            )
        result.add("chatMemberships", count)

    async def _delete_notifications(self, uid: str, result: CascadeDeletionResult) -> None:
        count = 0
        for field_name in ("senderId", "recipientId"):
            count += await self.store.delete_where(
                "notifications", [(field_name, "==", uid)], page_size=self.page_size
            )
        result.add("notifications", count)

        mirror = f"notificationPreferences/{uid}"
        if await self.store.get(mirror) is None:
            result.add("notificationPreferences", 0)
            return
        await self.store.delete(mirror)
        result.add("notificationPreferences", 1)

    async def _delete_backups(self, uid: str, result: CascadeDeletionResult) -> None:
        result.add("backups", 0)
        while True:
            page = await self.store.query("backups", [("userId", "==", uid)], limit=self.page_size)
            for backup in page:
                nested = await self._delete_with_subcollections(backup.path, BACKUP_SUBCOLLECTIONS)
                result.add("backups", 1)
                result.add("backups/data", nested)
            if len(page) < self.page_size:
                return

    async def _delete_tokens(self, uid: str, result: CascadeDeletionResult) -> None:
        result.add("fcmTokens", await self.tokens.delete_tokens_for_user(uid))

    async def _delete_reports(self, uid: str, result: CascadeDeletionResult) -> None:
        count = 0
        for field_name in ("reportedUserId", "reporterId"):
            count += await self.store.delete_where("reports", [(field_name, "==", uid)], page_size=self.page_size)
        result.add("reports", count)

    async def _remove_block_references(self, uid: str, result: CascadeDeletionResult) -> None:
        count = 0
        for field_name in BLOCK_LIST_FIELDS:
            count += await self._update_where(
                "users",
                [(field_name, "array_contains", uid)],
                {field_name: firestore.ArrayRemove([uid])},
            )
        result.add("blockReferences", count)

    async def _delete_storage(self, uid: str, result: CascadeDeletionResult) -> None:
        if self.storage is None:
            result.add("storageObjects", 0)
            return
        count = 0
        for template in STORAGE_PREFIXES:
            prefix = template.format(uid=uid)
            try:
                count += await self.storage.delete_prefix(prefix)
            except Exception as e:
                logger.warning("Storage prefix %s cleanup failed: %s", prefix, e)
                result.errors.append(f"storage {prefix}: {e}")
        result.add("storageObjects", count)

    async def _delete_realtime_presence(self, uid: str, result: CascadeDeletionResult) -> None:
        path = f"presence/{uid}"
        if await self.realtime.get(path) is None:
            result.add("realtimePresence", 0)
            return
        await self.realtime.delete(path)
        result.add("realtimePresence", 1)

    async def _delete_user_document(self, uid: str, result: CascadeDeletionResult) -> None:
        path = f"users/{uid}"
        if await self.store.get(path) is None:
            result.add("users", 0)
            return
        await self.store.delete(path)
        result.add("users", 1)
