"""
chatrelay: Block, unblock and report.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from firebase_admin import firestore

from chatrelay.errors import AlreadyExists, InvalidArgument
from chatrelay.services.store import FirestoreGateway, Write

logger = logging.getLogger(__name__)

VALID_REPORT_REASONS = frozenset({
    "inappropriate_content",
    "spam",
    "harassment",
    "fake_account",
    "other",
})
REPORT_COOLDOWN = timedelta(hours=24)
DESCRIPTION_MAX_LENGTH = 1000

# Older clients wrote the singular field; both are kept in step.
BLOCK_LIST_FIELDS = ("blockedUsers", "blockedUser")


def blocked_ids(user: Optional[dict]) -> set[str]:
    """Everyone this user has blocked, across both block-list fields."""
    if not user:
        return set()
    return {uid for field in BLOCK_LIST_FIELDS for uid in (user.get(field) or [])}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModerationService:
    def __init__(self, store: FirestoreGateway, now: Callable[[], datetime] = _utcnow):
        self.store = store
        self._now = now

    def _audit_write(self, action: str, actor: str, target: str, metadata: Optional[dict] = None) -> Write:
        # Deterministic id so a retried batch overwrites instead of duplicating
        return Write(
            "set",
            f"securityAuditLogs/{action}-{actor}-{target}-{int(self._now().timestamp() * 1000)}",
            {
                "action": action,
                "actorId": actor,
                "targetId": target,
                "timestamp": firestore.SERVER_TIMESTAMP,
                "metadata": metadata or {},
            },
        )

    async def block_user(self, blocker_id: str, blocked_id: str) -> dict:
        if not blocked_id:
            raise InvalidArgument("User ID is required")
        if blocker_id == blocked_id:
            raise InvalidArgument("Cannot block yourself")

        rooms = await self.store.query("chat_rooms", [("membersIds", "array_contains", blocker_id)])
        shared_private = [
            r for r in rooms
            if blocked_id in (r.data.get("membersIds") or []) and not r.data.get("isGroupChat")
        ]

        writes = [
            Write(
                "set",
                f"users/{blocker_id}",
                {field: firestore.ArrayUnion([blocked_id]) for field in BLOCK_LIST_FIELDS},
                merge=True,
            )
        ]
        writes += [
            Write("update", r.path, {
                "blockedUsers": firestore.ArrayUnion([blocked_id]),
                "blockingUserId": blocker_id,
            })
            for r in shared_private
        ]
        writes.append(self._audit_write("block_user", blocker_id, blocked_id, {"chatsAffected": len(shared_private)}))
        await self.store.commit(writes)

        logger.info("User %s blocked %s", blocker_id, blocked_id)
        return {"success": True, "blockedUserId": blocked_id, "chatsAffected": len(shared_private)}

    async def unblock_user(self, unblocker_id: str, unblocked_id: str) -> dict:
        if not unblocked_id:
            raise InvalidArgument("User ID is required")

        rooms = await self.store.query("chat_rooms", [("blockingUserId", "==", unblocker_id)])
        affected = [r for r in rooms if unblocked_id in (r.data.get("blockedUsers") or [])]

        writes = [
            Write(
                "set",
                f"users/{unblocker_id}",
                {field: firestore.ArrayRemove([unblocked_id]) for field in BLOCK_LIST_FIELDS},
                merge=True,
            )
        ]
        writes += [
            Write("update", r.path, {
                "blockedUsers": firestore.ArrayRemove([unblocked_id]),
                "blockingUserId": firestore.DELETE_FIELD,
            })
            for r in affected
        ]
        writes.append(self._audit_write("unblock_user", unblocker_id, unblocked_id))
        await self.store.commit(writes)

        logger.info("User %s unblocked %s", unblocker_id, unblocked_id)
        return {"success": True, "unblockedUserId": unblocked_id}

    async def report_user(
        self,
        reporter_id: str,
        reported_id: str,
        reason: str,
        description: str = "",
        report_type: str = "user",
    ) -> dict:
        if not reported_id or not reason:
            raise InvalidArgument("User ID and reason are required")
        if reason not in VALID_REPORT_REASONS:
            raise InvalidArgument("Invalid report reason")
        if reporter_id == reported_id:
            raise InvalidArgument("Cannot report yourself")

        since = self._now() - REPORT_COOLDOWN
        recent = await self.store.query(
            "reports",
            [
                ("reporterId", "==", reporter_id),
                ("reportedUserId", "==", reported_id),
                ("createdAt", ">", since),
            ],
            limit=1,
        )
        if recent:
            raise AlreadyExists("You have already reported this user recently")

        report_id = await self.store.add("reports", {
            "reporterId": reporter_id,
            "reportedUserId": reported_id,
            "reason": reason,
            "details": (description or "")[:DESCRIPTION_MAX_LENGTH],
            "type": report_type or "user",
            "status": "pending",
            "createdAt": self._now(),
        })
        logger.info("User %s reported %s for %s", reporter_id, reported_id, reason)
        return {"success": True, "reportId": report_id}

    async def pending_report_count(self) -> int:
        docs = await self.store.query("reports", [("status", "==", "pending")])
        return len(docs)
