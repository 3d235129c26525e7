"""
chatrelay: Message status, unread counters and send validation.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from firebase_admin import firestore

from chatrelay.errors import InvalidArgument, NotFound, PermissionDenied
from chatrelay.handlers.effects import SendNotification
from chatrelay.handlers.notifications import room_members
from chatrelay.services.dispatcher import NotificationDispatcher
from chatrelay.services.moderation import blocked_ids
from chatrelay.services.payloads import build_read_receipt_payload
from chatrelay.services.store import FirestoreGateway, Write

logger = logging.getLogger(__name__)

MAX_STATUS_ITEMS = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_size(name: str, items: Sequence) -> None:
    if len(items) > MAX_STATUS_ITEMS:
        raise InvalidArgument(f"At most {MAX_STATUS_ITEMS} {name} per request")


def read_receipts_allowed(user: Optional[dict]) -> bool:
    """Readers opt out with ``privacySettings.readReceipts = false``.

    Older clients write ``readReceiptsEnabled`` instead; either one set to
    false turns receipts off.
    """
    privacy = (user or {}).get("privacySettings") or {}
    return all(privacy.get(key) is not False for key in ("readReceipts", "readReceiptsEnabled"))


class ConversationService:
    def __init__(
        self,
        store: FirestoreGateway,
        dispatcher: NotificationDispatcher,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self._now = now

    # ── batchStatusUpdate ───────────────────────────────

    async def batch_status_update(
        self,
        uid: str,
        delivery_updates: Sequence[dict] = (),
        read_receipts: Sequence[dict] = (),
        typing_indicators: Sequence[dict] = (),
    ) -> dict:
        _check_size("delivery updates", delivery_updates)
        _check_size("read receipts", read_receipts)
        _check_size("typing indicators", typing_indicators)

        delivered, read, typing = await asyncio.gather(
            self._apply_delivery(uid, delivery_updates),
            self._apply_read_receipts(uid, read_receipts),
            self._apply_typing(uid, typing_indicators),
        )
        return {"delivered": delivered, "read": read, "typing": typing}

    async def _incoming_messages(self, uid: str, items: Sequence[dict]) -> list[tuple[str, dict]]:
        """Messages in ``items`` the caller received (not sent)."""
        ids = list(dict.fromkeys(i.get("messageId") for i in items if i.get("messageId")))
        docs = await asyncio.gather(*(self.store.get(f"messages/{mid}") for mid in ids))
        incoming = []
        for mid, msg in zip(ids, docs):
            if not msg or msg.get("senderId") == uid:
                continue
            recipient = msg.get("recipientId")
            if recipient and recipient != uid:
                continue
            incoming.append((mid, msg))
        return incoming

    async def _apply_delivery(self, uid: str, items: Sequence[dict]) -> int:
        if not items:
            return 0
        incoming = await self._incoming_messages(uid, items)
        writes = [
            Write("update", f"messages/{mid}", {
                "status": "delivered",
                "deliveredAt": firestore.SERVER_TIMESTAMP,
                f"deliveredTo.{uid}": True,
            })
            for mid, msg in incoming
            if msg.get("status") not in ("delivered", "read")
        ]
        if writes:
            await self.store.commit(writes)
        return len(writes)

    async def _apply_read_receipts(self, uid: str, items: Sequence[dict]) -> int:
        if not items:
            return 0
        incoming = await self._incoming_messages(uid, items)
        if not incoming:
            return 0
        await self.store.commit([
            Write("update", f"messages/{mid}", {
                "status": "read",
                "readAt": firestore.SERVER_TIMESTAMP,
                f"readBy.{uid}": True,
            })
            for mid, _ in incoming
        ])

        reader = await self.store.get(f"users/{uid}")
        if read_receipts_allowed(reader):
            read_at = self._now().isoformat()
            results = await asyncio.gather(
                *(
                    self.dispatcher.dispatch(SendNotification(
                        category=None,
                        recipients=(msg["senderId"],),
                        payload=build_read_receipt_payload(mid, uid, read_at),
                        respect_preferences=False,
                    ))
                    for mid, msg in incoming
                    if msg.get("senderId")
                ),
                return_exceptions=True,
            )
            for r in results:
                if isinstance(r, Exception):
                    logger.warning("Read receipt push from %s failed: %s", uid, r)
        return len(incoming)

    async def _apply_typing(self, uid: str, items: Sequence[dict]) -> int:
        writes = []
        for item in items:
            room_id = item.get("chatId")
            if not room_id:
                continue
            path = f"chat_rooms/{room_id}/typing/{uid}"
            if item.get("isTyping"):
                writes.append(Write("set", path, {"isTyping": True, "updatedAt": firestore.SERVER_TIMESTAMP}))
            else:
                writes.append(Write("delete", path))
        if writes:
            await self.store.commit(writes)
        return len(writes)

    # ── resetUnreadCount ────────────────────────────────

    async def reset_unread_count(self, uid: str, room_id: str) -> dict:
        if not room_id:
            raise InvalidArgument("chatId is required")
        room = await self.store.get(f"chat_rooms/{room_id}")
        if room is None:
            raise NotFound("Chat not found")
        if uid not in room_members(room):
            raise PermissionDenied("Not a member of this chat")
        await self.store.update(f"chat_rooms/{room_id}", {f"unreadCounts.{uid}": 0})
        return {"success": True, "chatId": room_id}

    async def should_send_read_receipt(self, reader_id: str) -> dict:
        """Whether the reader's client may report reads (and typing) to others."""
        reader = await self.store.get(f"users/{reader_id}")
        if not read_receipts_allowed(reader):
            return {"shouldSend": False, "reason": "read_receipts_disabled"}
        privacy = (reader or {}).get("privacySettings") or {}
        return {"shouldSend": True, "showTypingIndicators": privacy.get("typingIndicators") is not False}

    # ── validateMessage ─────────────────────────────────

    async def validate_message(
        self,
        sender_id: str,
        recipient_id: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> dict:
        if not recipient_id and not chat_id:
            raise InvalidArgument("Recipient or chat ID required")

        if recipient_id:
            recipient = await self.store.get(f"users/{recipient_id}")
            if recipient is not None:
                if sender_id in blocked_ids(recipient):
                    return {"allowed": False, "reason": "blocked", "message": "Cannot send message to this user"}

                privacy = recipient.get("privacySettings") or {}
                who = privacy.get("whoCanMessage") or "everyone"
                if who == "nobody":
                    return {
                        "allowed": False,
                        "reason": "privacy_setting",
                        "message": "User does not accept messages",
                    }
                if who == "contacts" and sender_id not in (recipient.get("contacts") or []):
                    return {
                        "allowed": False,
                        "reason": "contacts_only",
                        "message": "User only accepts messages from contacts",
                    }

        if chat_id:
            room = await self.store.get(f"chat_rooms/{chat_id}")
            if room is not None:
                if sender_id not in room_members(room):
                    return {"allowed": False, "reason": "not_member", "message": "Not a member of this chat"}
                if sender_id in (room.get("blockedUsers") or []):
                    return {
                        "allowed": False,
                        "reason": "blocked_in_chat",
                        "message": "Cannot send messages in this chat",
                    }

        return {"allowed": True}
