"""
chatrelay: Chat room counters.

New room messages bump every other member's unread counter with an atomic
increment, so concurrent senders and a concurrent reset never lose updates.
"""

import logging
from typing import Optional

from firebase_admin import firestore

from chatrelay.handlers.base import ProcessedEvents, run_handler
from chatrelay.handlers.notifications import room_members
from chatrelay.services.payloads import truncate_body
from chatrelay.services.store import FirestoreGateway

logger = logging.getLogger(__name__)

PREVIEW_MAX_LENGTH = 100
UNREAD_TIMEOUT = 30


def plan_unread_increment(room: Optional[dict], message: Optional[dict]) -> dict:
    """Field updates for the room doc. Empty when there is nothing to do."""
    if not room or not message or not message.get("senderId"):
        return {}
    sender_id = message["senderId"]
    others = [m for m in dict.fromkeys(room_members(room)) if m != sender_id]

    updates: dict = {f"unreadCounts.{uid}": firestore.Increment(1) for uid in others}
    preview = message.get("text") or ("📷 Photo" if message.get("imageUrl") else "")
    updates.update({
        "lastMessage": truncate_body(preview, PREVIEW_MAX_LENGTH),
        "lastMessageSenderId": sender_id,
        "lastMessageAt": firestore.SERVER_TIMESTAMP,
    })
    return updates


class ChatHandlers:
    def __init__(self, store: FirestoreGateway, processed: Optional[ProcessedEvents] = None):
        self.store = store
        self.processed = processed

    async def on_room_message_created(
        self,
        room_id: str,
        message_id: str,
        message: Optional[dict],
        event_id: str = "",
    ) -> dict:
        async def _handle() -> dict:
            room_path = f"chat_rooms/{room_id}"
            room = await self.store.get(room_path)
            updates = plan_unread_increment(room, message)
            if not updates:
                return {"status": "noop", "reason": "room or sender missing"}
            if not await self.store.update(room_path, updates):
                return {"status": "noop", "reason": f"room {room_id} deleted"}
            incremented = sum(1 for k in updates if k.startswith("unreadCounts."))
            return {"status": "updated", "incremented": incremented}

        return await run_handler(
            "incrementUnreadCounts", event_id or f"{room_id}/{message_id}", _handle,
            timeout=UNREAD_TIMEOUT, processed=self.processed,
            identity=(message or {}).get("senderId", ""),
        )
