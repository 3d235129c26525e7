"""
chatrelay: Notification triggers for messages, calls, stories and backups.

The ``plan_*`` functions are pure; ``NotificationHandlers`` does the I/O.
"""

import logging
from typing import Optional

from chatrelay.handlers.base import ProcessedEvents, execute_effect, run_handler
from chatrelay.handlers.effects import Effect, LogWarning, NoOp, SendNotification
from chatrelay.services.dispatcher import NotificationDispatcher
from chatrelay.services.payloads import (
    Category,
    build_backup_payload,
    build_call_payload,
    build_message_payload,
    build_story_payload,
)
from chatrelay.services.store import FirestoreGateway

logger = logging.getLogger(__name__)

CALL_RINGING = "ringing"
BACKUP_COMPLETED = "completed"

# Per-trigger timeout ceilings (seconds)
MESSAGE_TIMEOUT = 60
CALL_TIMEOUT = 30
STORY_TIMEOUT = 60
BACKUP_TIMEOUT = 30


def room_members(room: Optional[dict]) -> list[str]:
    """Member ids of a chat room; legacy rooms use ``participants``."""
    if not room:
        return []
    return list(room.get("membersIds") or room.get("participants") or [])


def validate_message(message: Optional[dict]) -> Optional[str]:
    if not message:
        return "Message data is missing"
    if not message.get("chatId"):
        return "Message missing chatId"
    if not message.get("senderId"):
        return "Message missing senderId"
    return None


# ── Planners ────────────────────────────────────────────


def plan_message_notification(message_id: str, message: Optional[dict], room: Optional[dict]) -> Effect:
    error = validate_message(message)
    if error:
        return LogWarning(f"{error} (message {message_id})")
    chat_id = message["chatId"]
    sender_id = message["senderId"]
    if room is None:
        return NoOp(f"chat {chat_id} not found")

    recipients = tuple(m for m in dict.fromkeys(room_members(room)) if m != sender_id)
    if not recipients:
        return NoOp(f"no recipients in chat {chat_id} besides the sender")

    payload = build_message_payload(
        message_id=message_id,
        chat_id=chat_id,
        sender_id=sender_id,
        sender_name=message.get("name") or message.get("senderName") or "",
        text=message.get("text") or "",
        chat_name=room.get("name") or "",
        icon=message.get("profilePicUrl") or "",
    )
    return SendNotification(Category.MESSAGES, recipients, payload)


def plan_call_notification(call_id: str, call: Optional[dict], caller: Optional[dict]) -> Effect:
    if not call:
        return LogWarning(f"Call data is missing (call {call_id})")
    # A call that connected or ended must not page anyone
    if call.get("status") != CALL_RINGING:
        return NoOp(f"call {call_id} status is {call.get('status')!r}, not ringing")
    callee_id = call.get("calleeId")
    caller_id = call.get("callerId")
    if not callee_id or not caller_id:
        return LogWarning(f"Call {call_id} missing callerId/calleeId")
    if callee_id == caller_id:
        return NoOp(f"call {call_id} is a self-call")

    caller = caller or {}
    payload = build_call_payload(
        call_id=call_id,
        caller_id=caller_id,
        caller_name=caller.get("fullName") or "",
        caller_image=caller.get("imageUrl") or "",
        call_type=call.get("type") or "voice",
    )
    return SendNotification(Category.CALLS, (callee_id,), payload)


def plan_story_notification(
    story_id: str,
    story: Optional[dict],
    owner: Optional[dict],
    follower_ids: list[str],
) -> Effect:
    if not story or not story.get("userId"):
        return LogWarning(f"Story {story_id} missing userId")
    owner_id = story["userId"]
    recipients = tuple(f for f in dict.fromkeys(follower_ids) if f != owner_id)
    if not recipients:
        return NoOp(f"story {story_id}: poster has no followers")

    owner = owner or {}
    payload = build_story_payload(
        story_id=story_id,
        owner_id=owner_id,
        owner_name=owner.get("fullName") or "",
        owner_image=owner.get("imageUrl") or "",
        story_type=story.get("type") or "",
    )
    return SendNotification(Category.STORIES, recipients, payload)


def plan_backup_notification(backup_id: str, before: Optional[dict], after: Optional[dict]) -> Effect:
    """Notify only on the transition into ``completed``."""
    if not after:
        return NoOp(f"backup {backup_id} deleted")
    before_status = (before or {}).get("status")
    if after.get("status") != BACKUP_COMPLETED or before_status == BACKUP_COMPLETED:
        return NoOp(f"backup {backup_id}: {before_status!r} -> {after.get('status')!r}")
    owner_id = after.get("userId")
    if not owner_id:
        return LogWarning(f"Backup {backup_id} missing userId")

    payload = build_backup_payload(
        backup_id=backup_id,
        backup_type=after.get("type") or "",
        item_count=int(after.get("itemCount") or 0),
        size_bytes=int(after.get("size") or 0),
    )
    return SendNotification(Category.BACKUPS, (owner_id,), payload)


# ── Handlers ────────────────────────────────────────────


class NotificationHandlers:
    def __init__(
        self,
        store: FirestoreGateway,
        dispatcher: NotificationDispatcher,
        processed: Optional[ProcessedEvents] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.processed = processed

    async def on_message_created(self, message_id: str, message: Optional[dict], event_id: str = "") -> dict:
        async def _handle() -> dict:
            error = validate_message(message)
            room = None
            if not error:
                room = await self.store.get(f"chat_rooms/{message['chatId']}")
                if room is None:
                    # Legacy chats collection
                    room = await self.store.get(f"chats/{message['chatId']}")
            effect = plan_message_notification(message_id, message, room)
            return await execute_effect(effect, self.dispatcher)

        return await run_handler(
            "sendMessageNotifications", event_id or message_id, _handle,
            timeout=MESSAGE_TIMEOUT, processed=self.processed,
            identity=(message or {}).get("senderId", ""),
        )

    async def on_call_created(self, call_id: str, call: Optional[dict], event_id: str = "") -> dict:
        async def _handle() -> dict:
            caller = None
            if call and call.get("status") == CALL_RINGING and call.get("callerId"):
                caller = await self.store.get(f"users/{call['callerId']}")
            effect = plan_call_notification(call_id, call, caller)
            return await execute_effect(effect, self.dispatcher)

        return await run_handler(
            "sendCallNotifications", event_id or call_id, _handle,
            timeout=CALL_TIMEOUT, processed=self.processed,
            identity=(call or {}).get("callerId", ""),
        )

    async def on_story_created(self, story_id: str, story: Optional[dict], event_id: str = "") -> dict:
        async def _handle() -> dict:
            owner, follower_ids = None, []
            owner_id = (story or {}).get("userId")
            if owner_id:
                owner = await self.store.get(f"users/{owner_id}")
                follower_ids = await self.store.list_ids(f"users/{owner_id}/followers")
            effect = plan_story_notification(story_id, story, owner, follower_ids)
            return await execute_effect(effect, self.dispatcher)

        return await run_handler(
            "sendStoryNotifications", event_id or story_id, _handle,
            timeout=STORY_TIMEOUT, processed=self.processed,
            identity=(story or {}).get("userId", ""),
        )

    async def on_backup_written(
        self,
        backup_id: str,
        before: Optional[dict],
        after: Optional[dict],
        event_id: str = "",
    ) -> dict:
        async def _handle() -> dict:
            effect = plan_backup_notification(backup_id, before, after)
            return await execute_effect(effect, self.dispatcher)

        # Writes repeat per document, so only a real event id can dedup
        return await run_handler(
            "sendBackupNotifications", event_id or backup_id, _handle,
            timeout=BACKUP_TIMEOUT, processed=self.processed if event_id else None,
            identity=(after or {}).get("userId", ""),
        )
