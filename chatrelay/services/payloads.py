"""
chatrelay: Push payload builders.

The ``data`` block is a wire contract with the mobile clients: they route
and deep-link on ``data.type`` and the ids next to it. Renaming a value in
``NotificationType`` needs a client migration first.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

TITLE_MAX_LENGTH = 100
BODY_MAX_LENGTH = 250
ELLIPSIS = "..."

ONE_DAY_SECS = 60 * 60 * 24
CALL_TTL_SECS = 30
READ_RECEIPT_TTL_SECS = 60 * 5
PRIVACY_UPDATE_TTL_SECS = 60 * 5


class NotificationType(str, Enum):
    NEW_MESSAGE = "new_message"
    INCOMING_CALL = "incoming_call"
    NEW_STORY = "new_story"
    BACKUP_COMPLETED = "backup_completed"
    READ_RECEIPT = "read_receipt"
    SCHEDULED = "scheduled"
    BROADCAST = "broadcast"
    PRIVACY_UPDATE = "privacy_update"


class Category(str, Enum):
    """Preference keys under users/{uid}/settings/notifications."""
    MESSAGES = "messages"
    CALLS = "calls"
    STORIES = "stories"
    BACKUPS = "backups"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


def truncate_title(title: str) -> str:
    return (title or "")[:TITLE_MAX_LENGTH]


def truncate_body(body: str, limit: int = BODY_MAX_LENGTH) -> str:
    body = body or ""
    if len(body) > limit:
        return body[: limit - len(ELLIPSIS)] + ELLIPSIS
    return body


def _stringify(data: dict[str, Any]) -> dict[str, str]:
    # FCM data values must be strings
    return {k: "" if v is None else str(v) for k, v in data.items()}


@dataclass
class NotificationPayload:
    type: NotificationType
    data: dict[str, str]
    title: Optional[str] = None
    body: Optional[str] = None
    icon: Optional[str] = None
    priority: Priority = Priority.NORMAL
    ttl_seconds: int = ONE_DAY_SECS
    channel_id: Optional[str] = None
    sound: Optional[str] = None
    tag: Optional[str] = None
    click_action: Optional[str] = None
    apns_sound: Optional[str] = None
    apns_category: Optional[str] = None
    content_available: bool = False
    mutable_content: bool = False
    extra_android: dict[str, str] = field(default_factory=dict)

    @property
    def data_only(self) -> bool:
        return self.title is None and self.body is None

    def to_wire(self) -> dict:
        """The JSON shape the clients parse (minus the target tokens)."""
        wire: dict[str, Any] = {"data": {"type": self.type.value, **self.data}}
        if not self.data_only:
            notification = {"title": self.title or "", "body": self.body or ""}
            if self.icon:
                notification["icon"] = self.icon
            wire["notification"] = notification

        android_notification = {
            k: v for k, v in {
                "channelId": self.channel_id,
                "sound": self.sound,
                "tag": self.tag,
                "clickAction": self.click_action,
                **self.extra_android,
            }.items() if v
        }
        android: dict[str, Any] = {"priority": self.priority.value, "ttl": self.ttl_seconds}
        if android_notification:
            android["notification"] = android_notification
        wire["android"] = android

        aps: dict[str, Any] = {}
        if self.apns_sound:
            aps["sound"] = self.apns_sound
        if self.apns_category:
            aps["category"] = self.apns_category
        if self.content_available:
            aps["content-available"] = 1
        if self.mutable_content:
            aps["mutable-content"] = 1
        wire["apns"] = {
            "headers": {"apns-priority": "10" if self.priority == Priority.HIGH else "5"},
            "payload": {"aps": aps},
        }
        return wire


# ── Builders, one per event kind ────────────────────────


def build_message_payload(
    message_id: str,
    chat_id: str,
    sender_id: str,
    sender_name: str = "",
    text: str = "",
    chat_name: str = "",
    icon: str = "",
) -> NotificationPayload:
    sender_name = sender_name or "A user"
    return NotificationPayload(
        type=NotificationType.NEW_MESSAGE,
        title=truncate_title(f"{sender_name} in {chat_name or 'a chat'}"),
        body=truncate_body(text),
        icon=icon or None,
        data=_stringify({
            "chatId": chat_id,
            "messageId": message_id,
            "senderId": sender_id,
            "senderName": sender_name,
        }),
        priority=Priority.HIGH,
        ttl_seconds=ONE_DAY_SECS,
        channel_id="direct_messages",
        sound="default",
        tag=f"chat_{chat_id}",
        click_action="FLUTTER_NOTIFICATION_CLICK",
        apns_sound="default",
        content_available=True,
        mutable_content=True,
    )


def build_call_payload(
    call_id: str,
    caller_id: str,
    caller_name: str = "",
    caller_image: str = "",
    call_type: str = "voice",
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.INCOMING_CALL,
        title=truncate_title(f"{caller_name or 'Someone'} is calling"),
        body=truncate_body(f"Incoming {call_type or 'voice'} call"),
        data=_stringify({
            "callId": call_id,
            "callerId": caller_id,
            "callerName": caller_name or "Unknown",
            "callerImage": caller_image,
            "callType": call_type,
        }),
        priority=Priority.HIGH,
        ttl_seconds=CALL_TTL_SECS,
        channel_id="incoming_calls",
        sound="call_ringtone",
        apns_sound="call_ringtone.caf",
        apns_category="CALL",
        content_available=True,
        extra_android={"priority": "max", "visibility": "public"},
    )


def build_story_payload(
    story_id: str,
    owner_id: str,
    owner_name: str = "",
    owner_image: str = "",
    story_type: str = "",
) -> NotificationPayload:
    kind = f"{story_type} " if story_type else ""
    return NotificationPayload(
        type=NotificationType.NEW_STORY,
        title=truncate_title(f"{owner_name or 'Someone'} posted a story"),
        body=truncate_body(f"Check out their new {kind}story"),
        icon=owner_image or None,
        data=_stringify({
            "storyId": story_id,
            "userId": owner_id,
            "userName": owner_name or "Unknown",
        }),
        priority=Priority.NORMAL,
        ttl_seconds=ONE_DAY_SECS,
        channel_id="stories",
    )


def build_backup_payload(
    backup_id: str,
    backup_type: str = "",
    item_count: int = 0,
    size_bytes: int = 0,
) -> NotificationPayload:
    size_mb = (size_bytes or 0) / (1024 * 1024)
    kind = f"{backup_type} " if backup_type else ""
    return NotificationPayload(
        type=NotificationType.BACKUP_COMPLETED,
        title="Backup Completed",
        body=truncate_body(
            f"Your {kind}backup is complete. {item_count or 0} items ({size_mb:.2f} MB) backed up."
        ),
        data=_stringify({
            "backupId": backup_id,
            "backupType": backup_type,
            "itemCount": item_count or 0,
            "size": size_bytes or 0,
        }),
        priority=Priority.NORMAL,
        ttl_seconds=ONE_DAY_SECS,
        channel_id="general",
    )


def build_read_receipt_payload(message_id: str, reader_id: str, read_at: str) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.READ_RECEIPT,
        data=_stringify({"messageId": message_id, "readBy": reader_id, "readAt": read_at}),
        priority=Priority.NORMAL,
        ttl_seconds=READ_RECEIPT_TTL_SECS,
        content_available=True,
    )


def build_privacy_update_payload(user_id: str, setting: str, value: bool) -> NotificationPayload:
    """Silent push telling chat partners to refresh what they show of ``user_id``."""
    return NotificationPayload(
        type=NotificationType.PRIVACY_UPDATE,
        data=_stringify({"userId": user_id, "setting": setting, "value": str(bool(value)).lower()}),
        priority=Priority.NORMAL,
        ttl_seconds=PRIVACY_UPDATE_TTL_SECS,
        content_available=True,
    )


def build_simple_payload(
    notification_type: NotificationType,
    title: str,
    body: str,
    data: Optional[dict[str, Any]] = None,
) -> NotificationPayload:
    """Operator broadcasts and scheduled reminders."""
    return NotificationPayload(
        type=notification_type,
        title=truncate_title(title),
        body=truncate_body(body),
        data=_stringify({k: v for k, v in (data or {}).items() if k != "type"}),
        priority=Priority.NORMAL,
        ttl_seconds=ONE_DAY_SECS,
        channel_id="general",
    )
