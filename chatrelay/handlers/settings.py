"""
chatrelay: User settings sync on ``users/{uid}`` updates.

Two independent handlers run on every user-document update:

* privacy: tells chat partners when profile-photo visibility flips, mirrors
  last-seen visibility onto the presence entry and drops read receipts
  still waiting to be broadcast once the user turns receipts off;
* notifications: keeps the user's delivery tokens subscribed to the FCM
  topics matching their notification switches and mirrors the switches to
  ``notificationPreferences/{uid}``.

Each ``plan_*`` function only diffs before/after state, so a redelivered
update with nothing new in it does no work.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from firebase_admin import firestore

from chatrelay.handlers.base import ProcessedEvents, execute_effect, run_handler
from chatrelay.handlers.effects import SendNotification
from chatrelay.services.conversations import read_receipts_allowed
from chatrelay.services.dispatcher import NotificationDispatcher
from chatrelay.services.payloads import build_privacy_update_payload
from chatrelay.services.push import PushGateway
from chatrelay.services.realtime import RealtimeGateway
from chatrelay.services.store import FirestoreGateway
from chatrelay.services.tokens import TokenResolver

logger = logging.getLogger(__name__)

PREFERENCES_MIRROR = "notificationPreferences"
SETTINGS_TIMEOUT = 60

PROFILE_PHOTO_SETTING = "showProfilePhotoToNonContacts"
LAST_SEEN_SETTING = "showLastSeenInOneToOne"
# Changes to these are only logged; clients enforce them
CLIENT_ENFORCED_SETTINGS = ("allowForwardingMessages", "allowGroupInvitesFromAnyone")

# notificationSettings switch -> FCM topic
TOPIC_SWITCHES = {
    "showMessageNotification": "messages",
    "showGroupNotification": "groups",
    "reactionStatusNotification": "stories",
    "reminderNotification": "reminders",
}


@dataclass(frozen=True)
class PrivacyChanges:
    """What a privacy-settings update asks for. ``None`` means unchanged."""
    profile_photo_public: Optional[bool] = None
    last_seen_visible: Optional[bool] = None
    read_receipts_turned_off: bool = False
    client_enforced: tuple[str, ...] = ()


@dataclass(frozen=True)
class TopicChange:
    topic: str
    subscribe: bool


def _changed(before: dict, after: dict, key: str) -> bool:
    return key in after and before.get(key) != after.get(key)


def plan_privacy_sync(before: Optional[dict], after: Optional[dict]) -> Optional[PrivacyChanges]:
    privacy_before = (before or {}).get("privacySettings") or {}
    privacy_after = (after or {}).get("privacySettings")
    if not privacy_after or privacy_after == privacy_before:
        return None

    return PrivacyChanges(
        profile_photo_public=(
            bool(privacy_after[PROFILE_PHOTO_SETTING])
            if _changed(privacy_before, privacy_after, PROFILE_PHOTO_SETTING) else None
        ),
        last_seen_visible=(
            bool(privacy_after[LAST_SEEN_SETTING])
            if _changed(privacy_before, privacy_after, LAST_SEEN_SETTING) else None
        ),
        read_receipts_turned_off=read_receipts_allowed(before) and not read_receipts_allowed(after),
        client_enforced=tuple(
            k for k in CLIENT_ENFORCED_SETTINGS if _changed(privacy_before, privacy_after, k)
        ),
    )


def plan_topic_changes(before: Optional[dict], after: Optional[dict]) -> Optional[list[TopicChange]]:
    """Topic moves for a notificationSettings update; ``None`` when untouched."""
    settings_before = (before or {}).get("notificationSettings") or {}
    settings_after = (after or {}).get("notificationSettings")
    if not settings_after or settings_after == settings_before:
        return None
    return [
        TopicChange(topic, bool(settings_after[switch]))
        for switch, topic in TOPIC_SWITCHES.items()
        if _changed(settings_before, settings_after, switch)
    ]


class SettingsHandlers:
    def __init__(
        self,
        store: FirestoreGateway,
        realtime: RealtimeGateway,
        push: PushGateway,
        tokens: TokenResolver,
        dispatcher: NotificationDispatcher,
        processed: Optional[ProcessedEvents] = None,
    ):
        self.store = store
        self.realtime = realtime
        self.push = push
        self.tokens = tokens
        self.dispatcher = dispatcher
        self.processed = processed

    async def on_user_updated(
        self,
        uid: str,
        before: Optional[dict],
        after: Optional[dict],
        event_id: str = "",
    ) -> dict:
        # User docs change constantly, so only a real event id can dedup
        processed = self.processed if event_id else None
        privacy = await run_handler(
            "syncPrivacySettings", event_id or uid, lambda: self._sync_privacy(uid, before, after),
            timeout=SETTINGS_TIMEOUT, processed=processed, identity=uid,
        )
        notifications = await run_handler(
            "syncNotificationSettings", event_id or uid, lambda: self._sync_notifications(uid, before, after),
            timeout=SETTINGS_TIMEOUT, processed=processed, identity=uid,
        )
        return {"privacy": privacy, "notifications": notifications}

    # ── privacy ─────────────────────────────────────────

    async def _sync_privacy(self, uid: str, before: Optional[dict], after: Optional[dict]) -> dict:
        changes = plan_privacy_sync(before, after)
        if changes is None:
            return {"status": "noop", "reason": "privacy settings unchanged"}
        logger.info(f"🔒 Privacy settings changed for {uid}")

        result: dict = {"status": "synced"}
        if changes.profile_photo_public is not None:
            result["photoUpdate"] = await self._announce_photo_visibility(uid, changes.profile_photo_public)
        if changes.last_seen_visible is not None:
            await self.realtime.update(f"presence/{uid}", {"visible": changes.last_seen_visible})
            result["lastSeenVisible"] = changes.last_seen_visible
        if changes.read_receipts_turned_off:
            result["readReceiptsPurged"] = await self.store.delete_where(
                "readReceipts", [("userId", "==", uid), ("broadcasted", "==", False)], group=True
            )
        for key in changes.client_enforced:
            logger.info("%s set %s to %s", uid, key, (after or {}).get("privacySettings", {}).get(key))
        return result

    async def _chat_partners(self, uid: str) -> tuple[str, ...]:
        rooms = await self.store.query("chat_rooms", [("membersIds", "array_contains", uid)])
        legacy = await self.store.query("chats", [("participants", "array_contains", uid)])
        partners: dict[str, None] = {}
        for doc in rooms:
            partners.update(dict.fromkeys(doc.data.get("membersIds") or []))
        for doc in legacy:
            partners.update(dict.fromkeys(doc.data.get("participants") or []))
        partners.pop(uid, None)
        return tuple(partners)

    async def _announce_photo_visibility(self, uid: str, public: bool) -> dict:
        partners = await self._chat_partners(uid)
        if not partners:
            return {"status": "noop", "reason": "no chat partners"}
        effect = SendNotification(
            category=None,
            recipients=partners,
            payload=build_privacy_update_payload(uid, "profile_photo", public),
            respect_preferences=False,
        )
        return await execute_effect(effect, self.dispatcher)

    # ── notifications ───────────────────────────────────

    async def _sync_notifications(self, uid: str, before: Optional[dict], after: Optional[dict]) -> dict:
        changes = plan_topic_changes(before, after)
        if changes is None:
            return {"status": "noop", "reason": "notification settings unchanged"}

        tokens = await self.tokens.tokens_for_user(uid) if changes else []
        subscribed, unsubscribed, failed = [], [], []
        for change in changes:
            if not tokens:
                break
            try:
                if change.subscribe:
                    await self.push.subscribe_to_topic(tokens, change.topic)
                    subscribed.append(change.topic)
                else:
                    await self.push.unsubscribe_from_topic(tokens, change.topic)
                    unsubscribed.append(change.topic)
            except Exception as e:
                # One topic failing must not block the others or the mirror
                logger.warning("Topic %s update failed for %s: %s", change.topic, uid, e)
                failed.append(change.topic)

        await self.store.set(
            f"{PREFERENCES_MIRROR}/{uid}",
            {**after["notificationSettings"], "userId": uid, "updatedAt": firestore.SERVER_TIMESTAMP},
            merge=True,
        )
        logger.info(
            "🔔 Notification settings synced for %s: +%s -%s", uid, subscribed or "[]", unsubscribed or "[]"
        )
        return {"status": "synced", "subscribed": subscribed, "unsubscribed": unsubscribed, "failed": failed}
