"""
chatrelay: Scheduled reminders and operator broadcasts.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from firebase_admin import firestore

from chatrelay.errors import InvalidArgument
from chatrelay.handlers.effects import SendNotification
from chatrelay.services.deadline import Deadline
from chatrelay.services.delivery import BatchedDelivery, DeliveryResult
from chatrelay.services.dispatcher import NotificationDispatcher
from chatrelay.services.payloads import NotificationType, build_simple_payload
from chatrelay.services.store import FirestoreGateway, Write
from chatrelay.services.tokens import TOKENS_COLLECTION, TokenResolver

logger = logging.getLogger(__name__)

SCHEDULED_COLLECTION = "scheduledNotifications"
SCHEDULED_BATCH = 100
MAX_BROADCAST_USERS = 10_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledNotifications:
    def __init__(
        self,
        store: FirestoreGateway,
        dispatcher: NotificationDispatcher,
        tokens: TokenResolver,
        delivery: BatchedDelivery,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.tokens = tokens
        self.delivery = delivery
        self._now = now

    async def send_due(self, deadline: Optional[Deadline] = None) -> dict:
        """Deliver reminders whose ``scheduledFor`` has passed.

        Each reminder is marked sent before delivery: a crash between the
        two loses a reminder rather than sending it twice.
        """
        deadline = deadline or Deadline.never()
        due = await self.store.query(
            SCHEDULED_COLLECTION,
            [("scheduledFor", "<=", self._now()), ("sent", "==", False)],
            limit=SCHEDULED_BATCH,
        )
        if not due:
            return {"due": 0, "sent": 0}

        await self.store.commit([
            Write("update", d.path, {"sent": True, "sentAt": firestore.SERVER_TIMESTAMP})
            for d in due
        ])

        delivered = 0
        for doc in due:
            if deadline.expired():
                logger.warning("Deadline reached with %d scheduled notification(s) marked but unsent",
                               len(due) - delivered)
                break
            user_id = doc.data.get("userId")
            if not user_id:
                continue
            payload = build_simple_payload(
                NotificationType.SCHEDULED,
                doc.data.get("title") or "",
                doc.data.get("body") or "",
                {"scheduledId": doc.id, **(doc.data.get("data") or {})},
            )
            try:
                await self.dispatcher.dispatch(SendNotification(
                    category=None, recipients=(user_id,), payload=payload, respect_preferences=False,
                ))
                delivered += 1
            except Exception as e:
                logger.error("Scheduled notification %s failed: %s", doc.id, e)
        logger.info(f"⏰ Sent {delivered}/{len(due)} scheduled notification(s)")
        return {"due": len(due), "sent": delivered}

    async def send_broadcast(
        self,
        title: str,
        body: str,
        user_ids: Optional[Sequence[str]] = None,
        data: Optional[dict] = None,
    ) -> DeliveryResult:
        """Operator announcement. Preferences are not consulted."""
        if not title or not body:
            raise InvalidArgument("title and body are required")
        if user_ids is not None and not user_ids:
            raise InvalidArgument("userIds must name at least one user; omit it to reach everyone")
        if user_ids is not None and len(user_ids) > MAX_BROADCAST_USERS:
            raise InvalidArgument(f"At most {MAX_BROADCAST_USERS} userIds per broadcast")

        if user_ids is not None:
            tokens = await self.tokens.resolve_tokens(user_ids)
        else:
            tokens = await self.store.list_ids(TOKENS_COLLECTION)

        payload = build_simple_payload(NotificationType.BROADCAST, title, body, data)
        result = await self.delivery.send(tokens, payload)
        logger.info(
            "📣 Broadcast to %s: %d token(s), %d delivered",
            f"{len(user_ids)} user(s)" if user_ids is not None else "everyone", len(tokens), result.success_count,
        )
        return result
