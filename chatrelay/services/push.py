"""
chatrelay: Firebase Cloud Messaging gateway.

Turns a ``NotificationPayload`` into an FCM multicast and reports per-token
outcomes as normalized ``messaging/*`` error codes, so the rest of the
core never touches SDK exception classes.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from chatrelay.services.circuit_breaker import CircuitBreaker
from chatrelay.services.firebase import run_blocking
from chatrelay.services.payloads import NotificationPayload, Priority

logger = logging.getLogger(__name__)

MULTICAST_LIMIT = 500
TOPIC_BATCH_LIMIT = 1000

TOKEN_NOT_REGISTERED = "messaging/registration-token-not-registered"
TOKEN_INVALID = "messaging/invalid-registration-token"
TOKEN_NOT_FOUND = "messaging/not-found"


@dataclass
class TokenFailure:
    token: str
    error_code: str


@dataclass
class MulticastOutcome:
    success_count: int = 0
    failure_count: int = 0
    failures: list[TokenFailure] = field(default_factory=list)


def error_code_for(exc: Optional[Exception]) -> str:
    """Map an SDK exception onto the ``messaging/*`` code vocabulary."""
    if exc is None:
        return "messaging/unknown-error"
    if isinstance(exc, messaging.UnregisteredError):
        return TOKEN_NOT_REGISTERED
    if isinstance(exc, messaging.SenderIdMismatchError):
        return "messaging/mismatched-credential"
    if isinstance(exc, messaging.QuotaExceededError):
        return "messaging/message-rate-exceeded"
    if isinstance(exc, firebase_exceptions.InvalidArgumentError):
        return TOKEN_INVALID
    if isinstance(exc, firebase_exceptions.NotFoundError):
        return TOKEN_NOT_FOUND
    if isinstance(exc, firebase_exceptions.FirebaseError):
        return "messaging/" + str(exc.code).lower().replace("_", "-")
    return "messaging/unknown-error"


def _android_config(payload: NotificationPayload) -> messaging.AndroidConfig:
    notification = None
    if not payload.data_only:
        notification = messaging.AndroidNotification(
            channel_id=payload.channel_id,
            sound=payload.sound,
            tag=payload.tag,
            click_action=payload.click_action,
            icon=payload.icon,
            priority=payload.extra_android.get("priority"),
            visibility=payload.extra_android.get("visibility"),
        )
    return messaging.AndroidConfig(
        priority=payload.priority.value,
        ttl=payload.ttl_seconds,
        notification=notification,
    )


def _apns_config(payload: NotificationPayload) -> messaging.APNSConfig:
    headers = {
        "apns-priority": "10" if payload.priority == Priority.HIGH else "5",
        "apns-expiration": str(int(time.time()) + payload.ttl_seconds),
    }
    aps = messaging.Aps(
        sound=payload.apns_sound,
        category=payload.apns_category,
        content_available=payload.content_available or None,
        mutable_content=payload.mutable_content or None,
    )
    return messaging.APNSConfig(headers=headers, payload=messaging.APNSPayload(aps=aps))


def build_multicast(tokens: Sequence[str], payload: NotificationPayload) -> messaging.MulticastMessage:
    notification = None
    if not payload.data_only:
        notification = messaging.Notification(title=payload.title, body=payload.body)
    return messaging.MulticastMessage(
        tokens=list(tokens),
        data={"type": payload.type.value, **payload.data},
        notification=notification,
        android=_android_config(payload),
        apns=_apns_config(payload),
    )


class PushGateway:
    def __init__(self, breaker: CircuitBreaker, app=None):
        self.breaker = breaker
        self._app = app

    async def send_multicast(self, tokens: Sequence[str], payload: NotificationPayload) -> MulticastOutcome:
        """Send one batch (<= 500 tokens). Raises if the whole call fails."""
        if len(tokens) > MULTICAST_LIMIT:
            raise ValueError(f"multicast batch of {len(tokens)} exceeds {MULTICAST_LIMIT}")
        message = build_multicast(tokens, payload)
        response = await self.breaker.execute(
            lambda: run_blocking(messaging.send_each_for_multicast, message, app=self._app)
        )
        outcome = MulticastOutcome(response.success_count, response.failure_count)
        for token, result in zip(tokens, response.responses):
            if not result.success:
                outcome.failures.append(TokenFailure(token, error_code_for(result.exception)))
        return outcome

    async def validate_tokens(self, tokens: Sequence[str]) -> list[TokenFailure]:
        """Dry-run a silent message to each token and return the ones that fail."""
        failures: list[TokenFailure] = []
        for i in range(0, len(tokens), MULTICAST_LIMIT):
            chunk = list(tokens[i : i + MULTICAST_LIMIT])
            messages = [messaging.Message(token=t, data={"type": "validation"}) for t in chunk]
            response = await self.breaker.execute(
                lambda: run_blocking(messaging.send_each, messages, dry_run=True, app=self._app)
            )
            for token, result in zip(chunk, response.responses):
                if not result.success:
                    failures.append(TokenFailure(token, error_code_for(result.exception)))
        return failures

    async def subscribe_to_topic(self, tokens: Sequence[str], topic: str) -> MulticastOutcome:
        return await self._manage_topic(messaging.subscribe_to_topic, tokens, topic)

    async def unsubscribe_from_topic(self, tokens: Sequence[str], topic: str) -> MulticastOutcome:
        return await self._manage_topic(messaging.unsubscribe_from_topic, tokens, topic)

    async def _manage_topic(self, fn, tokens: Sequence[str], topic: str) -> MulticastOutcome:
        """Topic (un)subscription in chunks of 1000, the SDK's per-call ceiling."""
        outcome = MulticastOutcome()
        for i in range(0, len(tokens), TOPIC_BATCH_LIMIT):
            chunk = list(tokens[i : i + TOPIC_BATCH_LIMIT])
            response = await self.breaker.execute(
                lambda: run_blocking(fn, chunk, topic, app=self._app)
            )
            outcome.success_count += response.success_count
            outcome.failure_count += response.failure_count
            for error in response.errors:
                outcome.failures.append(TokenFailure(chunk[error.index], f"messaging/{error.reason}"))
        return outcome
