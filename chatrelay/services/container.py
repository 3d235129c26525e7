"""
chatrelay: Service wiring.

One ``Services`` object per process holds the breakers, the rate limiter
and every gateway and engine built on them. ``main`` builds it at startup
and stores it on ``app.state``; routes reach it through ``get_services``.
Tests assemble one from in-memory gateways with ``build_services``.
"""

import functools
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from firebase_admin import db as firebase_db

from chatrelay.handlers.base import ProcessedEvents
from chatrelay.handlers.chat import ChatHandlers
from chatrelay.handlers.notifications import NotificationHandlers
from chatrelay.handlers.settings import SettingsHandlers
from chatrelay.services import firebase
from chatrelay.services.accounts import AccountService
from chatrelay.services.cascade import CascadeDeletionEngine
from chatrelay.services.circuit_breaker import BreakerRegistry
from chatrelay.services.conversations import ConversationService
from chatrelay.services.delivery import BatchedDelivery
from chatrelay.services.dispatcher import NotificationDispatcher
from chatrelay.services.janitors import Janitors
from chatrelay.services.moderation import ModerationService
from chatrelay.services.preferences import PreferenceChecker
from chatrelay.services.presence import PresenceService
from chatrelay.services.profiles import ProfileService
from chatrelay.services.push import PushGateway
from chatrelay.services.rate_limiter import RateLimiter
from chatrelay.services.realtime import RealtimeGateway
from chatrelay.services.scheduled import ScheduledNotifications
from chatrelay.services.store import FirestoreGateway
from chatrelay.services.tokens import TokenResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    breakers: BreakerRegistry
    limiter: RateLimiter
    store: FirestoreGateway
    realtime: RealtimeGateway
    push: PushGateway
    identity: firebase.IdentityGateway
    storage: Optional[firebase.StorageGateway]
    tokens: TokenResolver
    dispatcher: NotificationDispatcher
    notifications: NotificationHandlers
    chat: ChatHandlers
    settings: SettingsHandlers
    presence: PresenceService
    profiles: ProfileService
    conversations: ConversationService
    moderation: ModerationService
    accounts: AccountService
    scheduled: ScheduledNotifications
    janitors: Janitors


def build_services(
    s,
    store: FirestoreGateway,
    realtime: RealtimeGateway,
    push: PushGateway,
    identity: firebase.IdentityGateway,
    storage: Optional[firebase.StorageGateway],
    breakers: BreakerRegistry,
    limiter: Optional[RateLimiter] = None,
) -> Services:
    """Assemble every engine on top of already-built gateways."""
    tokens = TokenResolver(store, chunk_size=s.token_query_chunk)
    delivery = BatchedDelivery(push, tokens, batch_size=s.multicast_batch_size)
    dispatcher = NotificationDispatcher(PreferenceChecker(store), tokens, delivery)
    processed = ProcessedEvents()
    cascade = CascadeDeletionEngine(store, tokens, realtime, storage, page_size=s.delete_page_size)

    return Services(
        breakers=breakers,
        limiter=limiter or RateLimiter(limits=s.rate_limits, window_secs=s.rate_limit_window_secs),
        store=store,
        realtime=realtime,
        push=push,
        identity=identity,
        storage=storage,
        tokens=tokens,
        dispatcher=dispatcher,
        notifications=NotificationHandlers(store, dispatcher, processed),
        chat=ChatHandlers(store, processed),
        settings=SettingsHandlers(store, realtime, push, tokens, dispatcher, processed),
        presence=PresenceService(realtime),
        profiles=ProfileService(store),
        conversations=ConversationService(store, dispatcher),
        moderation=ModerationService(store),
        accounts=AccountService(cascade, identity),
        scheduled=ScheduledNotifications(store, dispatcher, tokens, delivery),
        janitors=Janitors(
            store,
            tokens,
            push,
            realtime,
            storage,
            page_size=s.delete_page_size,
            stale_call_secs=s.stale_call_secs,
            stale_token_days=s.stale_token_days,
            token_validation_sample=s.token_validation_sample,
            presence_timeout_secs=s.presence_timeout_secs,
            typing_timeout_secs=s.typing_timeout_secs,
            notification_log_retention_days=s.notification_log_retention_days,
        ),
    )


def services_from_firebase(s) -> Services:
    """Production wiring against an initialized Firebase app."""
    app = firebase.get_app()
    breakers = BreakerRegistry.from_settings(s)
    return build_services(
        s,
        store=FirestoreGateway(firebase.firestore_client(), breakers.firestore),
        realtime=RealtimeGateway(breakers.realtime_db, functools.partial(firebase_db.reference, app=app)),
        push=PushGateway(breakers.fcm, app=app),
        identity=firebase.IdentityGateway(app),
        storage=firebase.StorageGateway() if s.firebase_storage_bucket else None,
        breakers=breakers,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency."""
    return request.app.state.services
