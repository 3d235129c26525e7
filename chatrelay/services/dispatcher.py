"""
chatrelay: Notification dispatcher.

Carries out a ``SendNotification`` effect: preference filter, token
resolution, batched delivery. Each step that finds nothing to do ends the
pipeline quietly; an empty audience is not a failure.
"""

import logging
from typing import Optional

from chatrelay.handlers.effects import SendNotification
from chatrelay.services.delivery import BatchedDelivery, DeliveryResult
from chatrelay.services.preferences import PreferenceChecker
from chatrelay.services.tokens import TokenResolver

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        preferences: PreferenceChecker,
        tokens: TokenResolver,
        delivery: BatchedDelivery,
    ):
        self.preferences = preferences
        self.tokens = tokens
        self.delivery = delivery

    async def dispatch(self, effect: SendNotification) -> Optional[DeliveryResult]:
        kind = effect.payload.type.value
        recipients = list(dict.fromkeys(effect.recipients))
        if not recipients:
            logger.info("%s: no recipients", kind)
            return None

        if effect.respect_preferences and effect.category is not None:
            recipients = await self.preferences.filter_enabled(recipients, effect.category)
            if not recipients:
                logger.info("%s: every recipient has %s notifications off", kind, effect.category.value)
                return None

        tokens = await self.tokens.resolve_tokens(recipients)
        if not tokens:
            logger.info("%s: no delivery tokens for %d recipient(s)", kind, len(recipients))
            return None

        return await self.delivery.send(tokens, effect.payload)
