"""
chatrelay: Batched multicast delivery.

Splits a token list into gateway-sized batches, sends every batch at once,
and feeds per-token failures back to the token resolver. A dead token is
only discovered by trying to use it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from chatrelay.services.payloads import NotificationPayload
from chatrelay.services.push import MULTICAST_LIMIT, PushGateway, TokenFailure
from chatrelay.services.store import chunked
from chatrelay.services.tokens import TokenResolver

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success_count: int = 0
    failure_count: int = 0
    cleaned_up: int = 0

    def to_dict(self) -> dict:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "cleanedUp": self.cleaned_up,
        }


class BatchedDelivery:
    def __init__(self, push: PushGateway, tokens: TokenResolver, batch_size: int = MULTICAST_LIMIT):
        self.push = push
        self.tokens = tokens
        self.batch_size = min(batch_size, MULTICAST_LIMIT)

    async def send(self, tokens: Sequence[str], payload: NotificationPayload) -> DeliveryResult:
        result = DeliveryResult()
        if not tokens:
            return result

        batches = chunked(list(tokens), self.batch_size)
        outcomes = await asyncio.gather(
            *(self.push.send_multicast(batch, payload) for batch in batches),
            return_exceptions=True,
        )

        failures: list[TokenFailure] = []
        for index, (batch, outcome) in enumerate(zip(batches, outcomes)):
            if isinstance(outcome, BaseException):
                # Whole batch rejected: no partial credit
                result.failure_count += len(batch)
                logger.error(
                    "Batch %d/%d (%d tokens) failed for %s: %s",
                    index + 1, len(batches), len(batch), payload.type.value, outcome,
                )
                continue
            result.success_count += outcome.success_count
            result.failure_count += outcome.failure_count
            failures.extend(outcome.failures)

        if failures:
            try:
                result.cleaned_up = await self.tokens.cleanup_invalid_tokens(failures)
            except Exception as e:
                logger.error("Token cleanup after %s failed: %s", payload.type.value, e)

        logger.info(
            "Delivered %s: %d success, %d failure(s), %d token(s) cleaned",
            payload.type.value, result.success_count, result.failure_count, result.cleaned_up,
        )
        return result
