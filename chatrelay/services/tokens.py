"""
chatrelay: Delivery token resolution and garbage collection.

Tokens are stored as ``fcmTokens/{token}`` with the owner in ``uid``.
"""

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Sequence

from chatrelay.services.push import (
    TOKEN_INVALID,
    TOKEN_NOT_FOUND,
    TOKEN_NOT_REGISTERED,
    TokenFailure,
)
from chatrelay.services.store import FirestoreGateway, chunked

logger = logging.getLogger(__name__)

TOKENS_COLLECTION = "fcmTokens"
IN_QUERY_LIMIT = 10

# Permanent token death. Anything else is treated as transient.
DEAD_TOKEN_CODES = frozenset({TOKEN_INVALID, TOKEN_NOT_REGISTERED, TOKEN_NOT_FOUND})


class TokenResolver:
    def __init__(self, store: FirestoreGateway, chunk_size: int = IN_QUERY_LIMIT):
        self.store = store
        self.chunk_size = chunk_size

    async def resolve_tokens(self, user_ids: Iterable[str]) -> list[str]:
        """All tokens owned by ``user_ids``, de-duplicated. Empty is not an error."""
        ids = list(dict.fromkeys(u for u in user_ids if u))
        if not ids:
            return []

        results = await asyncio.gather(*(
            self.store.query(TOKENS_COLLECTION, [("uid", "in", chunk)])
            for chunk in chunked(ids, self.chunk_size)
        ))

        tokens: dict[str, None] = {}
        for docs in results:
            for doc in docs:
                tokens.setdefault(doc.id, None)
        return list(tokens)

    async def cleanup_invalid_tokens(self, failures: Sequence[TokenFailure]) -> int:
        """Delete tokens the gateway reported dead. Returns count removed."""
        dead = list(dict.fromkeys(f.token for f in failures if f.error_code in DEAD_TOKEN_CODES))
        if not dead:
            return 0
        await self.store.delete_paths([f"{TOKENS_COLLECTION}/{t}" for t in dead])
        logger.info("Removed %d dead token(s)", len(dead))
        return len(dead)

    async def tokens_for_user(self, uid: str) -> list[str]:
        docs = await self.store.query(TOKENS_COLLECTION, [("uid", "==", uid)])
        return [d.id for d in docs]

    async def delete_tokens_for_user(self, uid: str) -> int:
        return await self.store.delete_where(TOKENS_COLLECTION, [("uid", "==", uid)])

    async def delete_stale(self, cutoff: datetime, page_size: int = 500, deadline=None) -> int:
        """Drop tokens whose ``updatedAt`` is older than ``cutoff``."""
        return await self.store.delete_where(
            TOKENS_COLLECTION, [("updatedAt", "<", cutoff)], page_size=page_size, deadline=deadline
        )
