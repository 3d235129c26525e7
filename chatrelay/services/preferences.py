"""
chatrelay: Notification preference lookups.

Preferences live at ``users/{uid}/settings/notifications`` as one boolean
per category. A missing document or key means enabled, and so does a
failed lookup: an outage must not silently mute everyone.
"""

import asyncio
import logging
from typing import Iterable

from chatrelay.services.payloads import Category
from chatrelay.services.store import FirestoreGateway

logger = logging.getLogger(__name__)


def preferences_path(uid: str) -> str:
    return f"users/{uid}/settings/notifications"


class PreferenceChecker:
    def __init__(self, store: FirestoreGateway):
        self.store = store

    async def is_enabled(self, uid: str, category: Category) -> bool:
        try:
            prefs = await self.store.get(preferences_path(uid))
        except Exception as e:
            logger.error("Preference lookup for %s failed, defaulting to enabled: %s", uid, e)
            return True
        if not prefs:
            return True
        return prefs.get(category.value) is not False

    async def filter_enabled(self, user_ids: Iterable[str], category: Category) -> list[str]:
        ids = list(user_ids)
        if not ids:
            return []
        flags = await asyncio.gather(*(self.is_enabled(uid, category) for uid in ids))
        return [uid for uid, enabled in zip(ids, flags) if enabled]
