"""
chatrelay: Privacy-filtered profile reads.
"""

import asyncio
import logging
from typing import Optional

from chatrelay.errors import InvalidArgument, NotFound, PermissionDenied
from chatrelay.services.moderation import blocked_ids
from chatrelay.services.store import FirestoreGateway

logger = logging.getLogger(__name__)

# privacySettings key -> profile fields it guards
GUARDED_FIELDS = {
    "profilePhoto": ("imageUrl", "photoUrl"),
    "about": ("bio", "about"),
    "onlineStatus": ("isOnline",),
    "lastSeen": ("lastSeen",),
}


def field_visible(setting: Optional[dict], viewer_id: str, is_contact: bool) -> bool:
    """Apply one visibility setting: ``{level, allowExceptions?, blockExceptions?}``.

    Levels are ``everyone`` (default), ``contacts``, ``contactsExcept``,
    ``nobody`` and ``nobodyExcept``; both ``nobody`` forms still admit the
    viewers listed in ``allowExceptions``.
    """
    if not setting:
        return True
    level = setting.get("level") or "everyone"
    if level in ("nobody", "nobodyExcept"):
        return viewer_id in (setting.get("allowExceptions") or [])
    if level == "contacts":
        return is_contact
    if level == "contactsExcept":
        return is_contact and viewer_id not in (setting.get("blockExceptions") or [])
    return True


def filter_profile(target_id: str, target: dict, viewer_id: str, viewer: Optional[dict]) -> dict:
    privacy = target.get("privacySettings") or {}
    is_contact = viewer_id in (target.get("contacts") or [])

    profile = {"uid": target_id, "fullName": target.get("fullName")}
    for setting, fields in GUARDED_FIELDS.items():
        if field_visible(privacy.get(setting), viewer_id, is_contact):
            profile.update({f: target.get(f) for f in fields})
    if is_contact:
        profile["phoneNumber"] = target.get("phoneNumber")

    profile["isContact"] = is_contact
    profile["isBlocked"] = target_id in blocked_ids(viewer)
    return profile


class ProfileService:
    def __init__(self, store: FirestoreGateway):
        self.store = store

    async def get_user_profile(self, viewer_id: str, target_id: str) -> dict:
        if not target_id:
            raise InvalidArgument("User ID is required")

        target, viewer = await asyncio.gather(
            self.store.get(f"users/{target_id}"),
            self.store.get(f"users/{viewer_id}"),
        )
        if target is None:
            raise NotFound("User not found")
        # Same message as a missing user: a blocked viewer learns nothing
        if viewer_id in blocked_ids(target):
            raise PermissionDenied("User not found")

        logger.info("Profile accessed: %s viewed %s", viewer_id, target_id)
        return filter_profile(target_id, target, viewer_id, viewer)
