"""
chatrelay: Request authentication dependencies.
"""

import hmac
import logging

from fastapi import Depends, Header

from chatrelay.config import settings
from chatrelay.errors import PermissionDenied, Unauthenticated
from chatrelay.services.container import Services, get_services

logger = logging.getLogger(__name__)


async def current_claims(
    authorization: str | None = Header(None),
    services: Services = Depends(get_services),
) -> dict:
    """Verified Firebase ID token claims from ``Authorization: Bearer``."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated("User must be authenticated")
    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = await services.identity.verify_id_token(token)
    except Exception as e:
        logger.info("ID token rejected: %s", e)
        raise Unauthenticated("Invalid or expired ID token")
    if not claims.get("uid"):
        raise Unauthenticated("Token carries no uid")
    return claims


async def current_uid(claims: dict = Depends(current_claims)) -> str:
    return claims["uid"]


async def require_admin(claims: dict = Depends(current_claims)) -> dict:
    if claims.get("admin") is not True:
        raise PermissionDenied("Admin privileges required")
    return claims


async def require_trigger_secret(x_trigger_secret: str | None = Header(None)) -> None:
    """Event pushes carry a shared secret when one is configured."""
    expected = settings.trigger_secret
    if not expected:
        return
    if not x_trigger_secret or not hmac.compare_digest(x_trigger_secret, expected):
        raise Unauthenticated("Invalid trigger secret")
