"""
chatrelay: Callable API routes.

Every authenticated callable is rate-limited per (uid, operation) and runs
under its own timeout ceiling.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends

from chatrelay.auth import current_uid, require_admin
from chatrelay.config import settings
from chatrelay.errors import DeadlineExceeded, InternalError, RelayError
from chatrelay.routes.activity import log_activity
from chatrelay.schemas import (
    BatchStatusUpdateRequest,
    BlockUserRequest,
    BroadcastRequest,
    GetPresenceRequest,
    GetUserProfileRequest,
    HealthResponse,
    ReportUserRequest,
    ResetUnreadCountRequest,
    ShouldSendReadReceiptRequest,
    UpdatePresenceRequest,
    ValidateMessageRequest,
)
from chatrelay.services.container import Services, get_services

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

router = APIRouter()

# Timeout ceilings (seconds); anything not listed uses settings.call_timeout_secs
CALL_TIMEOUTS: dict[str, float] = {
    "updatePresence": 10,
    "getPresence": 30,
    "validateMessage": 10,
    "resetUnreadCount": 10,
    "shouldSendReadReceipt": 10,
    "getUserProfile": 10,
    "deleteUserAccount": 540,
    "sendBroadcast": 300,
}


async def run_callable(
    services: Services,
    uid: str,
    operation: str,
    fn: Callable[[], Awaitable[Any]],
) -> Any:
    """Rate-limit, then run ``fn`` under the operation's timeout.

    Anything other than a caller-facing error is logged with the caller,
    operation and elapsed time, then surfaced as INTERNAL.
    """
    services.limiter.enforce(uid, operation)
    timeout = CALL_TIMEOUTS.get(operation, settings.call_timeout_secs)
    started = time.monotonic()
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(
            "%s timed out for %s after %dms", operation, uid, int((time.monotonic() - started) * 1000)
        )
        raise DeadlineExceeded(f"{operation} did not finish within {timeout:g}s")
    except RelayError:
        raise
    except Exception as e:
        logger.exception(
            "%s failed for %s after %dms: %s", operation, uid, int((time.monotonic() - started) * 1000), e
        )
        raise InternalError(f"{operation} failed") from e


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
@router.post("/healthCheck", response_model=HealthResponse, tags=["system"])
async def health(services: Services = Depends(get_services)):
    return HealthResponse(
        status="ok" if services.breakers.healthy() else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
        breakers=services.breakers.snapshot(),
    )


# ── Presence ────────────────────────────────────────────

@router.post("/updatePresence", tags=["presence"])
async def update_presence(
    req: UpdatePresenceRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    entry = await run_callable(
        services, uid, "updatePresence",
        lambda: services.presence.update_presence(uid, req.online, req.last_seen),
    )
    return {"success": True, "presence": entry}


@router.post("/getPresence", tags=["presence"])
async def get_presence(
    req: GetPresenceRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    presence = await run_callable(
        services, uid, "getPresence", lambda: services.presence.get_presence(req.user_ids)
    )
    return {"presence": presence}


# ── Message status ──────────────────────────────────────

@router.post("/batchStatusUpdate", tags=["messages"])
async def batch_status_update(
    req: BatchStatusUpdateRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    applied = await run_callable(
        services, uid, "batchStatusUpdate",
        lambda: services.conversations.batch_status_update(
            uid,
            delivery_updates=[{"messageId": m.message_id} for m in req.delivery_updates],
            read_receipts=[{"messageId": m.message_id} for m in req.read_receipts],
            typing_indicators=[{"chatId": t.chat_id, "isTyping": t.is_typing} for t in req.typing_indicators],
        ),
    )
    return {"success": True, **applied}


@router.post("/resetUnreadCount", tags=["messages"])
async def reset_unread_count(
    req: ResetUnreadCountRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    return await run_callable(
        services, uid, "resetUnreadCount",
        lambda: services.conversations.reset_unread_count(uid, req.chat_id),
    )


@router.post("/validateMessage", tags=["messages"])
async def validate_message(
    req: ValidateMessageRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    return await run_callable(
        services, uid, "validateMessage",
        lambda: services.conversations.validate_message(uid, req.recipient_id, req.chat_id),
    )


@router.post("/shouldSendReadReceipt", tags=["messages"])
async def should_send_read_receipt(
    req: ShouldSendReadReceiptRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    return await run_callable(
        services, uid, "shouldSendReadReceipt",
        lambda: services.conversations.should_send_read_receipt(uid),
    )


# ── Profiles ────────────────────────────────────────────

@router.post("/getUserProfile", tags=["profiles"])
async def get_user_profile(
    req: GetUserProfileRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    profile = await run_callable(
        services, uid, "getUserProfile", lambda: services.profiles.get_user_profile(uid, req.user_id)
    )
    return {"success": True, "profile": profile}


# ── Moderation ──────────────────────────────────────────

@router.post("/blockUser", tags=["moderation"])
async def block_user(
    req: BlockUserRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    result = await run_callable(
        services, uid, "blockUser", lambda: services.moderation.block_user(uid, req.user_id)
    )
    await log_activity("user", uid, "blocked", f"Blocked {req.user_id}", actor=uid, metadata=result)
    return result


@router.post("/unblockUser", tags=["moderation"])
async def unblock_user(
    req: BlockUserRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    result = await run_callable(
        services, uid, "unblockUser", lambda: services.moderation.unblock_user(uid, req.user_id)
    )
    await log_activity("user", uid, "unblocked", f"Unblocked {req.user_id}", actor=uid, metadata=result)
    return result


@router.post("/reportUser", tags=["moderation"])
async def report_user(
    req: ReportUserRequest,
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    result = await run_callable(
        services, uid, "reportUser",
        lambda: services.moderation.report_user(uid, req.user_id, req.reason, req.description, req.type),
    )
    await log_activity(
        "user", req.user_id, "reported", f"Reported for {req.reason}", actor=uid, metadata=result
    )
    return result


# ── Account ─────────────────────────────────────────────

@router.post("/deleteUserAccount", tags=["account"])
async def delete_user_account(
    uid: str = Depends(current_uid),
    services: Services = Depends(get_services),
):
    return await run_callable(
        services, uid, "deleteUserAccount", lambda: services.accounts.delete_account(uid)
    )


# ── Admin ───────────────────────────────────────────────

@router.post("/admin/broadcast", tags=["admin"])
async def send_broadcast(
    req: BroadcastRequest,
    claims: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    admin_uid = claims["uid"]
    result = await run_callable(
        services, admin_uid, "sendBroadcast",
        lambda: services.scheduled.send_broadcast(req.title, req.body, req.user_ids, req.data),
    )
    await log_activity(
        "broadcast", admin_uid, "sent", req.title,
        actor=f"admin:{admin_uid}", metadata=result.to_dict(),
    )
    return {"success": True, **result.to_dict()}


@router.get("/admin/reports/pending", dependencies=[Depends(require_admin)], tags=["admin"])
async def pending_reports(services: Services = Depends(get_services)):
    return {"pending": await services.moderation.pending_report_count()}
