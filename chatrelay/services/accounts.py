"""
chatrelay: Account deletion.

Self-service deletion runs the cascade and removes the identity record
only when every step succeeded, so a partial failure can be retried with
the same credentials. The identity-deleted safety net runs the same
cascade for accounts removed some other way.
"""

import logging

from chatrelay.errors import InternalError
from chatrelay.services.cascade import CascadeDeletionEngine, CascadeDeletionResult
from chatrelay.services.firebase import IdentityGateway

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, cascade: CascadeDeletionEngine, identity: IdentityGateway):
        self.cascade = cascade
        self.identity = identity

    async def delete_account(self, uid: str) -> dict:
        result = await self.cascade.delete_user(uid)
        auth_deleted = False
        if result.success:
            try:
                auth_deleted = await self.identity.delete_user(uid)
            except Exception as e:
                logger.error("Identity record for %s not deleted: %s", uid, e)
                result.errors.append(f"identity: {e}")

        await _record(result, actor=uid, action="deleted")
        if not result.success:
            raise InternalError(
                "Account deletion incomplete, please retry",
                details={"errors": list(result.errors), "deletedCounts": dict(result.deleted_counts)},
            )
        return {**result.to_dict(), "authDeleted": auth_deleted}

    async def on_identity_deleted(self, uid: str) -> dict:
        """Safety net: the identity is already gone, clean up after it."""
        try:
            result = await self.cascade.delete_user(uid)
        except Exception as e:
            logger.exception("Cascade safety net failed for %s: %s", uid, e)
            return {"status": "error", "reason": str(e)}
        await _record(result, actor="system", action="cascade")
        return {"status": "cleaned" if result.success else "partial", **result.to_dict()}


async def _record(result: CascadeDeletionResult, actor: str, action: str) -> None:
    from chatrelay.routes.activity import log_activity

    total = sum(result.deleted_counts.values())
    await log_activity(
        entity_type="account",
        entity_id=result.uid,
        action=action,
        description=f"Removed {total} record(s) in {result.duration_ms}ms",
        outcome="success" if result.success else "partial",
        actor=actor,
        metadata=result.to_dict(),
    )
