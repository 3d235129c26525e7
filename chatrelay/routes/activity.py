"""
chatrelay: Activity Log API routes.
Operational audit trail for janitor runs, account deletions and moderation.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth import require_admin
from chatrelay.database import async_session, get_db
from chatrelay.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)
activity_router = APIRouter(
    prefix="/activity", tags=["activity"], dependencies=[Depends(require_admin)]
)

OUTCOMES = ("success", "partial", "failure")


async def log_activity(
    entity_type: str,
    entity_id: str,
    action: str,
    description: str = "",
    outcome: str = "success",
    actor: str = "system",
    metadata: dict | None = None,
    db: AsyncSession | None = None,
) -> None:
    """
    Append one audit row. Never raises.

    With a session the row joins the caller's transaction; without one a
    short-lived session is opened and committed here.
    """
    if outcome not in OUTCOMES:
        logger.warning(f"Unknown activity outcome {outcome!r} for {entity_type}/{entity_id}")
    row = ActivityLog(
        id=str(uuid.uuid4()),
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        outcome=outcome,
        actor=actor,
        extra_data=metadata or {},
    )
    try:
        if db is not None:
            db.add(row)
            return
        async with async_session() as session:
            session.add(row)
            await session.commit()
    except Exception as e:
        logger.warning(f"Audit write failed for {entity_type}/{entity_id} ({action}): {e}")


def _row(log: ActivityLog) -> dict:
    return {
        "id": log.id,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "action": log.action,
        "description": log.description,
        "outcome": log.outcome,
        "actor": log.actor,
        "metadata": log.extra_data or {},
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


@activity_router.get("")
async def list_activities(
    entity_type: str | None = Query(None, description="janitor, account, user or broadcast"),
    entity_id: str | None = Query(None, description="uid or janitor name"),
    outcome: str | None = Query(None, pattern="^(success|partial|failure)$"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List audit rows, newest first."""
    stmt = select(ActivityLog)
    if entity_type:
        stmt = stmt.where(ActivityLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(ActivityLog.entity_id == entity_id)
    if outcome:
        stmt = stmt.where(ActivityLog.outcome == outcome)
    stmt = stmt.order_by(ActivityLog.created_at.desc()).limit(limit)

    logs = (await db.execute(stmt)).scalars().all()
    return {"activities": [_row(log) for log in logs], "total": len(logs)}


@activity_router.get("/janitors")
async def janitor_summary(db: AsyncSession = Depends(get_db)):
    """Run counts per janitor and outcome, for spotting sweeps that keep failing."""
    stmt = (
        select(ActivityLog.entity_id, ActivityLog.outcome, func.count(), func.max(ActivityLog.created_at))
        .where(ActivityLog.entity_type == "janitor")
        .group_by(ActivityLog.entity_id, ActivityLog.outcome)
    )
    summary: dict[str, dict] = {}
    for name, outcome, count, last_at in (await db.execute(stmt)).all():
        entry = summary.setdefault(name, {"runs": {}, "lastRunAt": None})
        entry["runs"][outcome] = count
        stamp = last_at.isoformat() if last_at else None
        if stamp and (entry["lastRunAt"] is None or stamp > entry["lastRunAt"]):
            entry["lastRunAt"] = stamp
    return {"janitors": summary}
