"""
chatrelay: Activity Log model.
Tracks janitor runs, account deletions and moderation actions.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON, func

from chatrelay.database import Base


class ActivityLog(Base):
    """Append-only operational audit trail read by the admin dashboard."""
    __tablename__ = "activity_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # What entity this log belongs to
    entity_type = Column(String(20), nullable=False)   # "janitor", "account", "user", "broadcast"
    entity_id = Column(String(128), nullable=False)     # uid, janitor name, etc.

    # What happened
    action = Column(String(50), nullable=False)          # e.g. "deleted", "blocked", "swept"
    description = Column(Text, default="")
    outcome = Column(String(20), default="success")      # "success", "partial", "failure"

    # Who did it
    actor = Column(String(128), default="system")        # uid, "admin:<uid>", "system"

    # Counts, errors, durations
    extra_data = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<ActivityLog {self.entity_type}/{self.entity_id} {self.action}>"
