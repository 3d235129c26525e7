from chatrelay.models.activity_log import ActivityLog  # noqa: F401
