"""
chatrelay: Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Audit trail database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./chatrelay.db",
        description="Async SQLAlchemy DB URL for the activity log",
    )

    # Firebase
    firebase_cred_path: str = Field(
        default="", description="Path to Firebase service account key JSON"
    )
    firebase_project_id: str = Field(default="")
    firebase_db_url: str = Field(
        default="", description="Realtime Database URL (presence store)"
    )
    firebase_storage_bucket: str = Field(
        default="", description="Cloud Storage bucket for profile/story/backup media"
    )

    # Auth
    trigger_secret: str = Field(
        default="", description="Shared secret required on /triggers when set"
    )

    # Circuit breakers: failure threshold / success threshold / open timeout (s)
    firestore_failure_threshold: int = Field(default=5)
    firestore_success_threshold: int = Field(default=2)
    firestore_timeout_secs: float = Field(default=30.0)

    realtime_failure_threshold: int = Field(default=5)
    realtime_success_threshold: int = Field(default=2)
    realtime_timeout_secs: float = Field(default=30.0)

    # Push gateway tolerates more transient failures
    fcm_failure_threshold: int = Field(default=10)
    fcm_success_threshold: int = Field(default=3)
    fcm_timeout_secs: float = Field(default=60.0)

    # Rate limiting (best-effort, per process)
    rate_limit_window_secs: int = Field(default=60)
    rate_limits: dict[str, int] = Field(
        default_factory=dict,
        description="Per-operation ceiling overrides, e.g. {\"reportUser\": 3}",
    )

    # Batching
    token_query_chunk: int = Field(default=10, description="Firestore 'in' query limit")
    multicast_batch_size: int = Field(default=500, description="FCM multicast ceiling")
    delete_page_size: int = Field(default=500, description="Firestore batch write ceiling")

    # Janitors
    stale_call_secs: int = Field(default=120)
    stale_token_days: int = Field(default=60)
    token_validation_sample: int = Field(default=1000)
    presence_timeout_secs: int = Field(default=300)
    typing_timeout_secs: int = Field(default=30)
    notification_log_retention_days: int = Field(default=30)
    janitor_time_budget_secs: float = Field(
        default=240.0, description="Deadline for one janitor run"
    )
    scheduler_enabled: bool = Field(default=True)
    stale_token_hour: int = Field(default=3, description="UTC hour for the daily token sweep")

    # Callables
    call_timeout_secs: float = Field(default=60.0)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
