import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    environment: str = "development"
    owner_id: str = "default"
    log_level: str = "INFO"

    # Data
    data_dir: str = "/data"
    database_url: str | None = None  # Falls back to sqlite in data_dir

    # Up Bank API
    up_api_base_url: str = "https://api.up.com.au/api/v1"
    up_api_timeout_seconds: float = 30.0
    remote_retry_max_attempts: int = 2  # First try + one retry on 429
    remote_retry_default_delay_seconds: float = 5.0  # When Retry-After is missing
    remote_retry_max_delay_seconds: float = 60.0

    # Token encryption (Fernet key, urlsafe base64)
    encryption_key: str = ""

    # API budget (Up Bank allows 1000 calls/hour)
    api_hourly_limit: int = 1000
    api_safety_margin: int = 50
    high_usage_threshold: int = 900
    usage_retention_hours: int = 24

    # Outbound queue
    queue_interval_seconds: int = 180
    queue_initial_delay_seconds: int = 30
    queue_batch_size: int = 50
    queue_min_capacity: int = 10
    queue_retry_delay_minutes: int = 15
    queue_stuck_minutes: int = 10  # processing items older than this go back to pending

    # Full history sync
    full_sync_interval_seconds: int = 3600
    full_sync_max_calls_per_run: int = 500
    full_sync_reserve_calls: int = 100
    full_sync_min_calls: int = 10
    full_sync_page_size: int = 100
    full_sync_stale_minutes: int = 10

    # Housekeeping
    cleanup_interval_seconds: int = 86400

    # Scheduler
    scheduler_enabled: bool = True
    manual_trigger_delay_seconds: float = 1.0

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{os.path.join(self.data_dir, 'upsync.db')}"


settings = Settings()
