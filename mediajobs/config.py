from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Engines
    fal_api_key: Optional[str] = None
    fal_queue_url: str = "https://queue.fal.run"
    local_image_url: Optional[str] = None  # Automatic1111-compatible fallback, e.g. http://127.0.0.1:7860

    # Database - SQLite by default
    db_path: str = "mediajobs.db"
    database_url: Optional[str] = None  # Full SQLAlchemy URL overrides db_path

    @property
    def sqlalchemy_url(self) -> str:
        """Resolve the SQLAlchemy URL from database_url or db_path."""
        return self.database_url or f"sqlite:///{self.db_path}"

    # Blob storage (Cloudflare R2, S3-compatible)
    r2_account_id: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_public_url: Optional[str] = None
    output_bucket: str = "processed-videos"
    local_storage_dir: str = "storage"  # Used when R2 is not configured

    @property
    def r2_enabled(self) -> bool:
        """Check if R2 credentials are configured."""
        return bool(self.r2_account_id and self.r2_access_key_id and self.r2_secret_access_key)

    # Retry defaults (seconds)
    retry_max_retries: int = 5
    retry_initial_delay: float = 2.0
    retry_max_delay: float = 120.0
    retry_backoff_multiplier: float = 2.0

    # Per-engine rate limits: requests per minute / concurrent calls
    fal_max_requests_per_minute: int = 30
    fal_max_concurrent: int = 5
    vision_max_requests_per_minute: int = 60
    vision_max_concurrent: int = 3
    local_max_requests_per_minute: int = 120
    local_max_concurrent: int = 1
    # Status checks draw from "<resource>:poll" so they never starve submissions
    poll_max_requests_per_minute: int = 600
    poll_max_concurrent: int = 20
    limiter_queue_timeout_seconds: float = 300.0

    # Pipeline
    batch_group_size: int = 5
    engine_call_timeout_seconds: float = 30 * 60
    training_timeout_seconds: float = 120 * 15.0  # 120 polls at 15s
    poll_interval_seconds: float = 15.0
    progress_log_limit: int = 50
    ffmpeg_path: str = "ffmpeg"
    variant_timeout_seconds: float = 10 * 60

    # Queue / worker
    queue_lease_seconds: float = 300.0
    queue_max_deliveries: int = 3
    workers_per_partition: int = 2
    reaper_interval_seconds: float = 300.0
    reaper_max_age_minutes: int = 60

    # Scratch and logs
    scratch_dir: Optional[str] = None  # Defaults to the system temp dir
    flow_log_dir: str = "flow_logs"
    flow_logging_enabled: bool = True
    log_json: bool = False
    log_level: str = "INFO"

    def ensure_storage_dir(self) -> Path:
        """Ensure local storage directory exists and return Path."""
        path = Path(self.local_storage_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path


settings = Settings()
