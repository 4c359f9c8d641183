"""
Configuration loader for the image batch service.

Environment variables are centralized here to keep the queue, tracker and
webhook code focused on their own logic and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Redis (queue + tracker store)
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    queue_name: str = Field("imageQueue", env="QUEUE_NAME")

    # Worker pool
    worker_concurrency: int = Field(4, env="WORKER_CONCURRENCY")
    job_lease_seconds: int = Field(300, env="JOB_LEASE_SECONDS")
    job_max_attempts: int = Field(3, env="JOB_MAX_ATTEMPTS")
    job_retry_backoff_seconds: float = Field(5.0, env="JOB_RETRY_BACKOFF_SECONDS")
    job_retry_backoff_max_seconds: float = Field(600.0, env="JOB_RETRY_BACKOFF_MAX_SECONDS")
    job_retention_seconds: int = Field(86400, env="JOB_RETENTION_SECONDS")
    maintenance_interval_seconds: float = Field(5.0, env="MAINTENANCE_INTERVAL_SECONDS")

    # Transcoding
    output_quality: int = Field(50, env="OUTPUT_QUALITY")
    output_dir: Path = Field(Path("./output_images"), env="OUTPUT_DIR")
    output_prefix: str = Field("output", env="OUTPUT_PREFIX")
    request_timeout_seconds: int = Field(30, env="REQUEST_TIMEOUT_SECONDS")

    # Cloudflare R2 / S3-compatible storage (optional; local dir when unset)
    r2_endpoint: Optional[str] = Field(None, env="R2_ENDPOINT")
    r2_access_key_id: Optional[str] = Field(None, env="R2_ACCESS_KEY_ID")
    r2_secret_access_key: Optional[str] = Field(None, env="R2_SECRET_ACCESS_KEY")
    r2_bucket_name: Optional[str] = Field(None, env="R2_BUCKET_NAME")
    r2_public_base_url: Optional[str] = Field(None, env="R2_PUBLIC_BASE_URL")

    # Webhook
    webhook_url: str = Field("http://localhost:3000/webhook", env="WEBHOOK_URL")
    webhook_timeout_seconds: int = Field(10, env="WEBHOOK_TIMEOUT_SECONDS")
    webhook_max_attempts: int = Field(5, env="WEBHOOK_MAX_ATTEMPTS")
    webhook_retry_backoff_seconds: float = Field(30.0, env="WEBHOOK_RETRY_BACKOFF_SECONDS")

    # Count terminally failed items toward closing their group
    failed_items_close_batch: bool = Field(False, env="FAILED_ITEMS_CLOSE_BATCH")

    log_level: str = Field("INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("output_quality")
    def validate_output_quality(cls, v: int) -> int:  # noqa: B902
        if not 1 <= v <= 95:
            raise ValueError("OUTPUT_QUALITY must be between 1 and 95")
        return v

    @validator("worker_concurrency", "job_max_attempts", "webhook_max_attempts")
    def validate_positive(cls, v: int) -> int:  # noqa: B902
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @property
    def r2_configured(self) -> bool:
        required = [
            self.r2_endpoint,
            self.r2_access_key_id,
            self.r2_secret_access_key,
            self.r2_bucket_name,
        ]
        return all(v is not None for v in required)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """
    Exponential backoff for the given 1-based attempt number.

    attempt=1 -> base, attempt=2 -> 2*base, ... capped at `maximum`.
    """
    if attempt < 1:
        attempt = 1
    return min(base * (2 ** (attempt - 1)), maximum)
