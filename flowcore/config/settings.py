"""Engine Settings - Central Configuration"""
from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (FLOWCORE_*)"""

    model_config = SettingsConfigDict(
        env_prefix="FLOWCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "flowcore_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = False

    # Retry policy defaults for AUTOMATED / SCRIPT / SERVICE_CALL steps
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 0.0
    retry_backoff_multiplier: float = 2.0
    retry_max_backoff_seconds: float = 300.0

    # Per-instance locking
    instance_lock_timeout_seconds: float = 30.0
    instance_lock_lease_seconds: int = 60  # Lease held on the instance document (Mongo)
    instance_lock_retry_interval_seconds: float = 0.05

    # Guard against gateway loops resolved inline during a single advancement
    max_inline_steps: int = 100

    # Handlers
    service_call_timeout_seconds: float = 30.0
    # RUNNING handler executions older than this are failed and retried by the sweep
    stalled_execution_timeout_seconds: float = 300.0

    # Timer scheduler
    timer_poll_interval_seconds: int = 30

    # Lease owner id; generated from host and pid when unset
    worker_id: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
