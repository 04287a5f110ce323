# campaign_engine/config.py
from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Persistence: empty DATABASE_URL keeps everything in memory
    DATABASE_URL: str = ""
    DB_POOL_MIN_SIZE: int = 1
    DB_POOL_MAX_SIZE: int = 5

    # Job queue
    QUEUE_BACKEND: Literal["memory", "temporal"] = "memory"
    TEMPORAL_TARGET: str = "127.0.0.1:7233"
    TEMPORAL_NAMESPACE: str = "default"
    CAMPAIGN_EXECUTION_QUEUE: str = "campaign_execution"
    WORKER_CONCURRENCY: int = 5
    JOB_ATTEMPTS: int = 3
    JOB_BACKOFF_MS: int = 500
    JOB_TIMEOUT_SECONDS: int = 300
    REMOVE_ON_COMPLETE_AGE_SECONDS: int = 3600
    REMOVE_ON_COMPLETE_COUNT: int = 1000
    REMOVE_ON_FAIL_AGE_SECONDS: int = 86400
    QUEUE_TICK_SECONDS: float = 0.5

    # Startup recovery
    RECOVERY_ENABLED: bool = True
    RECOVERY_BATCH_SIZE: int = 50
    RECOVERY_EXPIRY_THRESHOLD_SECONDS: int = 86400
    RECOVERY_JOB_ATTEMPTS: int = 3
    RECOVERY_BACKOFF_MS: int = 1000
    ORPHAN_SWEEP_INTERVAL_SECONDS: float = 0
    ORPHAN_GRACE_SECONDS: int = 60

    # Shutdown
    SHUTDOWN_TIMEOUT_SECONDS: float = 30
    WORKER_DRAIN_TIMEOUT_SECONDS: float = 20

    # Interpreter
    IGNORED_TRANSITION_EVENTS: List[str] = ["click"]
    ALLOW_PLAN_CYCLES: bool = False

    # Web
    PORT: int = 8000
    IDEMPOTENCY_TTL_SECONDS: int = 300
    IDEMPOTENCY_MAX_KEYS: int = 10000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
