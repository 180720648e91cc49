"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    auth_provider: Literal["mock", "firebase"] = "firebase"
    firebase_project_id: str | None = None
    firebase_audience: str | None = None
    callback_secret: str

    store_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./reeltrack.db"

    trigger_provider: Literal["mock", "http"] = "http"
    trigger_url: str | None = None
    trigger_timeout_seconds: float = 30.0

    auto_monitor: bool = True
    recovery_auto_resume: bool = True
    log_level: str = "INFO"

    job_budget_seconds: int = 39 * 60
    stuck_check_delay_seconds: float = 2.0
    first_check_delay_seconds: float = 10.0
    poll_interval_seconds: float = 60.0
    health_stall_threshold_seconds: float = 90.0
    failure_backdate_seconds: float = 30.0
    script_match_window_seconds: int = 2 * 60 * 60
    expired_sweep_limit: int = 3

    model_config = SettingsConfigDict(env_prefix="REELTRACK_", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
