"""Runtime settings, read from ``ALLOCRA_*`` environment variables or ``.env``."""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ALLOCRA_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    project_name: str = "Allocra"
    version: str = "1.0.0"

    # "memory://" keeps everything in-process; anything else is a SQLAlchemy URL
    database_url: str = "memory://"
    sql_echo: bool = False
    connect_retries: int = 10
    connect_retry_delay: float = 2.0
    sqlite_busy_timeout: float = 5.0
    seed_rooms: bool = False

    # Operation deadlines, in seconds
    conflict_check_timeout: float = 3.0
    read_timeout: float = 5.0
    reject_timeout: float = 5.0
    create_timeout: float = 10.0
    approve_timeout: float = 10.0
    preempt_timeout: float = 15.0

    # How far in the past a booking may start, absorbing client clock skew
    grace_seconds: int = 120

    report_timezone: str = "UTC"
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


@lru_cache
def get_settings() -> Settings:
    return Settings()
