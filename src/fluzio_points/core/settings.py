from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./fluzio_points.db"
    database_echo: bool = False

    # Internal API security
    internal_api_key: str = ""

    # Ledger
    ledger_max_cas_attempts: int = Field(default=5, ge=1)

    # Points conversion
    conversion_points_per_unit: int = Field(default=100, gt=0)
    conversion_minimum_points: int = Field(default=500, ge=1)
    conversion_monthly_cap_points: int = Field(default=10_000, ge=1)

    # Timed commitments (appointments and referrals)
    commitment_trust_delay_hours: int = Field(default=72, ge=0)
    commitment_rate_limit_window_days: int = Field(default=30, ge=1)
    commitment_rate_limit_max_count: int = Field(default=5, ge=1)
    referral_join_window_minutes: int = Field(default=30, ge=1)

    # Settlement sweep
    settlement_batch_size: int = Field(default=200, ge=1)
    settlement_scheduler_enabled: bool = False
    settlement_schedule_path: str = "config/schedules.toml"

    # Notifications
    notification_backend: Literal["log", "memory"] = "log"
    notification_muted_kinds: list[str] = Field(default_factory=list)

    @field_validator("notification_muted_kinds", mode="before")
    @classmethod
    def _parse_kind_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
