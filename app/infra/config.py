from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, overridable through environment variables or `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = "development"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8000
    log_level: str = "INFO"
    log_format: str = "console"
    default_currency: str = "USD"
    invoice_due_days: int = Field(7, ge=0)
    invitation_expiry_days: int = Field(7, ge=1)
    reminder_days_before_due: Annotated[list[int], NoDecode] = Field(default_factory=lambda: [7, 3, 1])
    reminder_days_after_due: Annotated[list[int], NoDecode] = Field(default_factory=lambda: [1, 3, 7, 14])
    grace_period_days: int = Field(14, ge=0)
    suspend_after_days: int = Field(21, ge=0)
    cancel_after_days: int = Field(30, ge=0)
    tenant_backup_dir: str = "logs/backups"
    smtp_host: str | None = None
    smtp_port: int = 25
    smtp_sender: str = "no-reply@localhost"
    app_base_url: str = "http://localhost:8000"

    @field_validator("reminder_days_before_due", "reminder_days_after_due", mode="before")
    @classmethod
    def _split_days(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [int(item) for item in value.split(",") if item.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
