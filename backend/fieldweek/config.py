from __future__ import annotations

import os
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_env_list(name: str, default: str) -> List[str]:
    return [item.strip().upper() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "FieldWeek"
    environment: str = os.getenv("FW_ENVIRONMENT", "development")
    host: str = os.getenv("FW_HOST", "127.0.0.1")
    port: int = int(os.getenv("FW_PORT", "8080"))

    sqlite_path: Path = Path(os.getenv("FW_SQLITE_PATH", "./data/fieldweek.db"))

    timezone: str = os.getenv("FW_TIMEZONE", "America/Bogota")
    # 0=Monday ... 6=Sunday; the operational week opens on this day.
    week_anchor_weekday: int = int(os.getenv("FW_WEEK_ANCHOR_WEEKDAY", "3"))

    frontline_roles: List[str] = Field(
        default_factory=lambda: _split_env_list("FW_FRONTLINE_ROLES", "SUPERVISOR")
    )
    escalated_roles: List[str] = Field(
        default_factory=lambda: _split_env_list("FW_ESCALATED_ROLES", "OPERATIONS_MANAGER,SYSTEM_ADMIN")
    )

    log_level: str = os.getenv("FW_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("FW_LOG_FORMAT", "readable")

    @field_validator("week_anchor_weekday")
    @classmethod
    def _check_weekday(cls, value: int) -> int:
        if not 0 <= value <= 6:
            raise ValueError("week_anchor_weekday must be between 0 (Monday) and 6 (Sunday)")
        return value

    @field_validator("frontline_roles", "escalated_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: str | List[str]) -> List[str]:
        if isinstance(value, list):
            return [role.strip().upper() for role in value if role.strip()]
        if not value:
            return []
        return [role.strip().upper() for role in value.split(",") if role.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
