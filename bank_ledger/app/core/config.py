from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Bank Ledger API"
    database_url: str = "sqlite:///bank_ledger.db"
    log_level: str = "INFO"

    bank_code: str = Field(default="8705", pattern=r"^[1-9][0-9]*$")
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    id_allocation_attempts: int = Field(default=10, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LEDGER_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
