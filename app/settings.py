from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(
        default=Path("data/hazard-aggregator.db"), validation_alias="DB_PATH"
    )
    sources_path: Path = Field(
        default=_ROOT / "feeds", validation_alias="SOURCES_PATH"
    )
    policies_path: Path | None = Field(default=None, validation_alias="POLICIES_PATH")

    user_agent: str = Field(
        default="hazard-aggregator/0.1", validation_alias="USER_AGENT"
    )
    fetch_timeout_seconds: float = Field(
        default=30.0, gt=0, validation_alias="FETCH_TIMEOUT_SECONDS"
    )

    circuit_failure_threshold: int = Field(
        default=3, ge=1, validation_alias="CIRCUIT_FAILURE_THRESHOLD"
    )
    circuit_reset_timeout_base_seconds: float = Field(
        default=30.0, gt=0, validation_alias="CIRCUIT_RESET_TIMEOUT_BASE_SECONDS"
    )
    circuit_max_reset_timeout_seconds: float = Field(
        default=600.0, gt=0, validation_alias="CIRCUIT_MAX_RESET_TIMEOUT_SECONDS"
    )

    cache_ttl_margin_seconds: int = Field(
        default=2 * 60 * 60, gt=0, validation_alias="CACHE_TTL_MARGIN_SECONDS"
    )
    polling_enabled: bool = Field(default=True, validation_alias="POLLING_ENABLED")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
