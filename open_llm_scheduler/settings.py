from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gemini_api_keys: str = ""
    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    generation_timeout_seconds: float = 60.0
    generation_connect_timeout_seconds: float = 10.0
    model_catalog_path: str | None = None
    default_strategy: str = "speed"
    primary_model: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_MODEL", "PRIMARY_MODEL"),
    )
    batch_size: int = Field(default=20, gt=0)
    max_concurrent_batches: int = Field(default=5, gt=0)
    assignment_granularity: Literal["item", "batch"] = "item"
    smart_selection: bool = False
    enforce_local_quota: bool = True
    temperature: float = 0.3
    max_output_tokens: int = 2048
    estimated_output_tokens: int = 1000
    min_request_interval_seconds: float = 1.0
    quota_cooldown_seconds: float = 60.0
    max_backoff_seconds: float = 30.0
    health_probe_model: str = "gemini-2.0-flash-lite"
    health_probe_delay_seconds: float = 2.0
    daily_reset_timezone: str = "America/Los_Angeles"
    scheduler_event_log_enabled: bool = False
    scheduler_event_log_path: str = "logs/scheduler_events.jsonl"
    scheduler_snapshot_path: str | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )

    @property
    def api_keys_list(self) -> list[str]:
        keys = _split_csv(self.gemini_api_keys)
        if self.gemini_api_key and self.gemini_api_key.strip() not in keys:
            keys.append(self.gemini_api_key.strip())
        return keys


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
