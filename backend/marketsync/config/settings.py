from __future__ import annotations

from pydantic import BaseModel, Field, AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseModel):
    debounce_delay_seconds: float = 0.5
    refresh_interval_seconds: float = 120.0
    cache_ttl_seconds: float = 60.0
    request_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0


class RateLimitSettings(BaseModel):
    window_ms: int = 60_000
    max_requests: int = 50
    redis_timeout_seconds: float = 0.5
    reconnect_interval_seconds: float = 3.0
    trust_forwarded_for: bool = False


class ProviderSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MARKETSYNC_",
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )
    yahoo_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    yahoo_quote_url: str = "https://query1.finance.yahoo.com/v10/finance/quoteSummary"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MARKETSYNC_",
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("REDIS_URL", "MARKETSYNC_REDIS_URL"),
    )
    log_level: str = "INFO"

    sync: SyncSettings = Field(default_factory=SyncSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)


settings = Settings()
