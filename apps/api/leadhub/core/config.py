from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "LeadHub API"
    app_env: str = "local"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./leadhub.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False
    default_timezone: str = "UTC"
    mutation_timeout_seconds: float = 10.0
    sync_poll_interval_seconds: float = 30.0
    valuation_timeout_seconds: float = 2.0
    analytics_cache_ttl_seconds: float = 60.0
    admin_email_cache_ttl_seconds: float = 300.0
    top_brands_limit: int = 10
    top_brands_lookback_days: int = 90
    default_commission_rate: float = 0.0
    brand_commission_rates: dict[str, float] = Field(default_factory=dict)
    admin_brand_scopes: dict[str, list[str]] = Field(default_factory=dict)
    legacy_super_admin_emails: list[str] = Field(default_factory=list)
    notifications_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
