from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CRM API"
    app_env: str = "local"
    app_version: str = "0.1.0"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./crm.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 60
    enforce_unique_lead_email: bool = False
    deal_auto_close_days: int = 30
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
