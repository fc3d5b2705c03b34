from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Fieldbook CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./fieldbook.db"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False
    custom_fields_strict_reorder: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
