"""Application configuration."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database (sync run history)
    database_url: str = "sqlite:///./data/newapi_sync.db"

    # Sync config file; when unset, config.yaml / config.yml / config.json are searched
    config_path: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    # Outbound calls
    request_timeout: float = 10.0
    model_test_timeout: float = 10.0
    model_test_concurrency: int = 5
    token_name_max_length: int = 30

    # Application
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
