"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "geoscan"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    database_url: str = ""
    # JSON file holding provider credentials and billing tables (edited elsewhere).
    app_config_path: Path = Path("config.json")
    # Explicit per-call timeouts; the transport default is never relied on.
    provider_timeout_s: float = Field(default=120.0, ge=1.0)
    extractor_timeout_s: float = Field(default=60.0, ge=1.0)
    max_fanout_workers: int = Field(default=4, ge=1)
    aggregator_key: str = "DeepSeek"
    aggregator_model: str = "deepseek-chat"
    extractor_model: str = "deepseek-chat"
    fallback_model: str = "gpt-3.5-turbo"
    digest_chars_per_model: int = Field(default=2000, ge=100)
    usage_timezone: str = "Asia/Shanghai"

    model_config = SettingsConfigDict(
        env_prefix="GEOSCAN_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
