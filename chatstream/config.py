"""
Client configuration using Pydantic Settings.
"""
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from CHATSTREAM_* environment variables."""

    base_url: str = "http://localhost:8080/api/v1"
    token: Optional[str] = None
    thinking: bool = False

    # Seconds without any line on the push channel before the generation is
    # failed. None or 0 disables the timeout.
    stream_idle_timeout: Optional[float] = 60.0
    connect_timeout: float = 10.0

    log_level: str = "INFO"

    # Development backend
    database_path: Path = Path("data/chatstream.db")
    dev_token_delay: float = 0.0

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
