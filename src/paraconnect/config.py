from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment/.env."""

    environment: str = Field(default="dev")
    api_base_url: str = Field(default="http://localhost:5050")
    session_token: str | None = Field(default=None)
    user_agent: str = Field(default="paraconnect-workspace/0.1")
    api_timeout: float = Field(default=30.0)
    api_max_retries: int = Field(default=3)
    api_backoff_seconds: float = Field(default=0.5)
    api_max_backoff_seconds: float = Field(default=8.0)
    poll_interval_seconds: float = Field(default=3.0)
    stream_retry_seconds: float = Field(default=3.0)
    withdrawal_hold_hours: float = Field(default=24.0)
    attachments_database_url: str = Field(default="sqlite:///data/attachments.db")
    fixture_path: Path = Field(default=Path("data/fixtures/workspace_dataset.json"))
    viewer_id: str | None = Field(default=None)
    viewer_role: str = Field(default="attorney")
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="PARACONNECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )
