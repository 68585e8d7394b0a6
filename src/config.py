"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Reminder bot configuration. All values come from environment variables."""

    # Feishu / Lark
    feishu_app_id: str = Field(default="")
    feishu_app_secret: str = Field(default="")
    feishu_base_url: str = Field(default="https://open.feishu.cn/open-apis")
    feishu_verification_token: str = Field(default="")

    # Database
    database_path: Path = Field(default=Path("data/reminders.db"))

    # Turso (hosted libSQL); overrides database_path when set
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Notifications
    default_notification_channel: str = Field(default="feishu")

    # Tasks
    default_deadline_days: int = Field(default=3, ge=0)
    default_reminder_interval_hours: float = Field(default=24, ge=0)

    # Scheduler
    default_timezone: str = Field(default="Asia/Shanghai")
    scheduled_check_interval_minutes: int = Field(default=15, gt=0)
    reminder_check_interval_minutes: int = Field(default=15, gt=0)

    # Chat sessions (multi-step commands)
    session_ttl_seconds: int = Field(default=300, gt=0)

    # HTTP server
    webhook_port: int = Field(default=3456)
    api_key: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=_env_file(), env_file_encoding="utf-8", extra="forbid"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def feishu_configured(self) -> bool:
        """True when both Feishu app credentials are present."""
        return bool(self.feishu_app_id and self.feishu_app_secret)


settings = Settings()
