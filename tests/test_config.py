"""Tests for Settings configuration model."""

from pathlib import Path

import pytest

from src.config import Settings


class TestDefaults:
    def test_default_database_path(self):
        s = Settings()
        assert s.database_path == Path("data/reminders.db")

    def test_default_task_values(self):
        s = Settings()
        assert s.default_deadline_days == 3
        assert s.default_reminder_interval_hours == 24

    def test_default_timezone(self):
        s = Settings()
        assert s.default_timezone == "Asia/Shanghai"

    def test_default_check_intervals(self):
        s = Settings()
        assert s.scheduled_check_interval_minutes == 15
        assert s.reminder_check_interval_minutes == 15

    def test_default_webhook_port(self):
        s = Settings()
        assert s.webhook_port == 3456


class TestFeishuConfigured:
    def test_needs_both_credentials(self):
        assert Settings(feishu_app_id="cli_1", feishu_app_secret="s").feishu_configured is True
        assert Settings(feishu_app_id="cli_1").feishu_configured is False
        assert Settings().feishu_configured is False


class TestValidation:
    def test_unknown_env_var_raises(self):
        with pytest.raises(ValueError, match="extra_forbidden"):
            Settings(**{"nonexistent_field": "value"})

    def test_check_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(reminder_check_interval_minutes=0)

    def test_negative_deadline_days_rejected(self):
        with pytest.raises(ValueError):
            Settings(default_deadline_days=-1)
