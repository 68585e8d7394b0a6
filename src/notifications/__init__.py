"""Outbound notifications: channel protocol, router, Feishu and log channels."""

from src.notifications.channels import NotificationChannel
from src.notifications.feishu_channel import FeishuChannel, LogChannel
from src.notifications.router import NotificationRouter

__all__ = ["FeishuChannel", "LogChannel", "NotificationChannel", "NotificationRouter"]
