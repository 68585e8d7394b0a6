"""Feishu implementation of the NotificationChannel protocol."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.feishu.client import FeishuClient

logger = logging.getLogger(__name__)


class FeishuChannel:
    """Sends notifications as Feishu direct messages addressed by open_id."""

    def __init__(self, client: FeishuClient, receive_id_type: str = "open_id") -> None:
        self._client = client
        self._receive_id_type = receive_id_type

    @property
    def name(self) -> str:
        return "feishu"

    async def send(self, user_id: str, message: str) -> bool:
        """Send a plain text message to a Feishu user."""
        try:
            await self._client.send_message(user_id, message, self._receive_id_type)
            return True
        except Exception:
            logger.exception("FeishuChannel.send failed for user_id=%s", user_id)
            return False


class LogChannel:
    """Writes notifications to the log instead of delivering them.

    Registered when Feishu credentials are absent (local development).
    """

    @property
    def name(self) -> str:
        return "log"

    async def send(self, user_id: str, message: str) -> bool:
        logger.info("[notify %s] %s", user_id, message.replace("\n", " | "))
        return True
