"""NotificationRouter — picks a channel and hands it the message."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.errors import NotificationFailure

if TYPE_CHECKING:
    from src.notifications.channels import NotificationChannel

logger = logging.getLogger(__name__)


class NotificationRouter:
    """Registry of delivery channels with a default.

    Singleton accessed via ``NotificationRouter.get()``. Two entry points:
    ``send`` reports failure as ``False``; ``deliver`` raises
    ``NotificationFailure`` so the task layer can decide what a failure means.
    """

    _instance: NotificationRouter | None = None

    def __init__(self) -> None:
        self._channels: dict[str, NotificationChannel] = {}
        self._default: str | None = None

    @classmethod
    def get(cls) -> NotificationRouter:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Drop the singleton (tests only)."""
        cls._instance = None

    # -- Registry --------------------------------------------------------------

    def register_channel(self, channel: NotificationChannel) -> None:
        """Add *channel* under its name.

        Raises:
            ValueError: a channel with that name is already registered.
        """
        if channel.name in self._channels:
            msg = f"Channel '{channel.name}' is already registered"
            raise ValueError(msg)
        self._channels[channel.name] = channel
        logger.debug("Registered notification channel %s", channel.name)

    def set_default_channel(self, name: str) -> None:
        """Route unqualified sends to *name*.

        Raises:
            KeyError: no channel with that name.
        """
        if name not in self._channels:
            msg = f"Channel '{name}' is not registered"
            raise KeyError(msg)
        self._default = name

    def get_channel(self, name: str) -> NotificationChannel | None:
        return self._channels.get(name)

    def list_channels(self) -> list[str]:
        return list(self._channels)

    @property
    def default_channel_name(self) -> str:
        return self._default or ""

    def _pick(self, requested: str | None) -> NotificationChannel | None:
        # Requested name, then the default, then a lone channel.
        name = requested or self._default
        if name:
            return self._channels.get(name)
        if len(self._channels) == 1:
            return next(iter(self._channels.values()))
        return None

    # -- Delivery --------------------------------------------------------------

    async def send(self, user_id: str, message: str, *, channel: str | None = None) -> bool:
        """Best-effort send to a delivery id. Never raises."""
        target = self._pick(channel)
        if target is None:
            logger.warning(
                "No notification channel for %s (requested=%s, registered=%s)",
                user_id,
                channel,
                self.list_channels(),
            )
            return False
        try:
            ok = await target.send(user_id, message)
        except Exception:
            logger.exception("Channel %s raised while sending to %s", target.name, user_id)
            return False
        if not ok:
            logger.warning("Channel %s did not deliver to %s", target.name, user_id)
        return ok

    async def deliver(
        self, user_id: str | None, message: str, *, channel: str | None = None
    ) -> None:
        """Send, raising if the message did not go out.

        Raises:
            NotificationFailure: no recipient, no channel, or the channel
                reported failure.
        """
        if not user_id:
            msg = "No delivery id for recipient"
            raise NotificationFailure(msg)
        if not await self.send(user_id, message, channel=channel):
            msg = f"Delivery to {user_id} failed"
            raise NotificationFailure(msg)
