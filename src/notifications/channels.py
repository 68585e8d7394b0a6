"""The interface a delivery channel implements to be registered on the router."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class NotificationChannel(Protocol):
    """A way of reaching a user by delivery id.

    ``send`` returns False (rather than raising) when the message was not
    accepted; the router treats an exception the same way.
    """

    @property
    def name(self) -> str: ...

    async def send(self, user_id: str, message: str) -> bool: ...
