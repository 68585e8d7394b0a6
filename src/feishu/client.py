"""Feishu (Lark) Open API client using httpx.

Only the calls the bot needs: tenant token acquisition, text messages, and
contact lookup.  The tenant access token lives in an explicit
``TenantTokenCache`` object that is injected into the client.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

# Refresh this many seconds before the server-reported expiry.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class FeishuAPIError(Exception):
    """Raised when the Feishu API returns a non-zero ``code``."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Feishu API error {code}: {message}")
        self.code = code


class TenantTokenCache:
    """Cached ``tenant_access_token`` that refreshes itself on expiry.

    Args:
        app_id: Feishu app id.
        app_secret: Feishu app secret.
        base_url: Open API base URL.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str | None = None,
        clock=time.monotonic,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._base_url = (base_url or settings.feishu_base_url).rstrip("/")
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_valid(self) -> str:
        """Return a usable token, fetching a new one if the cached one expired."""
        if self.valid:
            return self._token  # type: ignore[return-value]
        async with self._lock:
            if not self.valid:
                await self._refresh()
        return self._token  # type: ignore[return-value]

    async def _refresh(self) -> None:
        async with httpx.AsyncClient(timeout=15) as client:
            resp = await client.post(
                f"{self._base_url}/auth/v3/tenant_access_token/internal",
                json={"app_id": self._app_id, "app_secret": self._app_secret},
            )
        resp.raise_for_status()
        data = resp.json()
        if data.get("code", 0) != 0:
            raise FeishuAPIError(data.get("code", -1), data.get("msg", ""))
        self._token = data["tenant_access_token"]
        ttl = int(data.get("expire", 7200))
        self._expires_at = self._clock() + max(ttl - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.info("Feishu tenant token refreshed (ttl=%ds)", ttl)


class FeishuClient:
    """Thin async wrapper over the Feishu Open API."""

    def __init__(self, tokens: TenantTokenCache, base_url: str | None = None) -> None:
        self._tokens = tokens
        self._base_url = (base_url or settings.feishu_base_url).rstrip("/")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        token = await self._tokens.get_valid()
        headers = {"Authorization": f"Bearer {token}"}
        async with httpx.AsyncClient(timeout=20) as client:
            resp = await client.request(
                method, f"{self._base_url}{path}", headers=headers, **kwargs
            )
        if resp.status_code == 401:
            self._tokens.invalidate()
        resp.raise_for_status()
        data = resp.json()
        if data.get("code", 0) != 0:
            raise FeishuAPIError(data.get("code", -1), data.get("msg", ""))
        return data

    async def send_message(
        self, receive_id: str, text: str, receive_id_type: str = "open_id"
    ) -> dict:
        """Send a plain text message."""
        return await self._request(
            "POST",
            "/im/v1/messages",
            params={"receive_id_type": receive_id_type},
            json={
                "receive_id": receive_id,
                "msg_type": "text",
                "content": json.dumps({"text": text}, ensure_ascii=False),
            },
        )

    async def get_user_info(self, user_id: str, user_id_type: str = "open_id") -> dict | None:
        """Look up a contact. Returns the ``user`` object or None."""
        data = await self._request(
            "GET",
            f"/contact/v3/users/{user_id}",
            params={"user_id_type": user_id_type},
        )
        return data.get("data", {}).get("user")
