"""Feishu Open Platform client."""

from src.feishu.client import FeishuAPIError, FeishuClient, TenantTokenCache

__all__ = ["FeishuAPIError", "FeishuClient", "TenantTokenCache"]
