"""User directory."""

from src.users.store import User, UserStore

__all__ = ["User", "UserStore"]
