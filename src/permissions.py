"""Feature permissions: role defaults plus per-user boolean overrides."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

ALL_ROLES = frozenset({"user", "admin", "superadmin"})
ADMIN_ROLES = frozenset({"admin", "superadmin"})


@dataclass(frozen=True)
class Feature:
    id: str
    label: str
    default_roles: frozenset[str]
    admin_only: bool = False


FEATURES: dict[str, Feature] = {
    f.id: f
    for f in (
        Feature("task_view", "View own tasks", ALL_ROLES),
        Feature("task_complete", "Complete own tasks", ALL_ROLES),
        Feature("task_create", "Create tasks for others", ADMIN_ROLES),
        Feature("template_manage", "Manage scheduled tasks", ADMIN_ROLES, admin_only=True),
        Feature("user_manage", "Manage users and tags", ADMIN_ROLES, admin_only=True),
    )
}


def effective(role: str, overrides: dict[str, bool] | None = None) -> frozenset[str]:
    """Features a user with *role* and *overrides* may use.

    An explicit boolean override wins over the role default, except that
    admin-only features are never granted to non-admin roles. Unknown
    feature ids in *overrides* are ignored.
    """
    overrides = overrides or {}
    granted = set()
    for feature_id, feature in FEATURES.items():
        override = overrides.get(feature_id)
        if isinstance(override, bool):
            if override and (role in ADMIN_ROLES or not feature.admin_only):
                granted.add(feature_id)
        elif role in feature.default_roles:
            granted.add(feature_id)
    return frozenset(granted)


def validate_overrides(raw: dict[str, Any] | None) -> dict[str, bool]:
    """Keep only known feature ids with boolean values."""
    return {
        key: value
        for key, value in (raw or {}).items()
        if key in FEATURES and isinstance(value, bool)
    }
