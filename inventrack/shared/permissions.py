"""Role-based access control for the inventory assistant.

Roles are totally ordered by privilege: ``viewer`` < ``manager`` < ``admin``.
A tool or action declares the minimum role it needs; a caller may use it
when their role sits at or above that level.

Usage:
    from inventrack.shared.permissions import has_permission
    if not has_permission(caller.role, "manager"):
        return {"error": "Permission denied."}
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """Caller roles, least to most privileged."""

    VIEWER = "viewer"
    MANAGER = "manager"
    ADMIN = "admin"


# Permission hierarchy (higher index = more privileged)
PERMISSION_LEVELS = [Role.VIEWER.value, Role.MANAGER.value, Role.ADMIN.value]


def normalize_role(value: object) -> Role:
    """Coerce a raw role claim into a Role, falling back to the least privileged one."""
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        try:
            return Role(value.strip().lower())
        except ValueError:
            pass
    return Role.VIEWER


def permission_level(role: Role | str) -> int:
    role = normalize_role(role)
    return PERMISSION_LEVELS.index(role.value)


def has_permission(role: Role | str, required: Role | str) -> bool:
    """Return True if ``role`` is at or above the ``required`` level.

    An unrecognised ``required`` level is treated as admin-only.
    """
    required_value = required.value if isinstance(required, Role) else str(required)
    if required_value not in PERMISSION_LEVELS:
        required_value = Role.ADMIN.value
    return permission_level(role) >= PERMISSION_LEVELS.index(required_value)


def can_write_inventory(role: Role | str) -> bool:
    """Admins and managers may change stock thresholds; viewers may not."""
    return has_permission(role, Role.MANAGER)
