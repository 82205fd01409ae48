"""Hierarchical user roles."""

from __future__ import annotations

USER = "User"
ADMIN = "Admin"
SUPER_ADMIN = "SuperAdmin"

ALL_ROLES = (USER, ADMIN, SUPER_ADMIN)

_ROLE_LEVEL = {USER: 1, ADMIN: 2, SUPER_ADMIN: 3}


def is_valid_role(role: str | None) -> bool:
    return role in ALL_ROLES


def role_level(role: str | None) -> int:
    """Return the numeric level of a role; unknown roles are level 0."""

    return _ROLE_LEVEL.get(role or "", 0)


def has_permission(user_role: str | None, required_role: str | None) -> bool:
    """Return whether ``user_role`` is at least as privileged as ``required_role``.

    Two unknown roles compare equal at level 0 and therefore pass.
    """

    return role_level(user_role) >= role_level(required_role)
