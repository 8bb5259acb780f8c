"""
auth/policy.py -- Role-based authorization.

PERMISSIONS is a fixed Role -> frozenset[Permission] map. validate_matrix()
runs at import time: a role without an entry, an empty ADMIN/STAFF set, or an
ADMIN set that is not a strict superset of STAFF's (and STAFF's of USER's)
stops the process before it can serve a request.

Predicates (has_permission, is_admin, is_owner_or_admin) are pure. The
require_* guards wrap them and raise Forbidden -- there is no partial
outcome.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from auth.errors import Forbidden
from auth.models import Identity, Role


class Permission(str, Enum):
    MANAGE_USERS = "manage_users"
    VIEW_INVENTORY = "view_inventory"
    MANAGE_INVENTORY = "manage_inventory"
    VIEW_SALES = "view_sales"
    MANAGE_SALES = "manage_sales"
    VIEW_REPORTS = "view_reports"
    MANAGE_SETTINGS = "manage_settings"


PERMISSIONS: Mapping[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.STAFF: frozenset(
        {
            Permission.VIEW_INVENTORY,
            Permission.MANAGE_INVENTORY,
            Permission.VIEW_SALES,
            Permission.MANAGE_SALES,
        }
    ),
    Role.USER: frozenset({Permission.VIEW_INVENTORY, Permission.VIEW_SALES}),
}


def validate_matrix(matrix: Mapping[Role, frozenset[Permission]]) -> None:
    """Raise ValueError unless matrix covers every Role with a sane hierarchy."""
    missing = set(Role) - set(matrix)
    if missing:
        raise ValueError(f"permission matrix has no entry for roles: {sorted(r.value for r in missing)}")
    for role in (Role.ADMIN, Role.STAFF):
        if not matrix[role]:
            raise ValueError(f"permission set for {role.value} must not be empty")
    if not matrix[Role.ADMIN] > matrix[Role.STAFF]:
        raise ValueError("admin permissions must be a strict superset of staff permissions")
    if not matrix[Role.STAFF] >= matrix[Role.USER]:
        raise ValueError("staff permissions must include every user permission")


validate_matrix(PERMISSIONS)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def permissions_for(role: Role | str) -> frozenset[Permission]:
    return PERMISSIONS[Role(role)]


def has_permission(identity: Identity, permission: Permission | str) -> bool:
    try:
        perm = Permission(permission)
    except ValueError:
        return False
    return perm in PERMISSIONS[identity.role]


def is_admin(identity: Identity) -> bool:
    return identity.role == Role.ADMIN


def is_owner_or_admin(identity: Identity, resource_owner_id: int) -> bool:
    return is_admin(identity) or identity.id == resource_owner_id


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_permission(identity: Identity, permission: Permission | str) -> Identity:
    if not has_permission(identity, permission):
        raise Forbidden()
    return identity


def require_admin(identity: Identity) -> Identity:
    if not is_admin(identity):
        raise Forbidden("Admin access required.")
    return identity


def require_owner_or_admin(identity: Identity, resource_owner_id: int) -> Identity:
    if not is_owner_or_admin(identity, resource_owner_id):
        raise Forbidden()
    return identity
