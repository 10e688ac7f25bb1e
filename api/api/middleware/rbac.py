"""Role-Based Access Control dependencies.

Defines the agency role hierarchy (AGENT, ADMIN, OWNER) with
fine-grained permissions.  Each role inherits all permissions from the
roles below it.  ``SUPERADMIN`` is the platform operator role; it sits
outside the agency hierarchy and only grants the admin console.

Usage in routers::

    from api.middleware.rbac import Permission, Role, require_permission

    @router.post("/groups")
    async def create_group(
        ...,
        _role: Role = Depends(require_permission(Permission.MANAGE_GROUPS)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, Request
from travelpoint_core.errors import PermissionDenied, Unauthenticated

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """User roles ordered by privilege level within an agency."""

    AGENT = 0
    ADMIN = 1
    OWNER = 2
    SUPERADMIN = 10  # Platform operator; not part of the agency hierarchy.


# Mapping from the string claim value to the enum member.
_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}

# Roles that may be granted through a team invitation.
INVITABLE_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.AGENT})


def parse_role(raw: str) -> Role:
    """Convert a ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}") from None


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    READ_BOOKINGS = "read:bookings"
    MANAGE_BOOKINGS = "manage:bookings"
    APPLY_PAYMENTS = "apply:payments"
    READ_TEAM = "read:team"

    MANAGE_GROUPS = "manage:groups"
    MANAGE_BILLING = "manage:billing"
    MANAGE_TEAM = "manage:team"

    ADMIN_CONSOLE = "admin:console"


_AGENT_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_BOOKINGS,
        Permission.MANAGE_BOOKINGS,
        Permission.APPLY_PAYMENTS,
        Permission.READ_TEAM,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _AGENT_PERMS | frozenset(
    {
        Permission.MANAGE_GROUPS,
        Permission.MANAGE_BILLING,
        Permission.MANAGE_TEAM,
    }
)

_OWNER_PERMS: frozenset[Permission] = _ADMIN_PERMS

_SUPERADMIN_PERMS: frozenset[Permission] = frozenset({Permission.ADMIN_CONSOLE})

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.AGENT: _AGENT_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.OWNER: _OWNER_PERMS,
    Role.SUPERADMIN: _SUPERADMIN_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the user role from ``request.state.role``.

    Raises
    ------
    Unauthenticated
        If the request carries no authenticated identity.
    PermissionDenied
        If the role claim value is not a recognised role.
    """
    if getattr(request.state, "sub", None) is None:
        raise Unauthenticated("No caller identity on request")

    raw_role: str = getattr(request.state, "role", None) or "agent"
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise PermissionDenied(f"Unrecognised role '{raw_role}'") from None


# ---------------------------------------------------------------------------
# FastAPI dependencies: permission and role guards
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`Role` so downstream handlers can inspect
    it if needed.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
            raise PermissionDenied(f"role '{role.name.lower()}' lacks '{permission.value}'")
        return role

    return _guard


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum agency role."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        # SUPERADMIN=10 would pass every numeric comparison.
        if role == Role.SUPERADMIN or role < min_role:
            logger.info("Role check failed: has=%s, required=%s", role.name, min_role.name)
            raise PermissionDenied(f"role '{role.name.lower()}' is below '{min_role.name.lower()}'")
        return role

    return _guard
