"""Tests for api/api/middleware/rbac.py

Covers:
- Role parsing and ordering
- Permission inheritance across agency roles
- The superadmin role sitting outside the agency hierarchy
- Guards used as FastAPI dependencies
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from travelpoint_core.errors import PermissionDenied, Unauthenticated

from api.middleware.rbac import (
    INVITABLE_ROLES,
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    parse_role,
    require_permission,
    require_role,
    role_has_permission,
)


def _request(**state) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(**state))


class TestParseRole:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("agent", Role.AGENT),
            ("ADMIN", Role.ADMIN),
            (" owner ", Role.OWNER),
            ("superadmin", Role.SUPERADMIN),
        ],
    )
    def test_valid_roles(self, raw: str, expected: Role) -> None:
        assert parse_role(raw) is expected

    @pytest.mark.parametrize("raw", ["", "viewer", "root"])
    def test_invalid_role_raises(self, raw: str) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role(raw)

    def test_hierarchy_order(self) -> None:
        assert Role.AGENT < Role.ADMIN < Role.OWNER

    def test_only_admin_and_agent_are_invitable(self) -> None:
        assert INVITABLE_ROLES == {Role.ADMIN, Role.AGENT}


class TestPermissionMapping:
    def test_agent_works_bookings_but_not_team(self) -> None:
        assert role_has_permission(Role.AGENT, Permission.APPLY_PAYMENTS)
        assert role_has_permission(Role.AGENT, Permission.READ_TEAM)
        assert not role_has_permission(Role.AGENT, Permission.MANAGE_TEAM)
        assert not role_has_permission(Role.AGENT, Permission.MANAGE_GROUPS)

    def test_admin_extends_agent(self) -> None:
        assert ROLE_PERMISSIONS[Role.AGENT] < ROLE_PERMISSIONS[Role.ADMIN]

    def test_owner_matches_admin(self) -> None:
        assert ROLE_PERMISSIONS[Role.OWNER] == ROLE_PERMISSIONS[Role.ADMIN]

    def test_superadmin_only_has_console(self) -> None:
        assert ROLE_PERMISSIONS[Role.SUPERADMIN] == {Permission.ADMIN_CONSOLE}
        assert not role_has_permission(Role.OWNER, Permission.ADMIN_CONSOLE)


class TestGuards:
    def test_missing_identity_is_unauthenticated(self) -> None:
        with pytest.raises(Unauthenticated):
            get_user_role(_request())

    def test_missing_role_defaults_to_agent(self) -> None:
        assert get_user_role(_request(sub="u1", role=None)) is Role.AGENT

    def test_unknown_role_is_denied(self) -> None:
        with pytest.raises(PermissionDenied):
            get_user_role(_request(sub="u1", role="captain"))

    def test_require_permission(self) -> None:
        guard = require_permission(Permission.MANAGE_TEAM)
        assert guard(Role.OWNER) is Role.OWNER
        with pytest.raises(PermissionDenied):
            guard(Role.AGENT)

    def test_require_role_rejects_superadmin(self) -> None:
        guard = require_role(Role.ADMIN)
        assert guard(Role.ADMIN) is Role.ADMIN
        assert guard(Role.OWNER) is Role.OWNER
        with pytest.raises(PermissionDenied):
            guard(Role.AGENT)
        with pytest.raises(PermissionDenied):
            guard(Role.SUPERADMIN)
