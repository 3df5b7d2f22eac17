import pytest

from tenantauth.service.errors import ForbiddenError
from tenantauth.service.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    PermissionChecker,
    Role,
)


@pytest.fixture
def checker():
    return PermissionChecker()


def test_admin_has_every_permission(checker):
    assert ROLE_PERMISSIONS[Role.ADMIN] == frozenset(Permission)
    assert checker.has_permission("admin", "system:config:update")


def test_manager_matrix(checker):
    assert checker.has_permission(Role.MANAGER, Permission.LEAD_ASSIGN)
    assert checker.has_permission(Role.MANAGER, Permission.QUOTE_DELETE)
    assert checker.has_permission(Role.MANAGER, Permission.USER_VIEW)
    assert checker.has_permission(Role.MANAGER, Permission.REPORTS_CREATE)
    assert not checker.has_permission(Role.MANAGER, Permission.USER_CREATE)
    assert not checker.has_permission(Role.MANAGER, Permission.TENANT_SETTINGS_VIEW)


def test_agent_matrix(checker):
    assert checker.permissions_for("agent") == {
        Permission.LEAD_VIEW,
        Permission.LEAD_CREATE,
        Permission.LEAD_UPDATE,
        Permission.QUOTE_VIEW,
        Permission.QUOTE_CREATE,
        Permission.REPORTS_VIEW,
    }


def test_viewer_is_read_only(checker):
    assert checker.permissions_for(Role.VIEWER) == {
        Permission.LEAD_VIEW,
        Permission.QUOTE_VIEW,
        Permission.REPORTS_VIEW,
    }


def test_unknown_role_and_permission(checker):
    assert checker.permissions_for("superuser") == frozenset()
    assert checker.permissions_for(None) == frozenset()
    assert not checker.has_permission("admin", "lead:teleport")


def test_require_raises_forbidden(checker):
    checker.require("agent", [Permission.LEAD_VIEW])
    with pytest.raises(ForbiddenError) as exc_info:
        checker.require("viewer", [Permission.LEAD_VIEW, "lead:delete"])
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["required"] == ["lead:delete"]
