from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Union

from tenantauth.service.errors import ForbiddenError


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"
    VIEWER = "viewer"


class Permission(str, Enum):
    LEAD_VIEW = "lead:view"
    LEAD_CREATE = "lead:create"
    LEAD_UPDATE = "lead:update"
    LEAD_DELETE = "lead:delete"
    LEAD_ASSIGN = "lead:assign"

    QUOTE_VIEW = "quote:view"
    QUOTE_CREATE = "quote:create"
    QUOTE_UPDATE = "quote:update"
    QUOTE_DELETE = "quote:delete"

    USER_VIEW = "user:view"
    USER_CREATE = "user:create"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"

    SYSTEM_CONFIG_VIEW = "system:config:view"
    SYSTEM_CONFIG_UPDATE = "system:config:update"

    TENANT_SETTINGS_VIEW = "tenant:settings:view"
    TENANT_SETTINGS_UPDATE = "tenant:settings:update"

    REPORTS_VIEW = "reports:view"
    REPORTS_CREATE = "reports:create"


def _group(prefix: str) -> FrozenSet[Permission]:
    return frozenset(p for p in Permission if p.value.startswith(prefix))


LEAD_MANAGEMENT = _group("lead:")
QUOTE_MANAGEMENT = _group("quote:")
USER_MANAGEMENT = _group("user:")
SYSTEM_MANAGEMENT = _group("system:")
TENANT_MANAGEMENT = _group("tenant:")
REPORTING = _group("reports:")

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.MANAGER: LEAD_MANAGEMENT
    | QUOTE_MANAGEMENT
    | {Permission.USER_VIEW, Permission.REPORTS_VIEW, Permission.REPORTS_CREATE},
    Role.AGENT: frozenset(
        {
            Permission.LEAD_VIEW,
            Permission.LEAD_CREATE,
            Permission.LEAD_UPDATE,
            Permission.QUOTE_VIEW,
            Permission.QUOTE_CREATE,
            Permission.REPORTS_VIEW,
        }
    ),
    Role.VIEWER: frozenset(
        {Permission.LEAD_VIEW, Permission.QUOTE_VIEW, Permission.REPORTS_VIEW}
    ),
}


class PermissionChecker:
    """Explicit authorization step run after a token is authenticated."""

    def __init__(self, matrix: Dict[Role, FrozenSet[Permission]] | None = None) -> None:
        self.matrix = matrix or ROLE_PERMISSIONS

    def permissions_for(self, role: Union[Role, str, None]) -> FrozenSet[Permission]:
        try:
            return self.matrix.get(Role(role), frozenset())
        except ValueError:
            return frozenset()

    def has_permission(self, role: Union[Role, str, None], permission: Union[Permission, str]) -> bool:
        try:
            wanted = Permission(permission)
        except ValueError:
            return False
        return wanted in self.permissions_for(role)

    def require(self, role: Union[Role, str, None], permissions: Iterable[Union[Permission, str]]) -> None:
        missing = [getattr(p, "value", p) for p in permissions if not self.has_permission(role, p)]
        if missing:
            raise ForbiddenError(
                "insufficient permissions", detail={"required": missing, "role": role}
            )
