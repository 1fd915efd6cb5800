"""
Access guard for dispatch operations.
Resolves what a caller may do and enforces organization-scoped visibility.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional

import structlog

from .errors import AuthorizationError

logger = structlog.get_logger(__name__)

PLATFORM_ADMIN = "platform_admin"
ORG_ADMIN = "org_admin"
COLLECTOR = "collector"
REPORTER = "reporter"

ROLES = frozenset({PLATFORM_ADMIN, ORG_ADMIN, COLLECTOR, REPORTER})
# Roles that are meaningless without a tenant
ORG_SCOPED_ROLES = frozenset({ORG_ADMIN, COLLECTOR})


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str
    organization_id: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role == PLATFORM_ADMIN

    @property
    def is_admin(self) -> bool:
        return self.role in (PLATFORM_ADMIN, ORG_ADMIN)


def build_permission_matrix(raw: Mapping[str, Iterable[str]]) -> Mapping[str, FrozenSet[str]]:
    """Freeze a role -> permissions table. Built once at startup."""
    unknown = set(raw) - ROLES
    if unknown:
        raise ValueError(f"Unknown roles in permission matrix: {sorted(unknown)}")
    return MappingProxyType({role: frozenset(perms) for role, perms in raw.items()})


ROLE_PERMISSIONS = build_permission_matrix({
    PLATFORM_ADMIN: ["*"],
    ORG_ADMIN: [
        "missions:create",
        "missions:view",
        "missions:assign",
        "missions:auto_assign",
        "missions:update_status",
        "proofs:issue",
        "routes:optimize",
        "collectors:view",
        "collections:view",
        "collections:confirm",
        "webhooks:manage",
        "settings:manage",
        "audit:view",
    ],
    COLLECTOR: [
        "missions:view",
        "missions:update_status",
        "proofs:issue",
        "proofs:capture",
        "routes:optimize",
        "duty:update",
        "collections:view",
        "collections:confirm",
    ],
    REPORTER: [
        "collections:report",
        "collections:view",
        "collections:qr",
    ],
})


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


class AccessGuard:
    def __init__(self, permissions: Mapping[str, FrozenSet[str]] = ROLE_PERMISSIONS):
        self._permissions = permissions

    def has_permission(self, caller: Caller, permission: str) -> bool:
        granted = self._permissions.get(caller.role, frozenset())
        if "*" in granted or permission in granted:
            return True
        resource = permission.split(":", 1)[0]
        return f"{resource}:*" in granted

    def can_access(
        self,
        caller: Caller,
        resource_org_id,
        designated_actor_ids: Iterable = (),
    ) -> bool:
        """
        Platform admins see everything. Org admins see their own organization
        and nothing at all when they have none. Collectors and reporters only
        see resources where they are the designated actor.
        """
        if caller.role == PLATFORM_ADMIN:
            return True
        if caller.role == ORG_ADMIN:
            if not caller.organization_id:
                return False
            return _same(caller.organization_id, resource_org_id)
        if caller.role in (COLLECTOR, REPORTER):
            return any(_same(caller.user_id, actor) for actor in designated_actor_ids)
        return False

    def require_scoped_caller(self, caller: Caller) -> None:
        if caller.role not in ROLES:
            self._deny(caller, "unknown_role")
        if caller.role in ORG_SCOPED_ROLES and not caller.organization_id:
            self._deny(caller, "missing_organization")

    def require(self, caller: Caller, permission: str) -> None:
        self.require_scoped_caller(caller)
        if not self.has_permission(caller, permission):
            self._deny(caller, "missing_permission", permission=permission)

    def require_access(
        self,
        caller: Caller,
        permission: str,
        resource_org_id,
        designated_actor_ids: Iterable = (),
    ) -> None:
        self.require(caller, permission)
        if not self.can_access(caller, resource_org_id, designated_actor_ids):
            self._deny(caller, "out_of_scope", permission=permission)

    def visible_in(self, caller: Caller, resource_org_id, designated_actor_ids: Iterable = ()) -> bool:
        """Whether a resource exists from the caller's point of view."""
        if caller.role == PLATFORM_ADMIN:
            return True
        if caller.organization_id:
            return _same(caller.organization_id, resource_org_id)
        # Reporters belong to no organization and only see their own reports
        return caller.role == REPORTER and any(_same(caller.user_id, a) for a in designated_actor_ids)

    def _deny(self, caller: Caller, reason: str, **kw) -> None:
        logger.info("access_denied", user_id=caller.user_id, role=caller.role, reason=reason, **kw)
        raise AuthorizationError()


guard = AccessGuard()
