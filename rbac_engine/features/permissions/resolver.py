"""
Permission resolver.

Answers "does principal P hold permission X?" from the cached catalog plus
the principal's own edges, which are read from the store on every query.
A permission is held through a direct grant or through any assigned role,
including roles it inherits from when hierarchical roles are enabled.

Expiry is lazy: an expired permission or direct grant is ignored at query
time even while its row still exists. Resource-scoped permissions only match
a query for the same resource, and unscoped ones only match unscoped queries.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from rbac_engine.core.cache import PermissionCache
from rbac_engine.core.config import PermissionConfig
from rbac_engine.core.database.engine import EntityStore
from rbac_engine.core.exceptions import GuardMismatch, PermissionNotFound
from rbac_engine.features.permissions import store
from rbac_engine.features.permissions.hierarchy import RoleHierarchy
from rbac_engine.features.permissions.refs import ByID, ByName, Resolved, permission_ref, role_ref
from rbac_engine.features.permissions.schemas import (
    CatalogSnapshot,
    DirectGrant,
    PermissionRecord,
    Principal,
    ResourceScope,
    RoleRecord,
)
from rbac_engine.utils import get_logger, utc_now


log = get_logger(__name__)


@dataclass
class PrincipalView:
    """Everything needed to answer questions about one principal."""
    principal: Principal
    guard: str
    snapshot: CatalogSnapshot
    hierarchy: RoleHierarchy
    roles: List[RoleRecord]
    grants: Dict[int, DirectGrant]
    now: datetime
    permissions: Dict[int, PermissionRecord] = field(default_factory=dict)

    def __post_init__(self):
        self.permissions = {p.id: p for p in self.snapshot.permissions}

    def role_permission_ids(self) -> Set[int]:
        result: Set[int] = set()
        for role in self.roles:
            result |= self.hierarchy.effective_permission_ids(role.id)
        return result


class PermissionResolver:
    def __init__(self, store: EntityStore, cache: PermissionCache, config: PermissionConfig):
        self.store = store
        self.cache = cache
        self.config = config

    def guard_for(self, principal: Principal) -> str:
        return principal.guard_name or self.config.default_guard

    async def view(self, principal: Principal, now: Optional[datetime] = None) -> PrincipalView:
        """Load the catalog copy and the principal's assignments."""
        guard = self.guard_for(principal)
        team = principal.team_id if self.config.teams_enabled else store.ANY_TEAM
        snapshot = await self.cache.get(principal.team_id)
        hierarchy = RoleHierarchy.from_snapshot(
            snapshot,
            max_hops=self.config.max_hops,
            hierarchical=self.config.hierarchical_roles_enabled,
        )
        async with self.store.session() as db:
            role_ids = await store.principal_role_ids(db, principal, team)
            grants = await store.principal_grants(db, principal, team)

        roles_by_id = {r.id: r for r in snapshot.roles}
        roles = [roles_by_id[rid] for rid in role_ids if rid in roles_by_id and roles_by_id[rid].guard_name == guard]
        return PrincipalView(
            principal=principal,
            guard=guard,
            snapshot=snapshot,
            hierarchy=hierarchy,
            roles=roles,
            grants={g.permission_id: g for g in grants},
            now=now or utc_now(),
        )

    # ------------------------------------------------------------------
    # Matching rules
    # ------------------------------------------------------------------

    def _lookup(self, view: PrincipalView, value: Any) -> List[PermissionRecord]:
        """Permissions in the principal's guard matching a reference."""
        ref = permission_ref(value)
        if isinstance(ref, ByName):
            found = [p for p in view.snapshot.permissions if p.name == ref.name and p.guard_name == view.guard]
            if not found:
                raise PermissionNotFound.named(ref.name, view.guard)
            return found

        if isinstance(ref, Resolved):
            if ref.record.guard_name != view.guard:
                raise GuardMismatch(view.guard, ref.record.guard_name, "permission")
            permission_id = ref.record.id
        else:
            permission_id = ref.id
        permission = view.permissions.get(permission_id)
        if permission is None:
            raise PermissionNotFound.with_id(permission_id, view.guard)
        if permission.guard_name != view.guard:
            raise GuardMismatch(view.guard, permission.guard_name, "permission")
        return [permission]

    def _scope_matches(
        self,
        resource_type: Optional[str],
        resource_id: Optional[str],
        resource: Optional[ResourceScope],
    ) -> bool:
        if not self.config.resource_permissions_enabled:
            return True
        scoped = bool(resource_type) and bool(resource_id)
        if resource is None:
            return not scoped
        return scoped and resource_type == resource.resource_type and resource_id == resource.resource_id

    def _permission_live(self, permission: PermissionRecord, view: PrincipalView) -> bool:
        return not (self.config.time_based_enabled and permission.is_expired(view.now))

    def _direct_grant_matches(
        self,
        view: PrincipalView,
        permission: PermissionRecord,
        resource: Optional[ResourceScope],
    ) -> bool:
        grant = view.grants.get(permission.id)
        if grant is None:
            return False
        if self.config.time_based_enabled and grant.is_expired(view.now):
            return False
        if grant.resource_type and grant.resource_id:
            return self._scope_matches(grant.resource_type, grant.resource_id, resource)
        return self._scope_matches(permission.resource_type, permission.resource_id, resource)

    def _role_grant_matches(
        self,
        view: PrincipalView,
        permission: PermissionRecord,
        resource: Optional[ResourceScope],
        role_permission_ids: Set[int],
    ) -> bool:
        if permission.id not in role_permission_ids:
            return False
        return self._scope_matches(permission.resource_type, permission.resource_id, resource)

    def _holds(
        self,
        view: PrincipalView,
        permissions: Iterable[PermissionRecord],
        resource: Optional[ResourceScope],
        role_permission_ids: Optional[Set[int]] = None,
    ) -> bool:
        if role_permission_ids is None:
            role_permission_ids = view.role_permission_ids()
        for permission in permissions:
            if not self._permission_live(permission, view):
                continue
            if self._direct_grant_matches(view, permission, resource):
                return True
            if self._role_grant_matches(view, permission, resource, role_permission_ids):
                return True
        return False

    # ------------------------------------------------------------------
    # Permission checks
    # ------------------------------------------------------------------

    async def has_permission(
        self,
        principal: Principal,
        permission: Any,
        resource: Optional[ResourceScope] = None,
        strict: bool = False,
    ) -> bool:
        """
        True if the principal holds the permission, directly or via a role.

        An unknown permission is "not held" unless ``strict`` is set, in which
        case PermissionNotFound is raised. GuardMismatch is always raised.
        """
        view = await self.view(principal)
        try:
            candidates = self._lookup(view, permission)
        except PermissionNotFound:
            if strict:
                raise
            log.debug(f"Unknown permission {permission!r} for {principal.principal_type}:{principal.principal_id}")
            return False
        allowed = self._holds(view, candidates, resource)
        log.debug(
            f"{principal.principal_type}:{principal.principal_id} "
            f"{'has' if allowed else 'lacks'} permission {permission!r}"
        )
        return allowed

    async def has_direct_permission(
        self,
        principal: Principal,
        permission: Any,
        resource: Optional[ResourceScope] = None,
    ) -> bool:
        view = await self.view(principal)
        try:
            candidates = self._lookup(view, permission)
        except PermissionNotFound:
            return False
        return any(
            self._permission_live(p, view) and self._direct_grant_matches(view, p, resource)
            for p in candidates
        )

    async def has_any_permission(
        self,
        principal: Principal,
        permissions: Iterable[Any],
        resource: Optional[ResourceScope] = None,
    ) -> bool:
        """OR over the names; unknown names count as not held."""
        view = await self.view(principal)
        role_permission_ids = view.role_permission_ids()
        for permission in permissions:
            try:
                candidates = self._lookup(view, permission)
            except PermissionNotFound:
                continue
            if self._holds(view, candidates, resource, role_permission_ids):
                return True
        return False

    async def has_all_permissions(
        self,
        principal: Principal,
        permissions: Iterable[Any],
        resource: Optional[ResourceScope] = None,
    ) -> bool:
        """AND over the names. An empty list is False, never a blanket grant."""
        permissions = list(permissions)
        if not permissions:
            return False
        view = await self.view(principal)
        role_permission_ids = view.role_permission_ids()
        for permission in permissions:
            try:
                candidates = self._lookup(view, permission)
            except PermissionNotFound:
                return False
            if not self._holds(view, candidates, resource, role_permission_ids):
                return False
        return True

    # ------------------------------------------------------------------
    # Permission listings
    # ------------------------------------------------------------------

    def _in_guard(self, view: PrincipalView, ids: Iterable[int]) -> List[PermissionRecord]:
        result = []
        for permission_id in ids:
            permission = view.permissions.get(permission_id)
            if permission is None or permission.guard_name != view.guard:
                continue
            if not self._permission_live(permission, view):
                continue
            result.append(permission)
        return sorted(result, key=lambda p: (p.name, p.id))

    async def direct_permissions(self, principal: Principal) -> List[PermissionRecord]:
        """Permissions granted straight to the principal and not expired."""
        view = await self.view(principal)
        live = [
            pid for pid, grant in view.grants.items()
            if not (self.config.time_based_enabled and grant.is_expired(view.now))
        ]
        return self._in_guard(view, live)

    async def permissions_via_roles(self, principal: Principal) -> List[PermissionRecord]:
        """Permissions reachable through assigned (and inherited) roles."""
        view = await self.view(principal)
        return self._in_guard(view, view.role_permission_ids())

    async def all_effective_permissions(self, principal: Principal) -> List[PermissionRecord]:
        """Direct plus role-derived permissions, deduplicated, sorted by name."""
        view = await self.view(principal)
        live = {
            pid for pid, grant in view.grants.items()
            if not (self.config.time_based_enabled and grant.is_expired(view.now))
        }
        return self._in_guard(view, live | view.role_permission_ids())

    # ------------------------------------------------------------------
    # Role queries
    # ------------------------------------------------------------------

    def _role_matches(self, view: PrincipalView, value: Any) -> bool:
        ref = role_ref(value)
        if isinstance(ref, ByName):
            return any(r.name == ref.name for r in view.roles)
        if isinstance(ref, Resolved):
            if ref.record.guard_name != view.guard:
                raise GuardMismatch(view.guard, ref.record.guard_name, "role")
            return any(r.id == ref.record.id for r in view.roles)
        return any(r.id == ref.id for r in view.roles)

    async def roles(self, principal: Principal) -> List[RoleRecord]:
        """Roles assigned to the principal in its guard (not inherited ones)."""
        view = await self.view(principal)
        return sorted(view.roles, key=lambda r: (r.name, r.id))

    async def role_names(self, principal: Principal) -> List[str]:
        return [r.name for r in await self.roles(principal)]

    async def has_role(self, principal: Principal, role: Any) -> bool:
        view = await self.view(principal)
        return self._role_matches(view, role)

    async def has_any_role(self, principal: Principal, roles: Iterable[Any]) -> bool:
        view = await self.view(principal)
        return any(self._role_matches(view, role) for role in roles)

    async def has_all_roles(self, principal: Principal, roles: Iterable[Any]) -> bool:
        """An empty list is False, like has_all_permissions."""
        roles = list(roles)
        if not roles:
            return False
        view = await self.view(principal)
        return all(self._role_matches(view, role) for role in roles)
