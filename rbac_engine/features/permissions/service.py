"""
Permission service: every mutation of the catalog and of principal
assignments goes through here.

Each mutation runs in one store transaction. Once it has committed, the
catalog cache is invalidated and then the audit event is emitted, all before
the call returns. Audit failures are logged and counted, never raised.

Batch operations validate every item first. If any item fails, nothing is
written and ``InvalidBulkOperation`` carries the per-item failures.
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from rbac_engine.core.cache import PermissionCache
from rbac_engine.core.config import PermissionConfig
from rbac_engine.core.database.engine import EntityStore
from rbac_engine.core.exceptions import (
    DuplicateEntity,
    GuardMismatch,
    InvalidBulkOperation,
    NotFound,
)
from rbac_engine.features.audit.schemas import AuditEvent
from rbac_engine.features.audit.sink import AuditSink, purge_audit_entries
from rbac_engine.features.permissions import store
from rbac_engine.features.permissions.hierarchy import RoleHierarchy
from rbac_engine.features.permissions.models import Permission, Role
from rbac_engine.features.permissions.refs import ByID, ByName, permission_ref, role_ref
from rbac_engine.features.permissions.schemas import (
    BulkItemResult,
    BulkResult,
    DirectGrant,
    PermissionCreate,
    PermissionRecord,
    PermissionUpdate,
    Principal,
    ResourceScope,
    RoleCreate,
    RoleRecord,
    RoleUpdate,
)
from rbac_engine.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


def _permission_record(permission: Permission) -> PermissionRecord:
    return PermissionRecord.model_validate(permission)


def _role_record(role: Role) -> RoleRecord:
    return RoleRecord.model_validate(role)


def _principal_fields(principal: Optional[Principal]) -> Dict[str, Any]:
    if principal is None:
        return {}
    return {"principal_type": principal.principal_type, "principal_id": principal.principal_id}


class PermissionService:
    def __init__(
        self,
        store: EntityStore,
        cache: PermissionCache,
        config: PermissionConfig,
        audit: Optional[AuditSink] = None,
    ):
        self.store = store
        self.cache = cache
        self.config = config
        self.audit = audit
        self.audit_failures = 0

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def guard_for(self, principal: Optional[Principal] = None, guard: Optional[str] = None) -> str:
        if guard:
            return guard
        if principal is not None and principal.guard_name:
            return principal.guard_name
        return self.config.default_guard

    def team_scope(self, team_id: Optional[int]) -> Any:
        return team_id if self.config.teams_enabled else store.ANY_TEAM

    async def mutate(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        result = await self.store.run_in_transaction(fn)
        await self.cache.invalidate()
        return result

    async def emit(
        self,
        event_type: str,
        principal: Optional[Principal] = None,
        actor: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        **meta,
    ) -> None:
        if self.audit is None or not self.config.tracks(event_type):
            return
        event = AuditEvent(
            event_type=event_type,
            actor_id=actor,
            before=before,
            after=after,
            meta=meta or None,
            **_principal_fields(principal),
        )
        try:
            await self.audit.record(event)
        except Exception:
            self.audit_failures += 1
            log.exception(f"Audit sink failed for {event_type}; the mutation stays committed")

    def _check_batch_size(self, items: Sequence[Any]) -> None:
        if len(items) > self.config.bulk_batch_size:
            raise InvalidBulkOperation(
                [BulkItemResult(item=f"{len(items)} items", ok=False, error=f"batch exceeds {self.config.bulk_batch_size} items")],
                message="Batch too large",
            )

    async def _resolve_permissions(
        self, db: AsyncSession, refs: Iterable[Any], guard: str, team: Any
    ) -> List[tuple]:
        """Resolve every ref, collecting failures; raises before anything is written."""
        resolved, failures = [], []
        for value in refs:
            try:
                ref = permission_ref(value)
                resolved.append((str(ref), await store.get_permission(db, ref, guard, team)))
            except (NotFound, GuardMismatch, TypeError, ValueError) as e:
                failures.append(BulkItemResult(item=str(value), ok=False, error=str(e)))
        if failures:
            raise InvalidBulkOperation(failures)
        return resolved

    async def _resolve_roles(
        self, db: AsyncSession, refs: Iterable[Any], guard: str, team: Any
    ) -> List[tuple]:
        resolved, failures = [], []
        for value in refs:
            try:
                ref = role_ref(value)
                resolved.append((str(ref), await store.get_role(db, ref, guard, team)))
            except (NotFound, GuardMismatch, TypeError, ValueError) as e:
                failures.append(BulkItemResult(item=str(value), ok=False, error=str(e)))
        if failures:
            raise InvalidBulkOperation(failures)
        return resolved

    # ------------------------------------------------------------------
    # Permission lookups
    # ------------------------------------------------------------------

    async def find_permission(self, value: Any, guard: Optional[str] = None, team_id: Optional[int] = None) -> PermissionRecord:
        """Find a permission by name, id or record; raises PermissionNotFound."""
        guard = self.guard_for(guard=guard)
        async with self.store.session() as db:
            permission = await store.get_permission(db, permission_ref(value), guard, self.team_scope(team_id))
            return _permission_record(permission)

    async def find_permission_by_name(self, name: str, guard: Optional[str] = None) -> PermissionRecord:
        return await self.find_permission(ByName(name), guard)

    async def find_permission_by_id(self, permission_id: int, guard: Optional[str] = None) -> PermissionRecord:
        return await self.find_permission(ByID(permission_id), guard)

    async def list_permissions(
        self,
        guard: Optional[str] = None,
        group: Optional[str] = None,
        team_id: Optional[int] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[PermissionRecord]:
        async with self.store.session() as db:
            permissions = await store.list_permissions(db, guard, group, self.team_scope(team_id), skip, limit)
            return [_permission_record(p) for p in permissions]

    async def list_groups(self) -> List[str]:
        async with self.store.session() as db:
            return await store.list_groups(db)

    # ------------------------------------------------------------------
    # Permission mutations
    # ------------------------------------------------------------------

    async def create_permission(self, data: PermissionCreate, actor: Optional[str] = None) -> PermissionRecord:
        """Create a permission; raises DuplicateEntity on (name, guard, team) clash."""
        async def op(db: AsyncSession) -> PermissionRecord:
            return _permission_record(await store.create_permission(db, data, self.config.default_guard))

        record = await self.mutate(op)
        await self.emit("permission_created", actor=actor, after=record.model_dump(mode="json"))
        return record

    async def create_for_resource(
        self,
        name: str,
        resource_type: str,
        resource_id: Any,
        actor: Optional[str] = None,
        **attributes,
    ) -> PermissionRecord:
        """Create a permission scoped to one resource instance."""
        data = PermissionCreate(name=name, resource_type=resource_type, resource_id=resource_id, **attributes)
        return await self.create_permission(data, actor=actor)

    async def find_or_create_permission(
        self,
        name: str,
        guard: Optional[str] = None,
        team_id: Optional[int] = None,
        actor: Optional[str] = None,
        **attributes,
    ) -> PermissionRecord:
        """Idempotent: returns the existing permission or creates it exactly once."""
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            permission, created = await store.find_or_create_permission(db, name, guard, team_id, **attributes)
            return _permission_record(permission), created

        try:
            record, created = await self.store.run_in_transaction(op)
        except DuplicateEntity:
            # Created by a concurrent call between our check and insert
            async with self.store.session() as db:
                return _permission_record(await store.existing_permission(db, name, guard, team_id))
        if created:
            await self.cache.invalidate()
            await self.emit("permission_created", actor=actor, after=record.model_dump(mode="json"))
        return record

    async def update_permission(
        self,
        value: Any,
        data: PermissionUpdate,
        guard: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PermissionRecord:
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            permission = await store.get_permission(db, permission_ref(value), guard)
            before = await store.update_permission(db, permission, data)
            return _permission_record(permission), before

        record, before = await self.mutate(op)
        await self.emit(
            "permission_updated",
            actor=actor,
            before=PermissionUpdate.model_validate(before).model_dump(mode="json", exclude_unset=True),
            after=data.model_dump(mode="json", exclude_unset=True),
            permission_id=record.id,
        )
        return record

    async def delete_permission(self, value: Any, guard: Optional[str] = None, actor: Optional[str] = None) -> PermissionRecord:
        """Delete a permission and every grant of it."""
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession) -> PermissionRecord:
            permission = await store.get_permission(db, permission_ref(value), guard)
            record = _permission_record(permission)
            await store.delete_permission(db, permission.id)
            return record

        record = await self.mutate(op)
        log.info(f"Deleted permission {record.name!r} (guard={record.guard_name})")
        await self.emit("permission_deleted", actor=actor, before=record.model_dump(mode="json"))
        return record

    async def bulk_create_permissions(
        self,
        items: Sequence[PermissionCreate],
        actor: Optional[str] = None,
    ) -> BulkResult:
        """Create many permissions in one transaction; all or nothing."""
        self._check_batch_size(items)

        async def op(db: AsyncSession) -> BulkResult:
            failures, seen = [], set()
            for data in items:
                key = (data.name, data.guard_name or self.config.default_guard, data.team_id)
                if key in seen:
                    failures.append(BulkItemResult(item=data.name, ok=False, error="duplicated within the batch"))
                    continue
                seen.add(key)
                existing = await store.existing_permission(db, *key)
                if existing is not None:
                    error = DuplicateEntity("permission", key[0], key[1], key[2], existing.id)
                    failures.append(BulkItemResult(item=data.name, ok=False, error=str(error)))
            if failures:
                raise InvalidBulkOperation(failures)

            results = []
            for data in items:
                permission = await store.create_permission(db, data, self.config.default_guard)
                results.append(BulkItemResult(item=permission.name, ok=True, entity_id=permission.id))
            return BulkResult(items=results)

        result = await self.mutate(op)
        for item in result.items:
            await self.emit("permission_created", actor=actor, after={"name": item.item, "id": item.entity_id})
        return result

    async def merge_permissions(
        self,
        primary_id: int,
        duplicate_ids: Sequence[int],
        actor: Optional[str] = None,
    ) -> PermissionRecord:
        """
        Fold duplicates into ``primary_id`` and delete them.

        Every role holding a duplicate is granted the primary instead, and
        direct grants move over unless the principal already holds the
        primary. All permissions must share the primary's guard.
        """
        async def op(db: AsyncSession):
            primary = await store.get_permission_any_guard(db, primary_id)
            merged = []
            for duplicate_id in duplicate_ids:
                if duplicate_id == primary.id:
                    continue
                duplicate = await store.find_permission_by_id(db, duplicate_id, primary.guard_name)
                for role_id in sorted(await store.permission_role_ids(db, duplicate.id)):
                    await store.add_role_permissions(db, role_id, [primary.id])
                await store.move_principal_grants(db, duplicate.id, primary.id)
                merged.append(_permission_record(duplicate))
                await store.delete_permission(db, duplicate.id)
            return _permission_record(primary), merged

        record, merged = await self.mutate(op)
        for duplicate in merged:
            log.info(f"Merged permission {duplicate.name!r} (id={duplicate.id}) into {record.name!r} (id={record.id})")
            await self.emit(
                "permission_deleted",
                actor=actor,
                before=duplicate.model_dump(mode="json"),
                merged_into=record.id,
            )
        return record

    # ------------------------------------------------------------------
    # Role lookups
    # ------------------------------------------------------------------

    async def find_role(self, value: Any, guard: Optional[str] = None, team_id: Optional[int] = None) -> RoleRecord:
        """Find a role by name, id or record; raises RoleNotFound."""
        guard = self.guard_for(guard=guard)
        async with self.store.session() as db:
            role = await store.get_role(db, role_ref(value), guard, self.team_scope(team_id))
            return _role_record(role)

    async def find_role_by_name(self, name: str, guard: Optional[str] = None) -> RoleRecord:
        return await self.find_role(ByName(name), guard)

    async def find_role_by_id(self, role_id: int, guard: Optional[str] = None) -> RoleRecord:
        return await self.find_role(ByID(role_id), guard)

    async def list_roles(
        self,
        guard: Optional[str] = None,
        team_id: Optional[int] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[RoleRecord]:
        async with self.store.session() as db:
            roles = await store.list_roles(db, guard, self.team_scope(team_id), skip, limit)
            return [_role_record(r) for r in roles]

    async def role_permissions(self, value: Any, guard: Optional[str] = None) -> List[PermissionRecord]:
        """Permissions granted directly to a role, by name."""
        guard = self.guard_for(guard=guard)
        async with self.store.session() as db:
            role = await store.get_role(db, role_ref(value), guard)
            permission_ids = await store.role_permission_ids(db, role.id)
            permissions = await store.list_permissions(db, guard=role.guard_name)
            records = [_permission_record(p) for p in permissions if p.id in permission_ids]
        return sorted(records, key=lambda r: r.name)

    # ------------------------------------------------------------------
    # Role mutations
    # ------------------------------------------------------------------

    async def attach_parent(self, db: AsyncSession, role: Role, parent: Optional[Role]) -> None:
        """Validate and store a new parent pointer, then refresh cached levels."""
        names = {role.id: role.name}
        if parent is not None:
            names[parent.id] = parent.name
        hierarchy = RoleHierarchy(await store.parent_map(db), names=names, max_hops=self.config.max_hops)
        parent_id = parent.id if parent is not None else None
        max_depth = self.config.max_depth if self.config.enforce_max_depth else None
        hierarchy.check_parent(role.id, parent_id, max_depth=max_depth)
        await store.set_parent_id(db, role.id, parent_id)
        await store.refresh_levels(db, role.id, self.config.max_hops)
        await db.refresh(role)

    async def create_role(self, data: RoleCreate, actor: Optional[str] = None) -> RoleRecord:
        """Create a role; a given parent is validated like set_parent."""
        async def op(db: AsyncSession) -> RoleRecord:
            role = await store.create_role(db, data, self.config.default_guard)
            if data.parent_id is not None:
                team = self.team_scope(role.team_id)
                parent = await store.find_role_by_id(db, data.parent_id, role.guard_name, team)
                await self.attach_parent(db, role, parent)
            return _role_record(role)

        record = await self.mutate(op)
        await self.emit("role_created", actor=actor, after=record.model_dump(mode="json"))
        return record

    async def find_or_create_role(
        self,
        name: str,
        guard: Optional[str] = None,
        team_id: Optional[int] = None,
        actor: Optional[str] = None,
        **attributes,
    ) -> RoleRecord:
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            role, created = await store.find_or_create_role(db, name, guard, team_id, **attributes)
            return _role_record(role), created

        try:
            record, created = await self.store.run_in_transaction(op)
        except DuplicateEntity:
            # Created by a concurrent call between our check and insert
            async with self.store.session() as db:
                return _role_record(await store.existing_role(db, name, guard, team_id))
        if created:
            await self.cache.invalidate()
            await self.emit("role_created", actor=actor, after=record.model_dump(mode="json"))
        return record

    async def update_role(
        self,
        value: Any,
        data: RoleUpdate,
        guard: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> RoleRecord:
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            role = await store.get_role(db, role_ref(value), guard)
            before = await store.update_role(db, role, data)
            return _role_record(role), before

        record, before = await self.mutate(op)
        await self.emit(
            "role_updated",
            actor=actor,
            before=RoleUpdate.model_validate(before).model_dump(mode="json", exclude_unset=True),
            after=data.model_dump(mode="json", exclude_unset=True),
            role_id=record.id,
        )
        return record

    async def delete_role(self, value: Any, guard: Optional[str] = None, actor: Optional[str] = None) -> RoleRecord:
        """Delete a role with its grants and assignments; its children become roots."""
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            role = await store.get_role(db, role_ref(value), guard)
            record = _role_record(role)
            detached = await store.delete_role(db, role.id)
            return record, detached

        record, detached = await self.mutate(op)
        log.info(f"Deleted role {record.name!r} (guard={record.guard_name}), detached children {detached}")
        await self.emit("role_deleted", actor=actor, before=record.model_dump(mode="json"), detached_children=detached)
        return record

    async def bulk_create_roles(self, items: Sequence[RoleCreate], actor: Optional[str] = None) -> BulkResult:
        """Create many parentless roles in one transaction; all or nothing."""
        self._check_batch_size(items)

        async def op(db: AsyncSession) -> BulkResult:
            failures, seen = [], set()
            for data in items:
                key = (data.name, data.guard_name or self.config.default_guard, data.team_id)
                if key in seen:
                    failures.append(BulkItemResult(item=data.name, ok=False, error="duplicated within the batch"))
                    continue
                seen.add(key)
                existing = await store.existing_role(db, *key)
                if existing is not None:
                    error = DuplicateEntity("role", key[0], key[1], key[2], existing.id)
                    failures.append(BulkItemResult(item=data.name, ok=False, error=str(error)))
            if failures:
                raise InvalidBulkOperation(failures)

            results = []
            for data in items:
                role = await store.create_role(db, data, self.config.default_guard)
                results.append(BulkItemResult(item=role.name, ok=True, entity_id=role.id))
            return BulkResult(items=results)

        result = await self.mutate(op)
        for item in result.items:
            await self.emit("role_created", actor=actor, after={"name": item.item, "id": item.entity_id})
        return result

    async def set_parent(
        self,
        value: Any,
        parent: Any,
        guard: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> RoleRecord:
        """
        Move a role under ``parent`` (None makes it a root).

        Raises CircularHierarchy if the role is in the parent's ancestor chain
        and, when depth enforcement is on, HierarchyTooDeep. On error nothing
        is changed.
        """
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            role = await store.get_role(db, role_ref(value), guard)
            previous = role.parent_id
            new_parent = None
            if parent is not None:
                new_parent = await store.get_role(db, role_ref(parent), guard, self.team_scope(role.team_id))
            await self.attach_parent(db, role, new_parent)
            return _role_record(role), previous

        record, previous = await self.mutate(op)
        log.info(f"Role {record.name!r} parent changed {previous} -> {record.parent_id}")
        await self.emit(
            "role_parent_changed",
            actor=actor,
            before={"parent_id": previous},
            after={"parent_id": record.parent_id, "level": record.level},
            role_id=record.id,
        )
        return record

    async def clear_parent(self, value: Any, guard: Optional[str] = None, actor: Optional[str] = None) -> RoleRecord:
        return await self.set_parent(value, None, guard=guard, actor=actor)

    async def clone_role(
        self,
        value: Any,
        new_name: str,
        guard: Optional[str] = None,
        actor: Optional[str] = None,
        **attributes,
    ) -> RoleRecord:
        """Create a new parentless role with the same description, meta and grants."""
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession) -> RoleRecord:
            source = await store.get_role(db, role_ref(value), guard)
            fields = {
                "name": new_name,
                "guard_name": source.guard_name,
                "description": source.description,
                "meta": source.meta,
                "team_id": source.team_id,
            }
            fields.update(attributes)
            clone = await store.create_role(db, RoleCreate(**fields), self.config.default_guard)
            await store.add_role_permissions(db, clone.id, sorted(await store.role_permission_ids(db, source.id)))
            return _role_record(clone)

        record = await self.mutate(op)
        await self.emit("role_created", actor=actor, after=record.model_dump(mode="json"), cloned_from=str(value))
        return record

    # ------------------------------------------------------------------
    # Role grants
    # ------------------------------------------------------------------

    async def give_permissions_to_role(
        self,
        role: Any,
        permissions: Sequence[Any],
        guard: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> BulkResult:
        """
        Grant permissions to a role in one transaction.

        Every permission must resolve in the role's guard, otherwise nothing is
        granted and InvalidBulkOperation lists the failures.
        """
        self._check_batch_size(permissions)
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            target = await store.get_role(db, role_ref(role), guard)
            team = self.team_scope(target.team_id)
            resolved = await self._resolve_permissions(db, permissions, target.guard_name, team)
            added = await store.add_role_permissions(db, target.id, [p.id for _, p in resolved])
            items = [
                BulkItemResult(
                    item=p.name,
                    ok=True,
                    entity_id=p.id,
                    error=None if p.id in added else "already granted",
                )
                for _, p in resolved
            ]
            return _role_record(target), BulkResult(items=items), added

        record, result, added = await self.mutate(op)
        if added:
            await self.emit(
                "permission_granted",
                Principal(principal_type="role", principal_id=record.id, guard_name=record.guard_name),
                actor=actor,
                after={"permission_ids": added},
            )
        return result

    async def revoke_permissions_from_role(
        self,
        role: Any,
        permissions: Sequence[Any],
        guard: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> BulkResult:
        self._check_batch_size(permissions)
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            target = await store.get_role(db, role_ref(role), guard)
            team = self.team_scope(target.team_id)
            resolved = await self._resolve_permissions(db, permissions, target.guard_name, team)
            current = await store.role_permission_ids(db, target.id)
            ids = [p.id for _, p in resolved]
            await store.remove_role_permissions(db, target.id, ids)
            items = [
                BulkItemResult(item=p.name, ok=True, entity_id=p.id, error=None if p.id in current else "not granted")
                for _, p in resolved
            ]
            return _role_record(target), BulkResult(items=items), [i for i in ids if i in current]

        record, result, removed = await self.mutate(op)
        if removed:
            await self.emit(
                "permission_revoked",
                Principal(principal_type="role", principal_id=record.id, guard_name=record.guard_name),
                actor=actor,
                before={"permission_ids": removed},
            )
        return result

    async def sync_role_permissions(
        self,
        role: Any,
        permissions: Sequence[Any],
        guard: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> BulkResult:
        """Make the role's direct grants exactly ``permissions``."""
        self._check_batch_size(permissions)
        guard = self.guard_for(guard=guard)

        async def op(db: AsyncSession):
            target = await store.get_role(db, role_ref(role), guard)
            team = self.team_scope(target.team_id)
            resolved = await self._resolve_permissions(db, permissions, target.guard_name, team)
            before = sorted(await store.role_permission_ids(db, target.id))
            await store.remove_role_permissions(db, target.id)
            await store.add_role_permissions(db, target.id, [p.id for _, p in resolved])
            items = [BulkItemResult(item=p.name, ok=True, entity_id=p.id) for _, p in resolved]
            return _role_record(target), BulkResult(items=items), before

        record, result, before = await self.mutate(op)
        await self.emit(
            "permission_granted",
            Principal(principal_type="role", principal_id=record.id, guard_name=record.guard_name),
            actor=actor,
            before={"permission_ids": before},
            after={"permission_ids": sorted(i.entity_id for i in result.items)},
            sync=True,
        )
        return result

    # ------------------------------------------------------------------
    # Principal role assignments
    # ------------------------------------------------------------------

    async def assign_roles(self, principal: Principal, roles: Sequence[Any], actor: Optional[str] = None) -> BulkResult:
        """Assign roles to a persisted principal, within its guard and team."""
        self._check_batch_size(roles)
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession):
            resolved = await self._resolve_roles(db, roles, guard, team)
            added = await store.add_principal_roles(db, principal, [r.id for _, r in resolved], principal.team_id)
            items = [
                BulkItemResult(item=r.name, ok=True, entity_id=r.id, error=None if r.id in added else "already assigned")
                for _, r in resolved
            ]
            return BulkResult(items=items), added

        result, added = await self.mutate(op)
        if added:
            await self.emit("role_assigned", principal, actor=actor, after={"role_ids": added})
        return result

    async def assign_role(self, principal: Principal, role: Any, actor: Optional[str] = None) -> BulkResult:
        return await self.assign_roles(principal, [role], actor=actor)

    async def remove_roles(self, principal: Principal, roles: Sequence[Any], actor: Optional[str] = None) -> BulkResult:
        self._check_batch_size(roles)
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession):
            resolved = await self._resolve_roles(db, roles, guard, team)
            current = set(await store.principal_role_ids(db, principal))
            ids = [r.id for _, r in resolved]
            await store.remove_principal_roles(db, principal, ids)
            items = [
                BulkItemResult(item=r.name, ok=True, entity_id=r.id, error=None if r.id in current else "not assigned")
                for _, r in resolved
            ]
            return BulkResult(items=items), [i for i in ids if i in current]

        result, removed = await self.mutate(op)
        if removed:
            await self.emit("role_removed", principal, actor=actor, before={"role_ids": removed})
        return result

    async def remove_role(self, principal: Principal, role: Any, actor: Optional[str] = None) -> BulkResult:
        return await self.remove_roles(principal, [role], actor=actor)

    async def sync_roles(self, principal: Principal, roles: Sequence[Any], actor: Optional[str] = None) -> BulkResult:
        """Make the principal's role assignments exactly ``roles``."""
        self._check_batch_size(roles)
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession):
            resolved = await self._resolve_roles(db, roles, guard, team)
            before = await store.principal_role_ids(db, principal)
            await store.remove_principal_roles(db, principal)
            await store.add_principal_roles(db, principal, [r.id for _, r in resolved], principal.team_id)
            items = [BulkItemResult(item=r.name, ok=True, entity_id=r.id) for _, r in resolved]
            return BulkResult(items=items), before

        result, before = await self.mutate(op)
        after = sorted(i.entity_id for i in result.items)
        if sorted(before) != after:
            await self.emit("role_assigned", principal, actor=actor, before={"role_ids": before}, after={"role_ids": after}, sync=True)
        return result

    # ------------------------------------------------------------------
    # Direct grants
    # ------------------------------------------------------------------

    async def give_permission_to(
        self,
        principal: Principal,
        permission: Any,
        expires_at: Optional[datetime] = None,
        resource: Optional[ResourceScope] = None,
        meta: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> DirectGrant:
        """
        Grant a permission straight to a principal.

        Granting again replaces the previous grant's expiry and resource scope.
        """
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession):
            target = await store.get_permission(db, permission_ref(permission), guard, team)
            previous = await store.put_principal_permission(
                db,
                principal,
                target.id,
                expires_at=expires_at,
                resource_type=resource.resource_type if resource else None,
                resource_id=resource.resource_id if resource else None,
                team_id=principal.team_id,
                meta=meta,
            )
            grant = DirectGrant(
                permission_id=target.id,
                expires_at=expires_at,
                resource_type=resource.resource_type if resource else None,
                resource_id=resource.resource_id if resource else None,
                meta=meta,
                team_id=principal.team_id,
            )
            return grant, previous

        grant, previous = await self.mutate(op)
        await self.emit(
            "permission_granted",
            principal,
            actor=actor,
            before=previous.model_dump(mode="json") if previous else None,
            after=grant.model_dump(mode="json"),
        )
        return grant

    async def give_permissions_to(
        self,
        principal: Principal,
        permissions: Sequence[Any],
        expires_at: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> BulkResult:
        """Grant several unscoped permissions to a principal in one transaction."""
        self._check_batch_size(permissions)
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession) -> BulkResult:
            resolved = await self._resolve_permissions(db, permissions, guard, team)
            items = []
            for _, target in resolved:
                await store.put_principal_permission(db, principal, target.id, expires_at=expires_at, team_id=principal.team_id)
                items.append(BulkItemResult(item=target.name, ok=True, entity_id=target.id))
            return BulkResult(items=items)

        result = await self.mutate(op)
        await self.emit(
            "permission_granted",
            principal,
            actor=actor,
            after={"permission_ids": [i.entity_id for i in result.items], "expires_at": expires_at.isoformat() if expires_at else None},
        )
        return result

    async def revoke_permission_from(
        self,
        principal: Principal,
        permissions: Sequence[Any],
        actor: Optional[str] = None,
    ) -> BulkResult:
        """Remove direct grants from a principal. Role-derived access is untouched."""
        self._check_batch_size(permissions)
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession):
            resolved = await self._resolve_permissions(db, permissions, guard, team)
            current = {g.permission_id for g in await store.principal_grants(db, principal)}
            ids = [p.id for _, p in resolved]
            await store.remove_principal_permissions(db, principal, ids)
            items = [
                BulkItemResult(item=p.name, ok=True, entity_id=p.id, error=None if p.id in current else "not granted")
                for _, p in resolved
            ]
            return BulkResult(items=items), [i for i in ids if i in current]

        result, removed = await self.mutate(op)
        if removed:
            await self.emit("permission_revoked", principal, actor=actor, before={"permission_ids": removed})
        return result

    async def sync_permissions(
        self,
        principal: Principal,
        permissions: Sequence[Any],
        actor: Optional[str] = None,
    ) -> BulkResult:
        """Make the principal's direct grants exactly ``permissions`` (unscoped, non-expiring)."""
        self._check_batch_size(permissions)
        guard = self.guard_for(principal)
        team = self.team_scope(principal.team_id)

        async def op(db: AsyncSession):
            resolved = await self._resolve_permissions(db, permissions, guard, team)
            before = [g.permission_id for g in await store.principal_grants(db, principal)]
            await store.remove_principal_permissions(db, principal)
            items = []
            for _, target in resolved:
                await store.put_principal_permission(db, principal, target.id, team_id=principal.team_id)
                items.append(BulkItemResult(item=target.name, ok=True, entity_id=target.id))
            return BulkResult(items=items), before

        result, before = await self.mutate(op)
        await self.emit(
            "permission_granted",
            principal,
            actor=actor,
            before={"permission_ids": before},
            after={"permission_ids": [i.entity_id for i in result.items]},
            sync=True,
        )
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_expired_grants(self, now: Optional[datetime] = None) -> int:
        """Physically delete direct grants past their expiry."""
        async def op(db: AsyncSession) -> int:
            return await store.delete_expired_grants(db, now)

        removed = await self.mutate(op)
        log.info(f"Purged {removed} expired direct grants")
        return removed

    async def purge_audit_entries(self, now: Optional[datetime] = None) -> int:
        """Delete audit entries older than the configured retention."""
        async def op(db: AsyncSession) -> int:
            return await purge_audit_entries(db, self.config.audit_retention_days, now)

        return await self.store.run_in_transaction(op)


class PendingAssignments:
    """
    Roles and permissions staged for a principal that is not persisted yet.

    Nothing is written until ``apply()`` is called with the principal's
    persisted identity.

    Usage:
        pending = PendingAssignments()
        pending.assign_role("editor")
        pending.give_permission("publish posts")
        ...create the user...
        await pending.apply(service, Principal(principal_type="user", principal_id=user.id))
    """

    def __init__(self):
        self.roles: List[Any] = []
        self.permissions: List[Dict[str, Any]] = []

    def assign_role(self, *roles: Any) -> "PendingAssignments":
        self.roles.extend(roles)
        return self

    def give_permission(
        self,
        permission: Any,
        expires_at: Optional[datetime] = None,
        resource: Optional[ResourceScope] = None,
    ) -> "PendingAssignments":
        self.permissions.append({"permission": permission, "expires_at": expires_at, "resource": resource})
        return self

    def __bool__(self) -> bool:
        return bool(self.roles or self.permissions)

    async def apply(self, service: PermissionService, principal: Principal, actor: Optional[str] = None) -> List[Any]:
        """Write every staged assignment and clear the stage."""
        results: List[Any] = []
        if self.roles:
            results.append(await service.assign_roles(principal, self.roles, actor=actor))
        for staged in self.permissions:
            results.append(await service.give_permission_to(principal, actor=actor, **staged))
        self.roles = []
        self.permissions = []
        return results
