"""
Catalog import and export.

The document holds a ``permissions`` array and a ``roles`` array, with roles,
parents and permissions referenced by name. An import runs in a single
transaction and in passes: permissions first, then parentless roles and their
permissions, then permission->role links, and parent links last so that
forward references resolve. Each item gets its own result message.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_engine.core.exceptions import PermissionEngineError
from rbac_engine.features.permissions import store
from rbac_engine.features.permissions.models import Permission, Role, role_has_permissions
from rbac_engine.features.permissions.service import PermissionService
from rbac_engine.features.transfer.schemas import (
    CatalogExport,
    ImportResult,
    PermissionExport,
    RoleExport,
)
from rbac_engine.utils import get_logger


log = get_logger(__name__)


class TransferService:
    def __init__(self, service: PermissionService):
        self.service = service

    @property
    def config(self):
        return self.service.config

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_catalog(self) -> CatalogExport:
        async with self.service.store.session() as db:
            permissions = (await db.execute(select(Permission).order_by(Permission.id))).scalars().all()
            roles = (await db.execute(select(Role).order_by(Role.id))).scalars().all()
            edges = (await db.execute(select(role_has_permissions))).all()

        role_names = {r.id: r.name for r in roles}
        permission_names = {p.id: p.name for p in permissions}
        roles_of: Dict[int, List[str]] = {}
        permissions_of: Dict[int, List[str]] = {}
        for edge in edges:
            roles_of.setdefault(edge.permission_id, []).append(role_names[edge.role_id])
            permissions_of.setdefault(edge.role_id, []).append(permission_names[edge.permission_id])

        return CatalogExport(
            permissions=[
                PermissionExport(
                    name=p.name,
                    guard_name=p.guard_name,
                    description=p.description,
                    group=p.group,
                    resource_type=p.resource_type,
                    resource_id=p.resource_id,
                    expires_at=p.expires_at,
                    meta=p.meta,
                    team_id=p.team_id,
                    roles=sorted(roles_of.get(p.id, [])),
                )
                for p in permissions
            ],
            roles=[
                RoleExport(
                    name=r.name,
                    guard_name=r.guard_name,
                    description=r.description,
                    parent=role_names.get(r.parent_id) if r.parent_id else None,
                    level=r.level,
                    meta=r.meta,
                    team_id=r.team_id,
                    permissions=sorted(permissions_of.get(r.id, [])),
                )
                for r in roles
            ],
        )

    async def export_json(self) -> Dict[str, Any]:
        """The catalog as a JSON-ready dict."""
        return (await self.export_catalog()).model_dump(mode="json")

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def import_json(self, data: Any, actor: Optional[str] = None) -> ImportResult:
        """Import a document (dict or CatalogExport); returns per-item messages."""
        document = data if isinstance(data, CatalogExport) else CatalogExport.model_validate(data)
        default_guard = self.config.default_guard

        async def op(db: AsyncSession) -> ImportResult:
            result = ImportResult()

            for item in document.permissions:
                guard = item.guard_name or default_guard
                attributes = item.model_dump(exclude={"name", "guard_name", "team_id", "roles"})
                _, created = await store.find_or_create_permission(db, item.name, guard, item.team_id, **attributes)
                result.permissions.append(f"{'Created' if created else 'Exists'}: {item.name}")

            imported: Dict[tuple, Role] = {}
            for item in document.roles:
                guard = item.guard_name or default_guard
                try:
                    permission_ids = []
                    for name in item.permissions:
                        permission = await store.find_permission_by_name(db, name, guard, item.team_id)
                        permission_ids.append(permission.id)
                    attributes = item.model_dump(include={"description", "meta"})
                    role, created = await store.find_or_create_role(db, item.name, guard, item.team_id, **attributes)
                    await store.remove_role_permissions(db, role.id)
                    await store.add_role_permissions(db, role.id, permission_ids)
                    imported[(item.name, guard)] = role
                    result.roles.append(f"{'Created' if created else 'Exists'}: {item.name}")
                except PermissionEngineError as e:
                    result.roles.append(f"Error: {item.name} - {e}")

            for item in document.permissions:
                guard = item.guard_name or default_guard
                if not item.roles:
                    continue
                permission = await store.find_permission_by_name(db, item.name, guard, item.team_id)
                for role_name in item.roles:
                    try:
                        role = await store.find_role_by_name(db, role_name, guard, item.team_id)
                        await store.add_role_permissions(db, role.id, [permission.id])
                    except PermissionEngineError as e:
                        result.permissions.append(f"Role Error: {item.name} - {e}")

            for item in document.roles:
                key = (item.name, item.guard_name or default_guard)
                if not item.parent or key not in imported:
                    continue
                role = imported[key]
                try:
                    parent = await store.find_role_by_name(db, item.parent, role.guard_name, item.team_id)
                    await self.service.attach_parent(db, role, parent)
                except PermissionEngineError as e:
                    result.roles.append(f"Parent Error: {item.name} - {e}")

            return result

        result = await self.service.mutate(op)
        log.info(
            f"Imported {len(document.permissions)} permission(s) and {len(document.roles)} role(s), "
            f"{len(result.errors)} error(s)"
        )
        await self.service.emit(
            "permission_created",
            actor=actor,
            after={"imported_permissions": len(document.permissions), "imported_roles": len(document.roles)},
            source="import",
        )
        return result
