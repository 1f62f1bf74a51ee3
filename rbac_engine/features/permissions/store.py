"""
Entity store queries for permissions, roles and their assignment edges.

Every function takes an open ``AsyncSession``; transactions are owned by the
caller (see ``EntityStore`` in ``core.database.engine``). Lookups are always
made within a guard, and within a team when a team is given. ``ANY_TEAM``
disables team filtering.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, delete, update, insert, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_engine.core.exceptions import (
    CircularHierarchy,
    DuplicateEntity,
    GuardMismatch,
    PermissionNotFound,
    RoleNotFound,
)
from rbac_engine.features.permissions.models import (
    Permission,
    Role,
    role_has_permissions,
    principal_has_roles,
    principal_has_permissions,
)
from rbac_engine.features.permissions.refs import ByID, ByName, Resolved
from rbac_engine.features.permissions.schemas import (
    CatalogSnapshot,
    DirectGrant,
    PermissionCreate,
    PermissionRecord,
    PermissionUpdate,
    Principal,
    RoleCreate,
    RoleRecord,
    RoleUpdate,
)
from rbac_engine.utils import get_logger, is_past, utc_now


log = get_logger(__name__)


class _AnyTeam:
    def __repr__(self) -> str:
        return "ANY_TEAM"


ANY_TEAM: Any = _AnyTeam()


def _team_clause(column, team_id):
    if team_id is ANY_TEAM:
        return None
    if team_id is None:
        return column.is_(None)
    return column == team_id


def _where(stmt, *clauses):
    clauses = [c for c in clauses if c is not None]
    if clauses:
        stmt = stmt.where(and_(*clauses))
    return stmt


async def _flush_unique(db: AsyncSession, entity: str, name: str, guard: str, team_id: Optional[int]) -> None:
    """
    Flush pending writes, turning a unique index violation into DuplicateEntity.

    The existence check before an insert or rename can race with another
    transaction; the unique index settles it. The session must be rolled
    back afterwards, which leaving the transaction does.
    """
    try:
        await db.flush()
    except IntegrityError as e:
        log.info("Concurrent write lost the race for %s %r (guard=%s)", entity, name, guard)
        raise DuplicateEntity(entity, name, guard, team_id) from e


# ============================================================================
# Permissions
# ============================================================================

async def find_permission_by_name(
    db: AsyncSession,
    name: str,
    guard: str,
    team_id: Any = ANY_TEAM,
) -> Permission:
    stmt = _where(
        select(Permission),
        Permission.name == name,
        Permission.guard_name == guard,
        _team_clause(Permission.team_id, team_id),
    ).order_by(Permission.id)
    result = await db.execute(stmt)
    permission = result.scalars().first()
    if permission is None:
        raise PermissionNotFound.named(name, guard)
    return permission


async def find_permission_by_id(
    db: AsyncSession,
    permission_id: int,
    guard: str,
    team_id: Any = ANY_TEAM,
) -> Permission:
    stmt = _where(
        select(Permission),
        Permission.id == permission_id,
        Permission.guard_name == guard,
        _team_clause(Permission.team_id, team_id),
    )
    result = await db.execute(stmt)
    permission = result.scalars().first()
    if permission is None:
        other = await db.get(Permission, permission_id)
        if other is not None and other.guard_name != guard:
            raise GuardMismatch(guard, other.guard_name, "permission")
        raise PermissionNotFound.with_id(permission_id, guard)
    return permission


async def get_permission(db: AsyncSession, ref, guard: str, team_id: Any = ANY_TEAM) -> Permission:
    """Resolve a permission reference within a guard."""
    if isinstance(ref, ByName):
        return await find_permission_by_name(db, ref.name, guard, team_id)
    if isinstance(ref, ByID):
        return await find_permission_by_id(db, ref.id, guard, team_id)
    if isinstance(ref, Resolved):
        if ref.record.guard_name != guard:
            raise GuardMismatch(guard, ref.record.guard_name, "permission")
        return await find_permission_by_id(db, ref.record.id, guard, team_id)
    raise TypeError(f"Not a permission reference: {ref!r}")


async def get_permission_any_guard(db: AsyncSession, permission_id: int) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise PermissionNotFound.with_id(permission_id)
    return permission


async def existing_permission(db: AsyncSession, name: str, guard: str, team_id: Optional[int]) -> Optional[Permission]:
    stmt = select(Permission).where(
        and_(
            Permission.name == name,
            Permission.guard_name == guard,
            _team_clause(Permission.team_id, team_id),
        )
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def create_permission(db: AsyncSession, data: PermissionCreate, default_guard: str) -> Permission:
    """Insert a permission, rejecting a duplicate (name, guard, team)."""
    guard = data.guard_name or default_guard
    existing = await existing_permission(db, data.name, guard, data.team_id)
    if existing is not None:
        raise DuplicateEntity("permission", data.name, guard, data.team_id, existing.id)

    permission = Permission(**data.model_dump(exclude={"guard_name"}), guard_name=guard)
    db.add(permission)
    await _flush_unique(db, "permission", data.name, guard, data.team_id)
    log.info("Created permission %r (guard=%s, id=%s)", permission.name, guard, permission.id)
    return permission


async def find_or_create_permission(
    db: AsyncSession,
    name: str,
    guard: str,
    team_id: Optional[int] = None,
    **attributes,
) -> Tuple[Permission, bool]:
    """Return the existing permission or create it. Never raises on duplicates."""
    existing = await existing_permission(db, name, guard, team_id)
    if existing is not None:
        return existing, False
    data = PermissionCreate(name=name, guard_name=guard, team_id=team_id, **attributes)
    return await create_permission(db, data, guard), True


async def update_permission(db: AsyncSession, permission: Permission, data: PermissionUpdate) -> Dict[str, Any]:
    """Apply an update; returns the changed fields with their old values."""
    update_data = data.model_dump(exclude_unset=True)
    if "name" in update_data and update_data["name"] != permission.name:
        clash = await existing_permission(db, update_data["name"], permission.guard_name, permission.team_id)
        if clash is not None:
            raise DuplicateEntity("permission", update_data["name"], permission.guard_name, permission.team_id, clash.id)

    before = {}
    for key, value in update_data.items():
        before[key] = getattr(permission, key)
        setattr(permission, key, value)
    await _flush_unique(db, "permission", permission.name, permission.guard_name, permission.team_id)
    return before


async def delete_permission(db: AsyncSession, permission_id: int) -> None:
    """Delete a permission together with every edge that points at it."""
    await db.execute(delete(role_has_permissions).where(role_has_permissions.c.permission_id == permission_id))
    await db.execute(delete(principal_has_permissions).where(principal_has_permissions.c.permission_id == permission_id))
    await db.execute(delete(Permission).where(Permission.id == permission_id))


async def list_permissions(
    db: AsyncSession,
    guard: Optional[str] = None,
    group: Optional[str] = None,
    team_id: Any = ANY_TEAM,
    skip: int = 0,
    limit: Optional[int] = None,
) -> Sequence[Permission]:
    stmt = _where(
        select(Permission),
        Permission.guard_name == guard if guard else None,
        Permission.group == group if group else None,
        _team_clause(Permission.team_id, team_id),
    ).order_by(Permission.id).offset(skip)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


async def list_groups(db: AsyncSession) -> List[str]:
    """All distinct permission groups."""
    stmt = select(Permission.group).where(Permission.group.is_not(None)).distinct().order_by(Permission.group)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================================
# Roles
# ============================================================================

async def find_role_by_name(db: AsyncSession, name: str, guard: str, team_id: Any = ANY_TEAM) -> Role:
    stmt = _where(
        select(Role),
        Role.name == name,
        Role.guard_name == guard,
        _team_clause(Role.team_id, team_id),
    ).order_by(Role.id)
    result = await db.execute(stmt)
    role = result.scalars().first()
    if role is None:
        raise RoleNotFound.named(name, guard)
    return role


async def find_role_by_id(db: AsyncSession, role_id: int, guard: str, team_id: Any = ANY_TEAM) -> Role:
    stmt = _where(
        select(Role),
        Role.id == role_id,
        Role.guard_name == guard,
        _team_clause(Role.team_id, team_id),
    )
    result = await db.execute(stmt)
    role = result.scalars().first()
    if role is None:
        other = await db.get(Role, role_id)
        if other is not None and other.guard_name != guard:
            raise GuardMismatch(guard, other.guard_name, "role")
        raise RoleNotFound.with_id(role_id, guard)
    return role


async def get_role(db: AsyncSession, ref, guard: str, team_id: Any = ANY_TEAM) -> Role:
    """Resolve a role reference within a guard."""
    if isinstance(ref, ByName):
        return await find_role_by_name(db, ref.name, guard, team_id)
    if isinstance(ref, ByID):
        return await find_role_by_id(db, ref.id, guard, team_id)
    if isinstance(ref, Resolved):
        if ref.record.guard_name != guard:
            raise GuardMismatch(guard, ref.record.guard_name, "role")
        return await find_role_by_id(db, ref.record.id, guard, team_id)
    raise TypeError(f"Not a role reference: {ref!r}")


async def existing_role(db: AsyncSession, name: str, guard: str, team_id: Optional[int]) -> Optional[Role]:
    stmt = select(Role).where(
        and_(
            Role.name == name,
            Role.guard_name == guard,
            _team_clause(Role.team_id, team_id),
        )
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def create_role(db: AsyncSession, data: RoleCreate, default_guard: str) -> Role:
    """Insert a parentless role, rejecting a duplicate (name, guard, team)."""
    guard = data.guard_name or default_guard
    existing = await existing_role(db, data.name, guard, data.team_id)
    if existing is not None:
        raise DuplicateEntity("role", data.name, guard, data.team_id, existing.id)

    role = Role(**data.model_dump(exclude={"guard_name", "parent_id"}), guard_name=guard, level=0)
    db.add(role)
    await _flush_unique(db, "role", data.name, guard, data.team_id)
    log.info("Created role %r (guard=%s, id=%s)", role.name, guard, role.id)
    return role


async def find_or_create_role(
    db: AsyncSession,
    name: str,
    guard: str,
    team_id: Optional[int] = None,
    **attributes,
) -> Tuple[Role, bool]:
    existing = await existing_role(db, name, guard, team_id)
    if existing is not None:
        return existing, False
    data = RoleCreate(name=name, guard_name=guard, team_id=team_id, **attributes)
    return await create_role(db, data, guard), True


async def update_role(db: AsyncSession, role: Role, data: RoleUpdate) -> Dict[str, Any]:
    update_data = data.model_dump(exclude_unset=True)
    if "name" in update_data and update_data["name"] != role.name:
        clash = await existing_role(db, update_data["name"], role.guard_name, role.team_id)
        if clash is not None:
            raise DuplicateEntity("role", update_data["name"], role.guard_name, role.team_id, clash.id)

    before = {}
    for key, value in update_data.items():
        before[key] = getattr(role, key)
        setattr(role, key, value)
    await _flush_unique(db, "role", role.name, role.guard_name, role.team_id)
    return before


async def delete_role(db: AsyncSession, role_id: int) -> List[int]:
    """
    Delete a role and its edges. Child roles are detached and become roots.

    Returns the ids of the detached children.
    """
    result = await db.execute(select(Role.id).where(Role.parent_id == role_id))
    children = list(result.scalars().all())
    if children:
        await db.execute(update(Role).where(Role.parent_id == role_id).values(parent_id=None))
    await db.execute(delete(role_has_permissions).where(role_has_permissions.c.role_id == role_id))
    await db.execute(delete(principal_has_roles).where(principal_has_roles.c.role_id == role_id))
    await db.execute(delete(Role).where(Role.id == role_id))
    for child_id in children:
        await refresh_levels(db, child_id)
    return children


async def list_roles(
    db: AsyncSession,
    guard: Optional[str] = None,
    team_id: Any = ANY_TEAM,
    skip: int = 0,
    limit: Optional[int] = None,
) -> Sequence[Role]:
    stmt = _where(
        select(Role),
        Role.guard_name == guard if guard else None,
        _team_clause(Role.team_id, team_id),
    ).order_by(Role.id).offset(skip)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


# ============================================================================
# Hierarchy
# ============================================================================

async def parent_map(db: AsyncSession) -> Dict[int, Optional[int]]:
    result = await db.execute(select(Role.id, Role.parent_id))
    return {row.id: row.parent_id for row in result}


async def ancestor_ids(db: AsyncSession, role_id: int, max_hops: int = 100) -> List[int]:
    """
    Walk parent pointers from the store, nearest ancestor first.

    Raises CircularHierarchy when a role recurs or the hop cap is exceeded.
    """
    parents = await parent_map(db)
    chain: List[int] = []
    seen = {role_id}
    current = parents.get(role_id)
    while current is not None:
        if current in seen or len(chain) >= max_hops:
            raise CircularHierarchy(str(role_id), path=chain + [current])
        chain.append(current)
        seen.add(current)
        current = parents.get(current)
    return chain


async def set_parent_id(db: AsyncSession, role_id: int, parent_id: Optional[int]) -> None:
    await db.execute(update(Role).where(Role.id == role_id).values(parent_id=parent_id))


async def refresh_levels(db: AsyncSession, role_id: int, max_hops: int = 100) -> None:
    """Recompute the cached level of a role and everything below it."""
    parents = await parent_map(db)
    children: Dict[int, List[int]] = {}
    for child, parent in parents.items():
        if parent is not None:
            children.setdefault(parent, []).append(child)

    level = 0
    current = parents.get(role_id)
    while current is not None and level < max_hops:
        level += 1
        current = parents.get(current)

    pending = [(role_id, level)]
    visited: Set[int] = set()
    while pending:
        current_id, current_level = pending.pop()
        if current_id in visited:
            continue
        visited.add(current_id)
        await db.execute(update(Role).where(Role.id == current_id).values(level=current_level))
        pending.extend((child, current_level + 1) for child in children.get(current_id, []))


# ============================================================================
# Role grants (role <-> permission)
# ============================================================================

async def role_permission_ids(db: AsyncSession, role_id: int) -> Set[int]:
    stmt = select(role_has_permissions.c.permission_id).where(role_has_permissions.c.role_id == role_id)
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def add_role_permissions(db: AsyncSession, role_id: int, permission_ids: Iterable[int]) -> List[int]:
    """Attach permissions to a role, skipping ones already attached. Returns the new ids."""
    existing = await role_permission_ids(db, role_id)
    added = []
    for permission_id in permission_ids:
        if permission_id in existing or permission_id in added:
            continue
        added.append(permission_id)
    if added:
        await db.execute(
            insert(role_has_permissions),
            [{"role_id": role_id, "permission_id": pid} for pid in added],
        )
    return added


async def remove_role_permissions(db: AsyncSession, role_id: int, permission_ids: Optional[Iterable[int]] = None) -> int:
    """Detach the given permissions (all of them when None). Returns rows removed."""
    stmt = delete(role_has_permissions).where(role_has_permissions.c.role_id == role_id)
    if permission_ids is not None:
        stmt = stmt.where(role_has_permissions.c.permission_id.in_(list(permission_ids)))
    result = await db.execute(stmt)
    return result.rowcount or 0


async def permission_role_ids(db: AsyncSession, permission_id: int) -> Set[int]:
    stmt = select(role_has_permissions.c.role_id).where(role_has_permissions.c.permission_id == permission_id)
    result = await db.execute(stmt)
    return set(result.scalars().all())


# ============================================================================
# Principal assignments
# ============================================================================

def _principal_clauses(table, principal: Principal, team_id: Any):
    return [
        table.c.principal_type == principal.principal_type,
        table.c.principal_id == principal.principal_id,
        _team_clause(table.c.team_id, team_id),
    ]


async def principal_role_ids(db: AsyncSession, principal: Principal, team_id: Any = ANY_TEAM) -> List[int]:
    stmt = _where(
        select(principal_has_roles.c.role_id),
        *_principal_clauses(principal_has_roles, principal, team_id),
    ).order_by(principal_has_roles.c.role_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def add_principal_roles(
    db: AsyncSession,
    principal: Principal,
    role_ids: Iterable[int],
    team_id: Optional[int] = None,
) -> List[int]:
    # A role belongs to exactly one team, so a held role id is already held in that team
    existing = set(await principal_role_ids(db, principal))
    added = []
    for role_id in role_ids:
        if role_id in existing or role_id in added:
            continue
        added.append(role_id)
    if added:
        await db.execute(
            insert(principal_has_roles),
            [
                {
                    "role_id": role_id,
                    "principal_type": principal.principal_type,
                    "principal_id": principal.principal_id,
                    "team_id": team_id,
                }
                for role_id in added
            ],
        )
    return added


async def remove_principal_roles(
    db: AsyncSession,
    principal: Principal,
    role_ids: Optional[Iterable[int]] = None,
) -> int:
    stmt = delete(principal_has_roles).where(
        and_(
            principal_has_roles.c.principal_type == principal.principal_type,
            principal_has_roles.c.principal_id == principal.principal_id,
        )
    )
    if role_ids is not None:
        stmt = stmt.where(principal_has_roles.c.role_id.in_(list(role_ids)))
    result = await db.execute(stmt)
    return result.rowcount or 0


async def principal_grants(db: AsyncSession, principal: Principal, team_id: Any = ANY_TEAM) -> List[DirectGrant]:
    stmt = _where(
        select(principal_has_permissions),
        *_principal_clauses(principal_has_permissions, principal, team_id),
    ).order_by(principal_has_permissions.c.permission_id)
    result = await db.execute(stmt)
    return [DirectGrant.model_validate(row._mapping) for row in result]


async def put_principal_permission(
    db: AsyncSession,
    principal: Principal,
    permission_id: int,
    expires_at: Optional[datetime] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    team_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Optional[DirectGrant]:
    """
    Create or replace a direct grant. Returns the grant it replaced, if any.
    """
    key = and_(
        principal_has_permissions.c.permission_id == permission_id,
        principal_has_permissions.c.principal_type == principal.principal_type,
        principal_has_permissions.c.principal_id == principal.principal_id,
    )
    result = await db.execute(select(principal_has_permissions).where(key))
    row = result.first()
    previous = DirectGrant.model_validate(row._mapping) if row is not None else None
    if previous is not None:
        await db.execute(delete(principal_has_permissions).where(key))
    await db.execute(
        insert(principal_has_permissions).values(
            permission_id=permission_id,
            principal_type=principal.principal_type,
            principal_id=principal.principal_id,
            expires_at=expires_at,
            resource_type=resource_type,
            resource_id=resource_id,
            team_id=team_id,
            meta=meta,
        )
    )
    return previous


async def remove_principal_permissions(
    db: AsyncSession,
    principal: Principal,
    permission_ids: Optional[Iterable[int]] = None,
) -> int:
    stmt = delete(principal_has_permissions).where(
        and_(
            principal_has_permissions.c.principal_type == principal.principal_type,
            principal_has_permissions.c.principal_id == principal.principal_id,
        )
    )
    if permission_ids is not None:
        stmt = stmt.where(principal_has_permissions.c.permission_id.in_(list(permission_ids)))
    result = await db.execute(stmt)
    return result.rowcount or 0


async def move_principal_grants(db: AsyncSession, from_permission_id: int, to_permission_id: int) -> int:
    """
    Re-point direct grants from one permission to another.

    Principals that already hold the target keep their existing grant.
    Returns the number of grants moved.
    """
    target = select(principal_has_permissions.c.principal_type, principal_has_permissions.c.principal_id).where(
        principal_has_permissions.c.permission_id == to_permission_id
    )
    holders = {(row.principal_type, row.principal_id) for row in (await db.execute(target)).all()}
    source = select(principal_has_permissions).where(principal_has_permissions.c.permission_id == from_permission_id)
    moved = 0
    for row in (await db.execute(source)).all():
        if (row.principal_type, row.principal_id) in holders:
            continue
        await db.execute(
            update(principal_has_permissions)
            .where(
                and_(
                    principal_has_permissions.c.permission_id == from_permission_id,
                    principal_has_permissions.c.principal_type == row.principal_type,
                    principal_has_permissions.c.principal_id == row.principal_id,
                )
            )
            .values(permission_id=to_permission_id)
        )
        moved += 1
    return moved


async def delete_expired_grants(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Physically remove direct grants whose expiry has passed.

    Expiry is compared in Python so that naive SQLite datetimes and aware
    PostgreSQL ones behave the same.
    """
    now = now or utc_now()
    stmt = select(
        principal_has_permissions.c.permission_id,
        principal_has_permissions.c.principal_type,
        principal_has_permissions.c.principal_id,
        principal_has_permissions.c.expires_at,
    ).where(principal_has_permissions.c.expires_at.is_not(None))
    result = await db.execute(stmt)
    removed = 0
    for row in result.all():
        if not is_past(row.expires_at, now):
            continue
        await db.execute(
            delete(principal_has_permissions).where(
                and_(
                    principal_has_permissions.c.permission_id == row.permission_id,
                    principal_has_permissions.c.principal_type == row.principal_type,
                    principal_has_permissions.c.principal_id == row.principal_id,
                )
            )
        )
        removed += 1
    return removed


async def role_assignment_counts(db: AsyncSession) -> Dict[int, int]:
    """Number of principals holding each role."""
    stmt = select(principal_has_roles.c.role_id, func.count()).group_by(principal_has_roles.c.role_id)
    result = await db.execute(stmt)
    return {role_id: count for role_id, count in result.all()}


# ============================================================================
# Catalog
# ============================================================================

async def load_catalog(db: AsyncSession) -> CatalogSnapshot:
    """Read every permission (with its role ids) and every role."""
    permissions_result = await db.execute(select(Permission).order_by(Permission.id))
    roles_result = await db.execute(select(Role).order_by(Role.id))
    edges_result = await db.execute(select(role_has_permissions.c.permission_id, role_has_permissions.c.role_id))

    grants: Dict[int, List[int]] = {}
    for permission_id, role_id in edges_result.all():
        grants.setdefault(permission_id, []).append(role_id)

    permissions = []
    for permission in permissions_result.scalars().all():
        record = PermissionRecord.model_validate(permission)
        record.role_ids = sorted(grants.get(permission.id, []))
        permissions.append(record)
    roles = [RoleRecord.model_validate(role) for role in roles_result.scalars().all()]

    log.debug("Loaded catalog: %d permissions, %d roles", len(permissions), len(roles))
    return CatalogSnapshot(permissions=permissions, roles=roles, loaded_at=utc_now())
