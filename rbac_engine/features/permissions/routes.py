"""
Permission management API routes.

Provides endpoints for managing permissions, roles, hierarchy, principal
assignments and for checking access. Writes require the admin permission.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, status

from rbac_engine.bootstrap import PermissionEngine
from rbac_engine.core import config
from rbac_engine.features.permissions.dependencies import (
    get_current_principal,
    get_engine,
    require_permission,
)
from rbac_engine.features.permissions.refs import ByID
from rbac_engine.features.permissions.schemas import (
    AssignRoleRequest,
    BulkResult,
    DirectGrant,
    GrantDirectPermissionRequest,
    GrantPermissionsRequest,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionRecord,
    PermissionUpdate,
    Principal,
    PrincipalPermissionsResponse,
    RoleCreate,
    RoleRecord,
    RoleUpdate,
    SetParentRequest,
)
from rbac_engine.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

Engine = Annotated[PermissionEngine, Depends(get_engine)]
Admin = Annotated[Principal, Depends(require_permission(config.ADMIN_PERMISSION))]
Caller = Annotated[Principal, Depends(get_current_principal)]


# ============================================================================
# Access Checks
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(request: PermissionCheckRequest, engine: Engine, _caller: Caller):
    """Check whether a principal holds any (or all) of the given permissions."""
    resolver = engine.resolver
    if request.require_all:
        allowed = await resolver.has_all_permissions(request.principal, request.permissions, request.resource)
    else:
        allowed = await resolver.has_any_permission(request.principal, request.permissions, request.resource)
    return PermissionCheckResponse(allowed=allowed, permissions=request.permissions)


@router.get("/principals/{principal_type}/{principal_id}", response_model=PrincipalPermissionsResponse)
async def get_principal_permissions(
    principal_type: str,
    principal_id: str,
    engine: Engine,
    _caller: Caller,
    guard: Optional[str] = None,
    team_id: Optional[int] = None,
):
    """Roles, direct permissions and effective permissions of a principal."""
    principal = Principal(principal_type=principal_type, principal_id=principal_id, guard_name=guard, team_id=team_id)
    resolver = engine.resolver
    return PrincipalPermissionsResponse(
        principal=principal,
        roles=await resolver.role_names(principal),
        direct_permissions=await resolver.direct_permissions(principal),
        all_permissions=await resolver.all_effective_permissions(principal),
    )


@router.get("/me", response_model=PrincipalPermissionsResponse)
async def get_my_permissions(engine: Engine, caller: Caller):
    """Everything the calling principal can exercise."""
    resolver = engine.resolver
    return PrincipalPermissionsResponse(
        principal=caller,
        roles=await resolver.role_names(caller),
        direct_permissions=await resolver.direct_permissions(caller),
        all_permissions=await resolver.all_effective_permissions(caller),
    )


# ============================================================================
# Principal Assignments
# ============================================================================

@router.post("/assignments/roles", response_model=BulkResult)
async def assign_role(request: AssignRoleRequest, engine: Engine, admin: Admin):
    """Assign a role to a principal (admin only)."""
    return await engine.service.assign_role(request.principal, request.role, actor=admin.principal_id)


@router.post("/assignments/roles/remove", response_model=BulkResult)
async def remove_role(request: AssignRoleRequest, engine: Engine, admin: Admin):
    """Remove a role from a principal (admin only)."""
    return await engine.service.remove_role(request.principal, request.role, actor=admin.principal_id)


@router.post("/assignments/permissions", response_model=DirectGrant, status_code=status.HTTP_201_CREATED)
async def grant_direct_permission(request: GrantDirectPermissionRequest, engine: Engine, admin: Admin):
    """Grant a permission straight to a principal (admin only)."""
    return await engine.service.give_permission_to(
        request.principal,
        request.permission,
        expires_at=request.expires_at,
        resource=request.resource,
        actor=admin.principal_id,
    )


@router.post("/assignments/permissions/revoke", response_model=BulkResult)
async def revoke_direct_permission(request: GrantDirectPermissionRequest, engine: Engine, admin: Admin):
    """Revoke a direct grant from a principal (admin only)."""
    return await engine.service.revoke_permission_from(request.principal, [request.permission], actor=admin.principal_id)


@router.post("/maintenance/purge-expired")
async def purge_expired(engine: Engine, _admin: Admin):
    """Delete expired direct grants (admin only)."""
    return {"removed": await engine.service.purge_expired_grants()}


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleRecord, status_code=status.HTTP_201_CREATED)
async def create_role(role: RoleCreate, engine: Engine, admin: Admin):
    """Create a new role (admin only)."""
    return await engine.service.create_role(role, actor=admin.principal_id)


@router.get("/roles", response_model=List[RoleRecord])
async def list_roles(
    engine: Engine,
    _caller: Caller,
    guard: Optional[str] = None,
    team_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List roles with optional filtering."""
    return await engine.service.list_roles(guard, team_id, skip, limit)


@router.get("/roles/{role_id}", response_model=RoleRecord)
async def get_role(role_id: int, engine: Engine, _caller: Caller, guard: Optional[str] = None):
    """Get a specific role by ID."""
    return await engine.service.find_role(ByID(role_id), guard)


@router.get("/roles/{role_id}/permissions", response_model=List[PermissionRecord])
async def get_role_permissions(role_id: int, engine: Engine, _caller: Caller, guard: Optional[str] = None):
    """Permissions granted directly to a role."""
    return await engine.service.role_permissions(ByID(role_id), guard)


@router.put("/roles/{role_id}", response_model=RoleRecord)
async def update_role(role_id: int, role_update: RoleUpdate, engine: Engine, admin: Admin, guard: Optional[str] = None):
    """Update a role (admin only)."""
    return await engine.service.update_role(ByID(role_id), role_update, guard, actor=admin.principal_id)


@router.put("/roles/{role_id}/parent", response_model=RoleRecord)
async def set_role_parent(role_id: int, request: SetParentRequest, engine: Engine, admin: Admin, guard: Optional[str] = None):
    """Move a role under a parent, or make it a root (admin only)."""
    parent = ByID(request.parent_id) if request.parent_id is not None else None
    return await engine.service.set_parent(ByID(role_id), parent, guard, actor=admin.principal_id)


@router.post("/roles/{role_id}/permissions", response_model=BulkResult)
async def grant_role_permissions(
    role_id: int,
    request: GrantPermissionsRequest,
    engine: Engine,
    admin: Admin,
    guard: Optional[str] = None,
):
    """Grant permissions to a role in one batch (admin only)."""
    return await engine.service.give_permissions_to_role(ByID(role_id), request.permissions, guard, actor=admin.principal_id)


@router.post("/roles/{role_id}/permissions/revoke", response_model=BulkResult)
async def revoke_role_permissions(
    role_id: int,
    request: GrantPermissionsRequest,
    engine: Engine,
    admin: Admin,
    guard: Optional[str] = None,
):
    """Revoke permissions from a role in one batch (admin only)."""
    return await engine.service.revoke_permissions_from_role(ByID(role_id), request.permissions, guard, actor=admin.principal_id)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(role_id: int, engine: Engine, admin: Admin, guard: Optional[str] = None):
    """Delete a role (admin only). Its children become roots."""
    await engine.service.delete_role(ByID(role_id), guard, actor=admin.principal_id)


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("", response_model=PermissionRecord, status_code=status.HTTP_201_CREATED)
async def create_permission(permission: PermissionCreate, engine: Engine, admin: Admin):
    """Create a new permission (admin only)."""
    return await engine.service.create_permission(permission, actor=admin.principal_id)


@router.get("", response_model=List[PermissionRecord])
async def list_permissions(
    engine: Engine,
    _caller: Caller,
    guard: Optional[str] = None,
    group: Optional[str] = None,
    team_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List permissions with optional filtering."""
    return await engine.service.list_permissions(guard, group, team_id, skip, limit)


@router.get("/groups", response_model=List[str])
async def list_groups(engine: Engine, _caller: Caller):
    """All permission groups in use."""
    return await engine.service.list_groups()


@router.get("/{permission_id}", response_model=PermissionRecord)
async def get_permission(permission_id: int, engine: Engine, _caller: Caller, guard: Optional[str] = None):
    """Get a specific permission by ID."""
    return await engine.service.find_permission(ByID(permission_id), guard)


@router.put("/{permission_id}", response_model=PermissionRecord)
async def update_permission(
    permission_id: int,
    permission_update: PermissionUpdate,
    engine: Engine,
    admin: Admin,
    guard: Optional[str] = None,
):
    """Update a permission (admin only)."""
    return await engine.service.update_permission(ByID(permission_id), permission_update, guard, actor=admin.principal_id)


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(permission_id: int, engine: Engine, admin: Admin, guard: Optional[str] = None):
    """Delete a permission and all its grants (admin only)."""
    await engine.service.delete_permission(ByID(permission_id), guard, actor=admin.principal_id)
