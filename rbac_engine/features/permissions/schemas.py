"""
Pydantic schemas for the permission engine.

Request models for catalog writes, read-only records that make up the cached
catalog snapshot, principal/context value types, and bulk operation results.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from rbac_engine.utils import ensure_utc, is_past


def coerce_id(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return str(value)
    return value


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    name: str = Field(..., min_length=1, max_length=255, description="Permission name, unique per guard/team")
    guard_name: Optional[str] = Field(None, max_length=100, description="Guard namespace (default guard if omitted)")
    description: Optional[str] = Field(None, max_length=1000)
    group: Optional[str] = Field(None, max_length=100, description="Organizational tag")
    resource_type: Optional[str] = Field(None, max_length=100)
    resource_id: Optional[str] = Field(None, max_length=64)
    expires_at: Optional[datetime] = None
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None

    @field_validator("resource_id", mode="before")
    @classmethod
    def coerce_resource_id(cls, v: Any) -> Any:
        return coerce_id(v)

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Permission name must not be blank")
        return v


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""

    @model_validator(mode="after")
    def resource_scope_complete(self) -> "PermissionCreate":
        if bool(self.resource_type) != bool(self.resource_id):
            raise ValueError("resource_type and resource_id must be given together")
        return self


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. Guard and team are fixed at creation."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    group: Optional[str] = Field(None, max_length=100)
    resource_type: Optional[str] = Field(None, max_length=100)
    resource_id: Optional[str] = Field(None, max_length=64)
    expires_at: Optional[datetime] = None
    meta: Optional[Dict[str, Any]] = None

    @field_validator("resource_id", mode="before")
    @classmethod
    def coerce_resource_id(cls, v: Any) -> Any:
        return coerce_id(v)

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("name")
    @classmethod
    def name_not_null(cls, v: Optional[str]) -> str:
        # Only runs for an explicitly sent value
        if v is None or not v.strip():
            raise ValueError("Permission name must not be blank")
        return v

    @model_validator(mode="after")
    def resource_scope_together(self) -> "PermissionUpdate":
        given = {"resource_type", "resource_id"} & self.model_fields_set
        if len(given) == 1:
            raise ValueError("resource_type and resource_id must be updated together")
        if given and bool(self.resource_type) != bool(self.resource_id):
            raise ValueError("resource_type and resource_id must be given together")
        return self


class PermissionRecord(BaseModel):
    """Read-only view of a permission as held in the catalog snapshot."""
    id: int
    name: str
    guard_name: str
    description: Optional[str] = None
    group: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None
    role_ids: List[int] = []

    model_config = ConfigDict(from_attributes=True)

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_resource_permission(self) -> bool:
        return bool(self.resource_type) and bool(self.resource_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return is_past(self.expires_at, now)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=255, description="Role name, unique per guard/team")
    guard_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Role name must not be blank")
        return v


class RoleCreate(RoleBase):
    """Schema for creating a new role. The parent is wired through the hierarchy guard."""
    parent_id: Optional[int] = None


class RoleUpdate(BaseModel):
    """Schema for updating a role. Use set_parent to move it in the hierarchy."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    meta: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def name_not_null(cls, v: Optional[str]) -> str:
        if v is None or not v.strip():
            raise ValueError("Role name must not be blank")
        return v


class RoleRecord(BaseModel):
    """Read-only view of a role as held in the catalog snapshot."""
    id: int
    name: str
    guard_name: str
    description: Optional[str] = None
    parent_id: Optional[int] = None
    level: int = 0
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Catalog Snapshot
# ============================================================================

class CatalogSnapshot(BaseModel):
    """
    Every permission with its role associations, plus every role.

    This is what the cache layer stores. Consumers get deep copies.
    """
    permissions: List[PermissionRecord] = []
    roles: List[RoleRecord] = []
    loaded_at: Optional[datetime] = None

    def for_team(self, team_id: Optional[int]) -> "CatalogSnapshot":
        """Restrict the snapshot to one team's permissions and roles."""
        roles = [r for r in self.roles if r.team_id == team_id]
        visible = {r.id for r in roles}
        permissions = []
        for permission in self.permissions:
            if permission.team_id != team_id:
                continue
            permission.role_ids = [rid for rid in permission.role_ids if rid in visible]
            permissions.append(permission)
        return CatalogSnapshot(permissions=permissions, roles=roles, loaded_at=self.loaded_at)


# ============================================================================
# Principal and Query Context
# ============================================================================

class Principal(BaseModel):
    """
    Anything that can hold roles and permissions.

    Principals are owned by the host application and referenced by type and
    id. The id must belong to an already persisted entity.
    """
    principal_type: str = Field(..., min_length=1, max_length=100)
    principal_id: str = Field(..., min_length=1, max_length=64)
    guard_name: Optional[str] = None
    team_id: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("principal_id", mode="before")
    @classmethod
    def coerce_principal_id(cls, v: Any) -> Any:
        return coerce_id(v)


class ResourceScope(BaseModel):
    """The single resource instance a permission check is about."""
    resource_type: str = Field(..., min_length=1, max_length=100)
    resource_id: str = Field(..., min_length=1, max_length=64)

    model_config = ConfigDict(frozen=True)

    @field_validator("resource_id", mode="before")
    @classmethod
    def coerce_resource_id(cls, v: Any) -> Any:
        return coerce_id(v)


class DirectGrant(BaseModel):
    """A principal <-> permission edge."""
    permission_id: int
    expires_at: Optional[datetime] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("resource_id", mode="before")
    @classmethod
    def coerce_resource_id(cls, v: Any) -> Any:
        return coerce_id(v)

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return is_past(self.expires_at, now)


# ============================================================================
# Bulk Results
# ============================================================================

class BulkItemResult(BaseModel):
    """Outcome for one item of a batch."""
    item: str
    ok: bool
    entity_id: Optional[int] = None
    error: Optional[str] = None


class BulkResult(BaseModel):
    """Per-item outcome of a batch; failed items are enumerable."""
    items: List[BulkItemResult] = []

    @property
    def succeeded(self) -> List[BulkItemResult]:
        return [i for i in self.items if i.ok]

    @property
    def failed(self) -> List[BulkItemResult]:
        return [i for i in self.items if not i.ok]


# ============================================================================
# HTTP Schemas
# ============================================================================

class SetParentRequest(BaseModel):
    """Schema for moving a role under a parent (null detaches it)."""
    parent_id: Optional[int] = None


class GrantPermissionsRequest(BaseModel):
    """Schema for granting several permissions to a role at once."""
    permissions: List[str | int] = Field(..., min_length=1)


class AssignRoleRequest(BaseModel):
    """Schema for assigning a role to a principal."""
    principal: Principal
    role: str | int


class GrantDirectPermissionRequest(BaseModel):
    """Schema for granting a permission straight to a principal."""
    principal: Principal
    permission: str | int
    expires_at: Optional[datetime] = None
    resource: Optional[ResourceScope] = None


class PermissionCheckRequest(BaseModel):
    """Schema for checking if a principal has permissions."""
    principal: Principal
    permissions: List[str] = Field(..., min_length=1)
    require_all: bool = False
    resource: Optional[ResourceScope] = None


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    allowed: bool
    permissions: List[str]


class PrincipalPermissionsResponse(BaseModel):
    """Everything a principal can exercise."""
    principal: Principal
    roles: List[str] = []
    direct_permissions: List[PermissionRecord] = []
    all_permissions: List[PermissionRecord] = []
