"""
Pydantic schemas for catalog import/export.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, field_validator

from rbac_engine.features.permissions.schemas import coerce_id


class PermissionExport(BaseModel):
    """One permission in an export document; ``roles`` are role names."""
    name: str = Field(..., min_length=1, max_length=255)
    guard_name: Optional[str] = None
    description: Optional[str] = None
    group: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None
    roles: List[str] = []

    @field_validator("resource_id", mode="before")
    @classmethod
    def coerce_resource_id(cls, v: Any) -> Any:
        return coerce_id(v)


class RoleExport(BaseModel):
    """One role in an export document; ``parent`` and ``permissions`` are names."""
    name: str = Field(..., min_length=1, max_length=255)
    guard_name: Optional[str] = None
    description: Optional[str] = None
    parent: Optional[str] = None
    level: int = 0
    meta: Optional[Dict[str, Any]] = None
    team_id: Optional[int] = None
    permissions: List[str] = []


class CatalogExport(BaseModel):
    """The import/export document."""
    permissions: List[PermissionExport] = []
    roles: List[RoleExport] = []


class ImportResult(BaseModel):
    """Per-item messages of an import, by section."""
    permissions: List[str] = []
    roles: List[str] = []

    @property
    def errors(self) -> List[str]:
        return [m for m in self.permissions + self.roles if "Error" in m]
