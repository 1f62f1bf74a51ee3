"""
References to permissions and roles.

Public operations accept a name, an id or an already loaded record. Each is
turned into a tagged reference once, at the API boundary, and resolved
against the catalog or the store from there on.
"""
from dataclasses import dataclass
from typing import Any, Union

from rbac_engine.features.permissions.models import Permission, Role
from rbac_engine.features.permissions.schemas import PermissionRecord, RoleRecord


@dataclass(frozen=True)
class ByName:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ByID:
    id: int

    def __str__(self) -> str:
        return f"#{self.id}"


@dataclass(frozen=True)
class Resolved:
    record: Union[PermissionRecord, RoleRecord]

    def __str__(self) -> str:
        return self.record.name


PermissionRef = Union[ByName, ByID, Resolved]
RoleRef = Union[ByName, ByID, Resolved]


def _ref(value: Any, record_type, model_type, kind: str):
    if isinstance(value, (ByName, ByID, Resolved)):
        return value
    if isinstance(value, record_type):
        return Resolved(value)
    if isinstance(value, model_type):
        return Resolved(record_type.model_validate(value))
    if isinstance(value, bool):
        raise TypeError(f"Cannot use {value!r} as a {kind} reference")
    if isinstance(value, int):
        return ByID(value)
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Empty {kind} name")
        return ByName(value)
    raise TypeError(f"Cannot use {type(value).__name__} as a {kind} reference")


def permission_ref(value: Any) -> PermissionRef:
    """Coerce a name, id, record or model into a permission reference."""
    return _ref(value, PermissionRecord, Permission, "permission")


def role_ref(value: Any) -> RoleRef:
    """Coerce a name, id, record or model into a role reference."""
    return _ref(value, RoleRecord, Role, "role")
