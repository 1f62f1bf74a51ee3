"""
Pydantic schemas for conflict detection reports.
"""
from enum import Enum
from typing import List, Literal, Optional, Tuple
from pydantic import BaseModel


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CircularHierarchyConflict(BaseModel):
    type: Literal["circular_hierarchy"] = "circular_hierarchy"
    role_id: int
    role_name: str
    guard_name: str
    circular_path: List[int]
    severity: Severity = Severity.HIGH


class ConflictingPermissionsConflict(BaseModel):
    type: Literal["conflicting_permissions"] = "conflicting_permissions"
    role_id: int
    role_name: str
    guard_name: str
    pattern: Tuple[str, str]
    conflicting_permissions: List[str]
    severity: Severity = Severity.MEDIUM


class OrphanedRoleConflict(BaseModel):
    type: Literal["orphaned_role"] = "orphaned_role"
    role_id: int
    role_name: str
    guard_name: str
    severity: Severity = Severity.LOW


class DuplicateMember(BaseModel):
    id: int
    name: str
    description: Optional[str] = None


class DuplicatePermissionsConflict(BaseModel):
    type: Literal["duplicate_permissions"] = "duplicate_permissions"
    pattern: str
    guard_name: str
    team_id: Optional[int] = None
    permissions: List[DuplicateMember]
    severity: Severity = Severity.LOW


class HierarchyTooDeepConflict(BaseModel):
    type: Literal["hierarchy_too_deep"] = "hierarchy_too_deep"
    role_id: int
    role_name: str
    guard_name: str
    depth: int
    max_allowed: int
    severity: Severity = Severity.MEDIUM


class ConflictReport(BaseModel):
    """Findings of one detection pass, by category."""
    circular_role_hierarchies: List[CircularHierarchyConflict] = []
    conflicting_permissions: List[ConflictingPermissionsConflict] = []
    orphaned_roles: List[OrphanedRoleConflict] = []
    duplicate_permissions: List[DuplicatePermissionsConflict] = []
    invalid_role_hierarchies: List[HierarchyTooDeepConflict] = []

    def conflicts(self) -> list:
        """Every finding, in category order."""
        return [
            *self.circular_role_hierarchies,
            *self.conflicting_permissions,
            *self.orphaned_roles,
            *self.duplicate_permissions,
            *self.invalid_role_hierarchies,
        ]

    @property
    def total(self) -> int:
        return len(self.conflicts())

    @property
    def has_conflicts(self) -> bool:
        return self.total > 0

    def count_by_severity(self) -> dict:
        counts = {severity.value: 0 for severity in Severity}
        for conflict in self.conflicts():
            counts[conflict.severity.value] += 1
        return counts


class AutoFixResponse(BaseModel):
    """Outcome messages of an auto-fix pass, one per finding."""
    messages: List[str]
