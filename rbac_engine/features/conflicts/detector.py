"""
Conflict detection over the whole catalog.

Batch analysis, off the resolution path. Reads straight from the store so
that it sees rows written by bulk imports or by hand, and reports:
- circular role hierarchies (high)
- roles holding both sides of a mutually exclusive permission pattern (medium)
- orphaned roles: no principal assignments and no children (low)
- duplicate permissions by normalized name signature (low)
- hierarchies deeper than the configured maximum (medium)

``auto_fix`` only deletes orphaned roles and merges duplicate permissions.
Everything else is reported for manual resolution.
"""
import re
from typing import Dict, List, Optional, Tuple

from rbac_engine.core.config import PermissionConfig
from rbac_engine.core.database.engine import EntityStore
from rbac_engine.core.exceptions import PermissionEngineError
from rbac_engine.features.conflicts.schemas import (
    CircularHierarchyConflict,
    ConflictingPermissionsConflict,
    ConflictReport,
    DuplicateMember,
    DuplicatePermissionsConflict,
    HierarchyTooDeepConflict,
    OrphanedRoleConflict,
)
from rbac_engine.features.permissions import store
from rbac_engine.features.permissions.hierarchy import RoleHierarchy
from rbac_engine.features.permissions.refs import ByID
from rbac_engine.features.permissions.schemas import CatalogSnapshot, PermissionRecord
from rbac_engine.features.permissions.service import PermissionService
from rbac_engine.utils import get_logger


log = get_logger(__name__)


def name_signature(name: str) -> str:
    """Lowercase, drop everything but letters and whitespace, sort the words."""
    letters = re.sub(r"[^a-z\s]", "", name.lower())
    return " ".join(sorted(letters.split()))


def matches_pattern(name: str, pattern: str) -> bool:
    """Case-insensitive full match where ``*`` stands for any run of characters."""
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, name, flags=re.IGNORECASE) is not None


class ConflictDetector:
    def __init__(self, store: EntityStore, config: PermissionConfig, service: Optional[PermissionService] = None):
        self.store = store
        self.config = config
        self.service = service

    async def detect(self) -> ConflictReport:
        async with self.store.session() as db:
            snapshot = await store.load_catalog(db)
            assignments = await store.role_assignment_counts(db)
        report = self.analyse(snapshot, assignments)
        log.info(f"Conflict detection found {report.total} issue(s): {report.count_by_severity()}")
        return report

    def analyse(self, snapshot: CatalogSnapshot, assignments: Dict[int, int]) -> ConflictReport:
        """Run every check over an already loaded catalog."""
        hierarchy = RoleHierarchy.from_snapshot(snapshot, max_hops=self.config.max_hops)
        circular = self._circular(snapshot, hierarchy)
        cyclic_ids = {c.role_id for c in circular}
        return ConflictReport(
            circular_role_hierarchies=circular,
            conflicting_permissions=self._conflicting(snapshot),
            orphaned_roles=self._orphaned(snapshot, hierarchy, assignments),
            duplicate_permissions=self._duplicates(snapshot),
            invalid_role_hierarchies=self._too_deep(snapshot, hierarchy, cyclic_ids),
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _circular(self, snapshot: CatalogSnapshot, hierarchy: RoleHierarchy) -> List[CircularHierarchyConflict]:
        found = []
        for role in snapshot.roles:
            if role.parent_id is None:
                continue
            path = hierarchy.find_cycle(role.id)
            if path is not None:
                found.append(CircularHierarchyConflict(
                    role_id=role.id,
                    role_name=role.name,
                    guard_name=role.guard_name,
                    circular_path=path,
                ))
        return found

    def _conflicting(self, snapshot: CatalogSnapshot) -> List[ConflictingPermissionsConflict]:
        names_by_role: Dict[int, List[str]] = {}
        for permission in snapshot.permissions:
            for role_id in permission.role_ids:
                names_by_role.setdefault(role_id, []).append(permission.name)

        found = []
        for role in snapshot.roles:
            names = sorted(names_by_role.get(role.id, []))
            for first, second in self.config.exclusive_permission_patterns:
                left = [n for n in names if matches_pattern(n, first)]
                right = [n for n in names if matches_pattern(n, second)]
                if left and right:
                    found.append(ConflictingPermissionsConflict(
                        role_id=role.id,
                        role_name=role.name,
                        guard_name=role.guard_name,
                        pattern=(first, second),
                        conflicting_permissions=sorted(set(left + right)),
                    ))
        return found

    def _orphaned(
        self,
        snapshot: CatalogSnapshot,
        hierarchy: RoleHierarchy,
        assignments: Dict[int, int],
    ) -> List[OrphanedRoleConflict]:
        return [
            OrphanedRoleConflict(role_id=role.id, role_name=role.name, guard_name=role.guard_name)
            for role in snapshot.roles
            if not assignments.get(role.id) and not hierarchy.children.get(role.id)
        ]

    def _duplicates(self, snapshot: CatalogSnapshot) -> List[DuplicatePermissionsConflict]:
        groups: Dict[Tuple[str, Optional[int], str], List[PermissionRecord]] = {}
        for permission in snapshot.permissions:
            signature = name_signature(permission.name)
            if not signature:
                continue
            groups.setdefault((permission.guard_name, permission.team_id, signature), []).append(permission)

        found = []
        for (guard, team_id, signature), members in groups.items():
            if len(members) < 2:
                continue
            members = sorted(members, key=lambda p: p.id)
            found.append(DuplicatePermissionsConflict(
                pattern=signature,
                guard_name=guard,
                team_id=team_id,
                permissions=[DuplicateMember(id=p.id, name=p.name, description=p.description) for p in members],
            ))
        return found

    def _too_deep(
        self,
        snapshot: CatalogSnapshot,
        hierarchy: RoleHierarchy,
        cyclic_ids: set,
    ) -> List[HierarchyTooDeepConflict]:
        found = []
        for role in snapshot.roles:
            if role.id in cyclic_ids:
                continue
            depth = hierarchy.depth(role.id)
            if depth > self.config.max_depth:
                found.append(HierarchyTooDeepConflict(
                    role_id=role.id,
                    role_name=role.name,
                    guard_name=role.guard_name,
                    depth=depth,
                    max_allowed=self.config.max_depth,
                ))
        return found

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def auto_fix(self, report: ConflictReport, actor: Optional[str] = None) -> List[str]:
        """
        Remediate the safe categories and return one message per finding.

        Orphaned roles are deleted; duplicate permissions are merged into the
        lowest id. Circular hierarchies, exclusive pattern violations and
        over-deep hierarchies are left alone.
        """
        if self.service is None:
            raise RuntimeError("auto_fix needs a PermissionService")

        messages = []
        for conflict in report.conflicts():
            try:
                if isinstance(conflict, OrphanedRoleConflict):
                    await self.service.delete_role(ByID(conflict.role_id), guard=conflict.guard_name, actor=actor)
                    messages.append(f"Deleted orphaned role: {conflict.role_name}")
                elif isinstance(conflict, DuplicatePermissionsConflict):
                    ids = [member.id for member in conflict.permissions]
                    await self.service.merge_permissions(ids[0], ids[1:], actor=actor)
                    messages.append(f"Merged duplicate permissions for pattern: {conflict.pattern}")
                else:
                    messages.append(f"Manual intervention required for: {conflict.type}")
            except PermissionEngineError as e:
                log.warning(f"Auto-fix failed for {conflict.type}: {e}")
                messages.append(f"Failed to fix {conflict.type}: {e}")
        return messages
