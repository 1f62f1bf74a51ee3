"""
Role hierarchy resolver.

Roles form a forest through their parent pointer. ``RoleHierarchy`` answers
lineage questions over an in-memory parent map: ancestors, descendants,
depth and effective (inherited) permissions. It is also the write-time guard
that rejects a parent assignment creating a cycle or an over-deep chain.

Every walk is bounded by ``max_hops``. Hitting the bound, or seeing a role
twice, is treated as a detected cycle: strict walks raise
``CircularHierarchy``, lenient walks log a warning and stop.
"""
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set

from rbac_engine.core.exceptions import CircularHierarchy, HierarchyTooDeep
from rbac_engine.features.permissions.schemas import CatalogSnapshot
from rbac_engine.utils import get_logger


log = get_logger(__name__)


class RoleHierarchy:
    def __init__(
        self,
        parents: Mapping[int, Optional[int]],
        grants: Optional[Mapping[int, Iterable[int]]] = None,
        names: Optional[Mapping[int, str]] = None,
        max_hops: int = 100,
        hierarchical: bool = True,
    ):
        self.parents: Dict[int, Optional[int]] = dict(parents)
        self.grants: Dict[int, Set[int]] = {rid: set(pids) for rid, pids in (grants or {}).items()}
        self.names: Dict[int, str] = dict(names or {})
        self.max_hops = max_hops
        self.hierarchical = hierarchical

        self.children: Dict[int, List[int]] = {}
        for child, parent in sorted(self.parents.items()):
            if parent is not None:
                self.children.setdefault(parent, []).append(child)

    @classmethod
    def from_snapshot(cls, snapshot: CatalogSnapshot, max_hops: int = 100, hierarchical: bool = True) -> "RoleHierarchy":
        grants: Dict[int, Set[int]] = {}
        for permission in snapshot.permissions:
            for role_id in permission.role_ids:
                grants.setdefault(role_id, set()).add(permission.id)
        return cls(
            parents={role.id: role.parent_id for role in snapshot.roles},
            grants=grants,
            names={role.id: role.name for role in snapshot.roles},
            max_hops=max_hops,
            hierarchical=hierarchical,
        )

    def label(self, role_id: int) -> str:
        return self.names.get(role_id, f"#{role_id}")

    # ------------------------------------------------------------------
    # Lineage
    # ------------------------------------------------------------------

    def ancestors(self, role_id: int, strict: bool = False) -> Iterator[int]:
        """
        Yield the parent chain of a role, nearest first.

        The role itself is never yielded. A recurring role or a chain longer
        than ``max_hops`` ends the walk (strict: raises CircularHierarchy).
        """
        seen = {role_id}
        path = [role_id]
        current = self.parents.get(role_id)
        hops = 0
        while current is not None:
            hops += 1
            if current in seen or hops > self.max_hops:
                path.append(current)
                if strict:
                    raise CircularHierarchy(self.label(role_id), path=[self.label(r) for r in path])
                log.warning(f"Circular or runaway hierarchy above role {self.label(role_id)}: {path}")
                return
            seen.add(current)
            path.append(current)
            yield current
            current = self.parents.get(current)

    def descendants(self, role_id: int) -> Iterator[int]:
        """Yield every role below this one, breadth first, each once."""
        seen = {role_id}
        frontier = [role_id]
        level = 0
        while frontier and level < self.max_hops:
            level += 1
            following = []
            for current in frontier:
                for child in self.children.get(current, []):
                    if child in seen:
                        continue
                    seen.add(child)
                    following.append(child)
                    yield child
            frontier = following

    def depth(self, role_id: int) -> int:
        """Hops from the role to its root. A root has depth 0."""
        return sum(1 for _ in self.ancestors(role_id))

    def subtree_height(self, role_id: int) -> int:
        """Longest downward chain below a role, in hops."""
        height = 0
        frontier = [role_id]
        seen = {role_id}
        while frontier and height < self.max_hops:
            following = [c for r in frontier for c in self.children.get(r, []) if c not in seen]
            if not following:
                break
            seen.update(following)
            frontier = following
            height += 1
        return height

    def find_cycle(self, role_id: int) -> Optional[List[int]]:
        """Return the visited path if the role's parent chain loops, else None."""
        visited: List[int] = []
        current: Optional[int] = role_id
        while current is not None:
            if current in visited or len(visited) > self.max_hops:
                return visited
            visited.append(current)
            current = self.parents.get(current)
        return None

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def effective_permission_ids(self, role_id: int) -> Set[int]:
        """Own grants plus, when inheritance is on, every ancestor's grants."""
        permission_ids = set(self.grants.get(role_id, ()))
        if not self.hierarchical:
            return permission_ids
        for ancestor in self.ancestors(role_id):
            permission_ids |= self.grants.get(ancestor, set())
        return permission_ids

    def lineage(self, role_ids: Iterable[int]) -> Set[int]:
        """The given roles plus their ancestors when inheritance is on."""
        result: Set[int] = set()
        for role_id in role_ids:
            result.add(role_id)
            if self.hierarchical:
                result.update(self.ancestors(role_id))
        return result

    # ------------------------------------------------------------------
    # Write-time guard
    # ------------------------------------------------------------------

    def check_parent(
        self,
        role_id: int,
        parent_id: Optional[int],
        max_depth: Optional[int] = None,
    ) -> int:
        """
        Validate ``parent_id`` as the new parent of ``role_id``.

        Returns the depth the role would have. Raises CircularHierarchy if the
        role appears in the candidate's ancestor chain, and HierarchyTooDeep
        when ``max_depth`` is given and the role or any descendant would sit
        deeper than it. Nothing is changed.
        """
        if parent_id is None:
            new_depth = 0
        else:
            role, parent = self.label(role_id), self.label(parent_id)
            if parent_id == role_id:
                raise CircularHierarchy(role, parent, path=[role, role])
            chain = [parent_id]
            for ancestor in self.ancestors(parent_id, strict=True):
                chain.append(ancestor)
                if ancestor == role_id:
                    break
            if role_id in chain:
                raise CircularHierarchy(role, parent, path=[role] + [self.label(r) for r in chain])
            new_depth = len(chain)

        if max_depth is not None:
            deepest = new_depth + self.subtree_height(role_id)
            if deepest > max_depth:
                raise HierarchyTooDeep(self.label(role_id), deepest, max_depth)
        return new_depth
