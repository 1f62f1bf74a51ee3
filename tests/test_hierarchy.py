"""Tests for the in-memory role hierarchy."""

import pytest

from rbac_engine.core.exceptions import CircularHierarchy, HierarchyTooDeep
from rbac_engine.features.permissions.hierarchy import RoleHierarchy


def chain(length: int) -> RoleHierarchy:
    """Roles 1..length where each role's parent is the previous one."""
    parents = {1: None}
    for role_id in range(2, length + 1):
        parents[role_id] = role_id - 1
    return RoleHierarchy(parents, names={r: f"role{r}" for r in parents})


class TestLineage:
    """Ancestors, descendants and depth."""

    def test_ancestors_nearest_first(self):
        hierarchy = chain(4)
        assert list(hierarchy.ancestors(4)) == [3, 2, 1]
        assert list(hierarchy.ancestors(1)) == []

    def test_ancestors_never_contain_the_role(self):
        hierarchy = RoleHierarchy({1: 2, 2: 3, 3: 1})
        for role_id in (1, 2, 3):
            assert role_id not in list(hierarchy.ancestors(role_id))

    def test_strict_walk_raises_on_cycle(self):
        hierarchy = RoleHierarchy({1: 2, 2: 1})
        with pytest.raises(CircularHierarchy):
            list(hierarchy.ancestors(1, strict=True))

    def test_walk_is_bounded_by_max_hops(self):
        parents = {1: None}
        for role_id in range(2, 20):
            parents[role_id] = role_id - 1
        hierarchy = RoleHierarchy(parents, max_hops=5)
        assert len(list(hierarchy.ancestors(19))) == 5
        with pytest.raises(CircularHierarchy):
            list(hierarchy.ancestors(19, strict=True))

    def test_descendants_breadth_first(self):
        hierarchy = RoleHierarchy({1: None, 2: 1, 3: 1, 4: 2, 5: 4})
        assert list(hierarchy.descendants(1)) == [2, 3, 4, 5]
        assert list(hierarchy.descendants(5)) == []

    def test_depth_and_subtree_height(self):
        hierarchy = chain(4)
        assert hierarchy.depth(1) == 0
        assert hierarchy.depth(4) == 3
        assert hierarchy.subtree_height(1) == 3
        assert hierarchy.subtree_height(4) == 0

    def test_find_cycle(self):
        assert RoleHierarchy({1: 2, 2: 1}).find_cycle(1) == [1, 2]
        assert chain(3).find_cycle(3) is None


class TestEffectivePermissions:
    """Permission inheritance from ancestors."""

    def test_child_inherits_parent_grants(self):
        hierarchy = RoleHierarchy({1: None, 2: 1}, grants={1: [10], 2: [20]})
        assert hierarchy.effective_permission_ids(2) == {10, 20}
        assert hierarchy.effective_permission_ids(1) == {10}

    def test_inheritance_disabled(self):
        hierarchy = RoleHierarchy({1: None, 2: 1}, grants={1: [10], 2: [20]}, hierarchical=False)
        assert hierarchy.effective_permission_ids(2) == {20}
        assert hierarchy.lineage([2]) == {2}

    def test_cycle_does_not_hang_resolution(self):
        hierarchy = RoleHierarchy({1: 2, 2: 1}, grants={1: [10], 2: [20]})
        assert hierarchy.effective_permission_ids(1) == {10, 20}


class TestCheckParent:
    """Write-time validation of a new parent pointer."""

    def test_self_parent_rejected(self):
        with pytest.raises(CircularHierarchy):
            chain(2).check_parent(1, 1)

    def test_descendant_as_parent_rejected(self):
        hierarchy = chain(3)
        with pytest.raises(CircularHierarchy) as exc_info:
            hierarchy.check_parent(1, 3)
        assert exc_info.value.path[0] == "role1"

    def test_returns_new_depth(self):
        hierarchy = RoleHierarchy({1: None, 2: 1, 3: None})
        assert hierarchy.check_parent(3, 2) == 2
        assert hierarchy.check_parent(3, None) == 0

    def test_depth_counts_the_subtree_being_moved(self):
        # 1 <- 2 <- 3 and a separate 10 <- 11 <- 12
        hierarchy = RoleHierarchy({1: None, 2: 1, 3: 2, 10: None, 11: 10, 12: 11})
        assert hierarchy.check_parent(10, 3, max_depth=5) == 3
        with pytest.raises(HierarchyTooDeep) as exc_info:
            hierarchy.check_parent(10, 3, max_depth=4)
        assert exc_info.value.depth == 5

    def test_depth_ignored_without_max(self):
        assert chain(30).check_parent(30, 29) == 29
