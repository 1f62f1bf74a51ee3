"""Tests for the mutation service."""

import asyncio

import pytest

from rbac_engine.core.exceptions import (
    CircularHierarchy,
    DuplicateEntity,
    HierarchyTooDeep,
    InvalidBulkOperation,
    RoleNotFound,
)
from rbac_engine.features.permissions.schemas import PermissionCreate, Principal, RoleCreate
from rbac_engine.features.permissions.service import PendingAssignments


class TestPermissionMutations:
    """Create, find-or-create and bulk create."""

    async def test_find_or_create_creates_once(self, engine, audit_sink):
        first = await engine.service.find_or_create_permission("view posts")
        second = await engine.service.find_or_create_permission("view posts")
        assert first.id == second.id
        assert audit_sink.types().count("permission_created") == 1
        assert len(await engine.service.list_permissions()) == 1

    async def test_duplicate_create_raises(self, engine):
        await engine.service.create_permission(PermissionCreate(name="view posts"))
        with pytest.raises(DuplicateEntity):
            await engine.service.create_permission(PermissionCreate(name="view posts"))

    async def test_bulk_create_is_all_or_nothing(self, engine):
        await engine.service.create_permission(PermissionCreate(name="view posts"))
        items = [
            PermissionCreate(name="edit posts"),
            PermissionCreate(name="view posts"),
            PermissionCreate(name="delete posts"),
        ]
        with pytest.raises(InvalidBulkOperation) as exc_info:
            await engine.service.bulk_create_permissions(items)
        failures = exc_info.value.failures
        assert [f.item for f in failures] == ["view posts"]
        names = [p.name for p in await engine.service.list_permissions()]
        assert names == ["view posts"]

    async def test_bulk_create_rejects_repeats_within_batch(self, engine):
        items = [PermissionCreate(name="edit posts"), PermissionCreate(name="edit posts")]
        with pytest.raises(InvalidBulkOperation):
            await engine.service.bulk_create_permissions(items)
        assert await engine.service.list_permissions() == []

    async def test_bulk_create_roles(self, engine, audit_sink):
        result = await engine.service.bulk_create_roles([RoleCreate(name="viewer"), RoleCreate(name="editor")])
        assert [item.item for item in result.items] == ["viewer", "editor"]
        assert audit_sink.types() == ["role_created", "role_created"]

        with pytest.raises(InvalidBulkOperation) as exc_info:
            await engine.service.bulk_create_roles([RoleCreate(name="admin"), RoleCreate(name="editor")])
        assert [f.item for f in exc_info.value.failures] == ["editor"]
        assert [r.name for r in await engine.service.list_roles()] == ["viewer", "editor"]

    async def test_batch_size_cap(self, build, config):
        engine = build(config.model_copy(update={"bulk_batch_size": 2}))
        items = [PermissionCreate(name=f"perm {i}") for i in range(3)]
        with pytest.raises(InvalidBulkOperation):
            await engine.service.bulk_create_permissions(items)

    async def test_bulk_role_grant_names_every_failure(self, engine):
        await engine.service.create_permission(PermissionCreate(name="edit posts"))
        await engine.service.create_role(RoleCreate(name="editor"))
        with pytest.raises(InvalidBulkOperation) as exc_info:
            await engine.service.give_permissions_to_role("editor", ["edit posts", "nope", "missing"])
        assert [f.item for f in exc_info.value.failures] == ["nope", "missing"]
        assert await engine.service.role_permissions("editor") == []

    async def test_grant_twice_reports_already_granted(self, engine):
        await engine.service.create_permission(PermissionCreate(name="edit posts"))
        await engine.service.create_role(RoleCreate(name="editor"))
        await engine.service.give_permissions_to_role("editor", ["edit posts"])
        result = await engine.service.give_permissions_to_role("editor", ["edit posts"])
        assert result.items[0].ok is True
        assert result.items[0].error == "already granted"
        assert len(result.succeeded) == 1
        assert result.failed == []


class TestConcurrentCreates:
    """Two writers racing for the same (name, guard, team)."""

    async def test_concurrent_create_permission_leaves_one_row(self, engine):
        results = await asyncio.gather(
            engine.service.create_permission(PermissionCreate(name="view posts")),
            engine.service.create_permission(PermissionCreate(name="view posts")),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateEntity)
        assert len(await engine.service.list_permissions()) == 1

    async def test_concurrent_create_role_leaves_one_row(self, engine):
        results = await asyncio.gather(
            *(engine.service.create_role(RoleCreate(name="editor")) for _ in range(3)),
            return_exceptions=True,
        )
        assert sum(isinstance(r, DuplicateEntity) for r in results) == 2
        assert len(await engine.service.list_roles()) == 1

    async def test_concurrent_find_or_create_permission_agrees(self, engine, audit_sink):
        first, second = await asyncio.gather(
            engine.service.find_or_create_permission("view posts"),
            engine.service.find_or_create_permission("view posts"),
        )
        assert first.id == second.id
        assert len(await engine.service.list_permissions()) == 1
        assert audit_sink.types().count("permission_created") == 1

    async def test_concurrent_find_or_create_role_agrees(self, engine):
        records = await asyncio.gather(*(engine.service.find_or_create_role("editor") for _ in range(3)))
        assert len({r.id for r in records}) == 1
        assert len(await engine.service.list_roles()) == 1


class TestHierarchyMutations:
    """Parent assignment, depth limits and deletion."""

    async def test_circular_parent_rejected_and_unchanged(self, engine):
        service = engine.service
        await service.create_role(RoleCreate(name="director"))
        await service.create_role(RoleCreate(name="manager"))
        await service.set_parent("manager", "director")

        with pytest.raises(CircularHierarchy):
            await service.set_parent("director", "manager")

        director = await service.find_role("director")
        manager = await service.find_role("manager")
        assert director.parent_id is None
        assert manager.parent_id == director.id
        assert manager.level == 1

    async def test_create_with_parent(self, engine):
        director = await engine.service.create_role(RoleCreate(name="director"))
        manager = await engine.service.create_role(RoleCreate(name="manager", parent_id=director.id))
        assert manager.parent_id == director.id
        assert manager.level == 1

    async def test_depth_limit_enforced(self, build, config):
        engine = build(config.model_copy(update={"max_depth": 2}))
        service = engine.service
        for name in ("r0", "r1", "r2", "r3"):
            await service.create_role(RoleCreate(name=name))
        await service.set_parent("r1", "r0")
        await service.set_parent("r2", "r1")
        with pytest.raises(HierarchyTooDeep):
            await service.set_parent("r3", "r2")
        assert (await service.find_role("r3")).parent_id is None

    async def test_depth_limit_can_be_disabled(self, build, config):
        engine = build(config.model_copy(update={"max_depth": 1, "enforce_max_depth": False}))
        for name in ("r0", "r1", "r2"):
            await engine.service.create_role(RoleCreate(name=name))
        await engine.service.set_parent("r1", "r0")
        record = await engine.service.set_parent("r2", "r1")
        assert record.level == 2

    async def test_clear_parent(self, engine):
        await engine.service.create_role(RoleCreate(name="director"))
        await engine.service.create_role(RoleCreate(name="manager"))
        await engine.service.set_parent("manager", "director")
        record = await engine.service.clear_parent("manager")
        assert record.parent_id is None
        assert record.level == 0

    async def test_delete_role_makes_children_roots(self, engine, alice):
        service = engine.service
        await service.create_role(RoleCreate(name="director"))
        await service.create_role(RoleCreate(name="manager"))
        await service.set_parent("manager", "director")
        await service.assign_role(alice, "director")

        await service.delete_role("director")

        with pytest.raises(RoleNotFound):
            await service.find_role("director")
        assert (await service.find_role("manager")).parent_id is None
        assert await engine.resolver.roles(alice) == []

    async def test_clone_role_copies_grants(self, engine):
        service = engine.service
        await service.create_permission(PermissionCreate(name="edit posts"))
        await service.create_role(RoleCreate(name="editor", description="Edits"))
        await service.give_permissions_to_role("editor", ["edit posts"])

        clone = await service.clone_role("editor", "senior editor")

        assert clone.description == "Edits"
        assert [p.name for p in await service.role_permissions(clone)] == ["edit posts"]


class TestPrincipalAssignments:
    """Role assignment, sync and staged assignments."""

    async def test_sync_roles(self, engine, alice):
        for name in ("a", "b", "c"):
            await engine.service.create_role(RoleCreate(name=name))
        await engine.service.assign_roles(alice, ["a", "b"])
        await engine.service.sync_roles(alice, ["b", "c"])
        assert await engine.resolver.role_names(alice) == ["b", "c"]

    async def test_sync_permissions(self, engine, alice):
        for name in ("view posts", "edit posts"):
            await engine.service.create_permission(PermissionCreate(name=name))
        await engine.service.give_permission_to(alice, "view posts")
        await engine.service.sync_permissions(alice, ["edit posts"])
        assert [p.name for p in await engine.resolver.direct_permissions(alice)] == ["edit posts"]

    async def test_pending_assignments_apply_after_creation(self, engine):
        await engine.service.create_permission(PermissionCreate(name="publish posts"))
        await engine.service.create_role(RoleCreate(name="editor"))

        pending = PendingAssignments().assign_role("editor").give_permission("publish posts")
        assert pending

        principal = Principal(principal_type="user", principal_id=7)
        await pending.apply(engine.service, principal)

        assert not pending
        assert await engine.resolver.has_role(principal, "editor") is True
        assert await engine.resolver.has_permission(principal, "publish posts") is True

    async def test_revoke_reports_not_granted(self, engine, alice):
        await engine.service.create_permission(PermissionCreate(name="edit posts"))
        result = await engine.service.revoke_permission_from(alice, ["edit posts"])
        assert result.items[0].error == "not granted"


class TestAuditEmission:
    """Audit events follow committed mutations."""

    async def test_events_recorded(self, engine, audit_sink, alice):
        await engine.service.create_permission(PermissionCreate(name="edit posts"), actor="admin")
        await engine.service.create_role(RoleCreate(name="editor"))
        await engine.service.assign_role(alice, "editor", actor="admin")

        assert audit_sink.types() == ["permission_created", "role_created", "role_assigned"]
        assigned = audit_sink.events[-1]
        assert assigned.principal_id == "alice"
        assert assigned.actor_id == "admin"

    async def test_untracked_events_are_dropped(self, build, config, audit_sink):
        engine = build(config.model_copy(update={"audit_events": ["role_created"]}))
        await engine.service.create_permission(PermissionCreate(name="edit posts"))
        await engine.service.create_role(RoleCreate(name="editor"))
        assert audit_sink.types() == ["role_created"]

    async def test_failing_sink_does_not_undo_mutation(self, build, config, failing_audit_sink):
        engine = build(config, audit=failing_audit_sink)
        record = await engine.service.create_permission(PermissionCreate(name="edit posts"))
        assert engine.service.audit_failures == 1
        assert (await engine.service.find_permission("edit posts")).id == record.id


class TestTeamScopedRoles:
    """With teams enabled, role grants and parents stay inside the role's team."""

    @pytest.fixture
    def team_engine(self, build, config):
        return build(config.model_copy(update={"teams_enabled": True}))

    async def test_role_grant_resolves_permission_in_role_team(self, team_engine):
        service, resolver = team_engine.service, team_engine.resolver
        # The other team's copy has the lower id
        other = await service.create_permission(PermissionCreate(name="edit posts", team_id=2))
        own = await service.create_permission(PermissionCreate(name="edit posts", team_id=1))
        editor = await service.create_role(RoleCreate(name="editor", team_id=1))

        await service.give_permissions_to_role(editor.id, ["edit posts"])

        granted = await service.role_permissions(editor.id)
        assert [(p.id, p.team_id) for p in granted] == [(own.id, 1)]
        assert other.id not in [p.id for p in granted]

        member = Principal(principal_type="user", principal_id="m", team_id=1)
        await service.assign_role(member, "editor")
        assert await resolver.has_permission(member, "edit posts") is True

    async def test_role_grant_fails_when_only_other_team_has_permission(self, team_engine):
        service = team_engine.service
        await service.create_permission(PermissionCreate(name="edit posts", team_id=2))
        editor = await service.create_role(RoleCreate(name="editor", team_id=1))
        with pytest.raises(InvalidBulkOperation) as exc_info:
            await service.give_permissions_to_role(editor.id, ["edit posts"])
        assert [f.item for f in exc_info.value.failures] == ["edit posts"]

    async def test_sync_and_revoke_stay_in_role_team(self, team_engine):
        service = team_engine.service
        await service.create_permission(PermissionCreate(name="edit posts", team_id=2))
        own = await service.create_permission(PermissionCreate(name="edit posts", team_id=1))
        editor = await service.create_role(RoleCreate(name="editor", team_id=1))

        await service.sync_role_permissions(editor.id, ["edit posts"])
        assert [p.id for p in await service.role_permissions(editor.id)] == [own.id]

        await service.revoke_permissions_from_role(editor.id, ["edit posts"])
        assert await service.role_permissions(editor.id) == []

    async def test_parent_from_other_team_rejected(self, team_engine):
        service = team_engine.service
        owner = await service.create_role(RoleCreate(name="owner", team_id=2))
        editor = await service.create_role(RoleCreate(name="editor", team_id=1))

        with pytest.raises(RoleNotFound):
            await service.set_parent(editor.id, "owner")
        with pytest.raises(RoleNotFound):
            await service.set_parent(editor.id, owner.id)
        with pytest.raises(RoleNotFound):
            await service.create_role(RoleCreate(name="writer", team_id=1, parent_id=owner.id))

        assert (await service.find_role_by_id(editor.id)).parent_id is None
        assert [r.name for r in await service.list_roles(team_id=1)] == ["editor"]

    async def test_parent_by_name_picks_role_team(self, team_engine):
        service, resolver = team_engine.service, team_engine.resolver
        await service.create_role(RoleCreate(name="lead", team_id=2))
        lead = await service.create_role(RoleCreate(name="lead", team_id=1))
        editor = await service.create_role(RoleCreate(name="editor", team_id=1))
        await service.create_permission(PermissionCreate(name="publish posts", team_id=1))
        await service.give_permissions_to_role(lead.id, ["publish posts"])

        moved = await service.set_parent(editor.id, "lead")
        assert moved.parent_id == lead.id

        member = Principal(principal_type="user", principal_id="m", team_id=1)
        await service.assign_role(member, "editor")
        assert await resolver.has_permission(member, "publish posts") is True

    async def test_same_principal_holds_roles_in_two_teams(self, team_engine):
        service, resolver = team_engine.service, team_engine.resolver
        await service.create_role(RoleCreate(name="editor", team_id=1))
        await service.create_role(RoleCreate(name="editor", team_id=2))
        in_one = Principal(principal_type="user", principal_id="m", team_id=1)
        in_two = Principal(principal_type="user", principal_id="m", team_id=2)

        await service.assign_role(in_one, "editor")
        result = await service.assign_role(in_two, "editor")
        assert result.items[0].error is None

        again = await service.assign_role(in_two, "editor")
        assert again.items[0].error == "already assigned"
        assert await resolver.has_role(in_one, "editor") is True
        assert await resolver.has_role(in_two, "editor") is True
