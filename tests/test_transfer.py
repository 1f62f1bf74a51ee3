"""Tests for catalog import and export."""

from rbac_engine.features.permissions.schemas import PermissionCreate, RoleCreate
from rbac_engine.features.transfer.schemas import CatalogExport


DOCUMENT = {
    "permissions": [
        {"name": "view posts", "group": "posts"},
        {"name": "edit posts", "group": "posts", "roles": ["director"]},
        {"name": "edit post", "resource_type": "post", "resource_id": 9},
    ],
    "roles": [
        # child listed before its parent
        {"name": "manager", "parent": "director", "permissions": ["view posts"]},
        {"name": "director", "description": "Runs things"},
    ],
}


class TestImport:
    """Importing a document by names."""

    async def test_import_resolves_forward_parent_reference(self, engine, alice):
        result = await engine.transfer.import_json(DOCUMENT, actor="admin")

        assert result.permissions == ["Created: view posts", "Created: edit posts", "Created: edit post"]
        assert result.roles == ["Created: manager", "Created: director"]
        assert result.errors == []

        manager = await engine.service.find_role("manager")
        director = await engine.service.find_role("director")
        assert manager.parent_id == director.id
        assert manager.level == 1
        assert director.description == "Runs things"

        await engine.service.assign_role(alice, "manager")
        assert await engine.resolver.has_permission(alice, "edit posts") is True
        assert await engine.resolver.has_permission(alice, "view posts") is True

    async def test_reimport_reports_existing(self, engine):
        await engine.transfer.import_json(DOCUMENT)
        result = await engine.transfer.import_json(DOCUMENT)
        assert result.permissions == ["Exists: view posts", "Exists: edit posts", "Exists: edit post"]
        assert result.roles == ["Exists: manager", "Exists: director"]
        assert len(await engine.service.list_permissions()) == 3

    async def test_errors_are_per_item(self, engine):
        document = {
            "permissions": [{"name": "view posts"}],
            "roles": [
                {"name": "reader", "permissions": ["view posts", "missing"]},
                {"name": "writer", "parent": "ghost"},
            ],
        }
        result = await engine.transfer.import_json(document)

        assert result.roles[0].startswith("Error: reader")
        assert result.roles[1] == "Created: writer"
        assert result.roles[2].startswith("Parent Error: writer")
        assert len(result.errors) == 2
        assert [r.name for r in await engine.service.list_roles()] == ["writer"]

    async def test_import_emits_one_audit_event(self, engine, audit_sink):
        await engine.transfer.import_json(DOCUMENT, actor="admin")
        assert audit_sink.types() == ["permission_created"]
        assert audit_sink.events[0].meta == {"source": "import"}


class TestExport:
    async def test_export_references_by_name(self, engine):
        service = engine.service
        await service.create_permission(PermissionCreate(name="edit posts", group="posts"))
        await service.create_role(RoleCreate(name="director"))
        await service.create_role(RoleCreate(name="manager"))
        await service.set_parent("manager", "director")
        await service.give_permissions_to_role("director", ["edit posts"])

        document = await engine.transfer.export_catalog()

        assert document.permissions[0].roles == ["director"]
        roles = {r.name: r for r in document.roles}
        assert roles["manager"].parent == "director"
        assert roles["manager"].level == 1
        assert roles["director"].permissions == ["edit posts"]

    async def test_export_then_import_elsewhere(self, engine, build, config):
        await engine.transfer.import_json(DOCUMENT)
        exported = await engine.transfer.export_json()

        other = build(config.model_copy(update={"default_guard": "api"}))
        document = CatalogExport.model_validate(exported)
        for item in document.permissions + document.roles:
            item.guard_name = "api"
        result = await other.transfer.import_json(document)

        assert result.errors == []
        assert [p.guard_name for p in await other.service.list_permissions(guard="api")] == ["api"] * 3
        manager = await other.service.find_role("manager", guard="api")
        assert manager.level == 1
