"""Tests for the gate dependencies and the admin API."""

from typing import Annotated

import httpx
import jwt
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI

from rbac_engine.core import config as settings
from rbac_engine.features.permissions.dependencies import (
    require_all_permissions,
    require_permission,
    require_role,
    require_role_or_permission,
)
from rbac_engine.features.permissions.schemas import PermissionCreate, Principal, RoleCreate
from rbac_engine.main import app


SECRET = "test-secret"


def token_for(subject: str, **claims) -> dict:
    payload = {"sub": subject, **claims}
    return {"Authorization": f"Bearer {jwt.encode(payload, SECRET, algorithm='HS256')}"}


@pytest.fixture(autouse=True)
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", SECRET)


@pytest_asyncio.fixture
async def admin(engine):
    """A user holding the admin permission directly."""
    principal = Principal(principal_type="user", principal_id="admin")
    await engine.service.create_permission(PermissionCreate(name=settings.ADMIN_PERMISSION))
    await engine.service.give_permission_to(principal, settings.ADMIN_PERMISSION)
    return principal


@pytest_asyncio.fixture
async def client(engine):
    app.state.engine = engine
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.engine = None


def gated_app(engine) -> FastAPI:
    """A host application protecting its own routes with the gate."""
    host = FastAPI()
    host.state.engine = engine

    @host.get("/posts")
    async def list_posts(principal: Annotated[Principal, Depends(require_permission("view posts", "edit posts"))]):
        return {"principal": principal.principal_id}

    @host.delete("/posts")
    async def delete_posts(_: Annotated[Principal, Depends(require_all_permissions("view posts", "delete posts"))]):
        return {"ok": True}

    @host.get("/admin")
    async def admin_area(_: Annotated[Principal, Depends(require_role("admin"))]):
        return {"ok": True}

    @host.get("/reports")
    async def reports(_: Annotated[Principal, Depends(require_role_or_permission("auditor", "view reports"))]):
        return {"ok": True}

    return host


class TestGate:
    """401 without a principal, 403 without the right, 200 with it."""

    @pytest_asyncio.fixture
    async def host_client(self, engine):
        transport = httpx.ASGITransport(app=gated_app(engine))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    async def test_missing_token(self, host_client):
        response = await host_client.get("/posts")
        assert response.status_code == 401
        assert response.json()["detail"] == "User is not logged in."

    async def test_invalid_token(self, host_client):
        response = await host_client.get("/posts", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    async def test_lacking_permission(self, host_client, engine):
        await engine.service.create_permission(PermissionCreate(name="view posts"))
        await engine.service.create_permission(PermissionCreate(name="edit posts"))
        response = await host_client.get("/posts", headers=token_for("42"))
        assert response.status_code == 403
        assert response.json()["detail"] == "User does not have any of the necessary permissions: view posts, edit posts."

    async def test_holding_one_of_the_permissions(self, host_client, engine):
        await engine.service.create_permission(PermissionCreate(name="edit posts"))
        await engine.service.give_permission_to(Principal(principal_type="user", principal_id=42), "edit posts")
        response = await host_client.get("/posts", headers=token_for("42"))
        assert response.status_code == 200
        assert response.json() == {"principal": "42"}

    async def test_require_all(self, host_client, engine):
        user = Principal(principal_type="user", principal_id=42)
        for name in ("view posts", "delete posts"):
            await engine.service.create_permission(PermissionCreate(name=name))
        await engine.service.give_permission_to(user, "view posts")
        assert (await host_client.delete("/posts", headers=token_for("42"))).status_code == 403

        await engine.service.give_permission_to(user, "delete posts")
        assert (await host_client.delete("/posts", headers=token_for("42"))).status_code == 200

    async def test_require_role(self, host_client, engine):
        await engine.service.create_role(RoleCreate(name="admin"))
        response = await host_client.get("/admin", headers=token_for("42"))
        assert response.status_code == 403
        assert response.json()["detail"] == "User does not have the right role: admin."

        await engine.service.assign_role(Principal(principal_type="user", principal_id=42), "admin")
        assert (await host_client.get("/admin", headers=token_for("42"))).status_code == 200

    async def test_role_or_permission(self, host_client, engine):
        await engine.service.create_role(RoleCreate(name="auditor"))
        await engine.service.create_permission(PermissionCreate(name="view reports"))
        assert (await host_client.get("/reports", headers=token_for("7"))).status_code == 403

        await engine.service.give_permission_to(Principal(principal_type="user", principal_id=7), "view reports")
        assert (await host_client.get("/reports", headers=token_for("7"))).status_code == 200

        await engine.service.assign_role(Principal(principal_type="user", principal_id=8), "auditor")
        assert (await host_client.get("/reports", headers=token_for("8"))).status_code == 200


class TestAdminApi:
    """The management endpoints."""

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_write_requires_admin(self, client, engine):
        await engine.service.create_permission(PermissionCreate(name=settings.ADMIN_PERMISSION))
        response = await client.post("/permissions", json={"name": "edit posts"}, headers=token_for("nobody"))
        assert response.status_code == 403

    async def test_permission_crud(self, client, admin):
        headers = token_for(admin.principal_id)
        created = await client.post("/permissions", json={"name": "edit posts", "group": "posts"}, headers=headers)
        assert created.status_code == 201
        permission_id = created.json()["id"]

        duplicate = await client.post("/permissions", json={"name": "edit posts"}, headers=headers)
        assert duplicate.status_code == 409
        assert duplicate.json()["existing_id"] == permission_id

        fetched = await client.get(f"/permissions/{permission_id}", headers=headers)
        assert fetched.json()["name"] == "edit posts"

        groups = await client.get("/permissions/groups", headers=headers)
        assert groups.json() == ["posts"]

        updated = await client.put(f"/permissions/{permission_id}", json={"description": "Edit"}, headers=headers)
        assert updated.json()["description"] == "Edit"

        deleted = await client.delete(f"/permissions/{permission_id}", headers=headers)
        assert deleted.status_code == 204
        missing = await client.get(f"/permissions/{permission_id}", headers=headers)
        assert missing.status_code == 404

    async def test_validation_errors_are_400(self, client, admin):
        response = await client.post("/permissions", json={}, headers=token_for(admin.principal_id))
        assert response.status_code == 400
        assert "name" in response.json()

    async def test_invalid_permission_update_is_400(self, client, admin):
        headers = token_for(admin.principal_id)
        created = await client.post("/permissions", json={"name": "edit posts"}, headers=headers)
        permission_id = created.json()["id"]

        half_scope = await client.put(f"/permissions/{permission_id}", json={"resource_type": "post"}, headers=headers)
        assert half_scope.status_code == 400

        null_name = await client.put(f"/permissions/{permission_id}", json={"name": None}, headers=headers)
        assert null_name.status_code == 400
        assert "name" in null_name.json()

        unchanged = await client.get(f"/permissions/{permission_id}", headers=headers)
        assert unchanged.json()["name"] == "edit posts"
        assert unchanged.json()["resource_type"] is None

        scoped = await client.put(
            f"/permissions/{permission_id}", json={"resource_type": "post", "resource_id": 7}, headers=headers
        )
        assert scoped.status_code == 200
        assert (scoped.json()["resource_type"], scoped.json()["resource_id"]) == ("post", "7")

        cleared = await client.put(
            f"/permissions/{permission_id}", json={"resource_type": None, "resource_id": None}, headers=headers
        )
        assert cleared.status_code == 200
        assert cleared.json()["resource_id"] is None

    async def test_null_role_name_is_400(self, client, admin):
        headers = token_for(admin.principal_id)
        role = (await client.post("/permissions/roles", json={"name": "editor"}, headers=headers)).json()
        response = await client.put(f"/permissions/roles/{role['id']}", json={"name": None}, headers=headers)
        assert response.status_code == 400
        assert "name" in response.json()

    async def test_nested_validation_errors_use_dotted_paths(self, client, admin):
        body = {"principal": {"principal_type": "user"}, "permissions": ["edit posts"]}
        response = await client.post("/permissions/check", json=body, headers=token_for(admin.principal_id))
        assert response.status_code == 400
        assert "principal.principal_id" in response.json()

    async def test_role_hierarchy_and_check(self, client, admin, engine):
        headers = token_for(admin.principal_id)
        director = (await client.post("/permissions/roles", json={"name": "director"}, headers=headers)).json()
        manager = (await client.post("/permissions/roles", json={"name": "manager"}, headers=headers)).json()
        await client.post("/permissions", json={"name": "approve budgets"}, headers=headers)

        moved = await client.put(
            f"/permissions/roles/{manager['id']}/parent", json={"parent_id": director["id"]}, headers=headers
        )
        assert moved.json()["level"] == 1

        cycle = await client.put(
            f"/permissions/roles/{director['id']}/parent", json={"parent_id": manager["id"]}, headers=headers
        )
        assert cycle.status_code == 409

        granted = await client.post(
            f"/permissions/roles/{director['id']}/permissions", json={"permissions": ["approve budgets"]}, headers=headers
        )
        assert granted.json()["items"][0]["ok"] is True

        bob = {"principal_type": "user", "principal_id": "bob"}
        await client.post("/permissions/assignments/roles", json={"principal": bob, "role": "manager"}, headers=headers)

        check = await client.post(
            "/permissions/check", json={"principal": bob, "permissions": ["approve budgets"]}, headers=headers
        )
        assert check.json()["allowed"] is True

        summary = await client.get("/permissions/principals/user/bob", headers=headers)
        assert summary.json()["roles"] == ["manager"]
        assert [p["name"] for p in summary.json()["all_permissions"]] == ["approve budgets"]

    async def test_bulk_failure_lists_items(self, client, admin):
        headers = token_for(admin.principal_id)
        role = (await client.post("/permissions/roles", json={"name": "editor"}, headers=headers)).json()
        response = await client.post(
            f"/permissions/roles/{role['id']}/permissions", json={"permissions": ["nope"]}, headers=headers
        )
        assert response.status_code == 422
        assert response.json()["failures"][0]["item"] == "nope"

    async def test_conflicts_and_export(self, client, admin):
        headers = token_for(admin.principal_id)
        await client.post("/permissions/roles", json={"name": "unused"}, headers=headers)

        report = await client.get("/conflicts", headers=headers)
        assert [c["role_name"] for c in report.json()["orphaned_roles"]] == ["unused"]

        fixed = await client.post("/conflicts/fix", headers=headers)
        assert fixed.json()["messages"] == ["Deleted orphaned role: unused"]

        exported = await client.get("/permissions/export", headers=headers)
        assert [p["name"] for p in exported.json()["permissions"]] == [settings.ADMIN_PERMISSION]
        assert exported.json()["roles"] == []

    async def test_me(self, client, admin):
        response = await client.get("/permissions/me", headers=token_for(admin.principal_id))
        assert response.status_code == 200
        assert [p["name"] for p in response.json()["direct_permissions"]] == [settings.ADMIN_PERMISSION]
