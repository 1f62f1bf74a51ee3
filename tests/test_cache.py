"""Tests for the catalog cache."""

from datetime import timedelta

import pytest

from rbac_engine.core.cache import MemoryCacheStore, PermissionCache, RedisCacheStore
from rbac_engine.core.config import PermissionConfig
from rbac_engine.features.permissions.schemas import CatalogSnapshot, PermissionRecord, RoleRecord
from rbac_engine.utils import utc_now


def sample_snapshot() -> CatalogSnapshot:
    return CatalogSnapshot(
        permissions=[
            PermissionRecord(id=1, name="edit posts", guard_name="web", role_ids=[1, 2]),
            PermissionRecord(id=2, name="edit posts", guard_name="web", team_id=5, role_ids=[3]),
        ],
        roles=[
            RoleRecord(id=1, name="editor", guard_name="web"),
            RoleRecord(id=2, name="team editor", guard_name="web", team_id=5),
            RoleRecord(id=3, name="team admin", guard_name="web", team_id=5),
        ],
        loaded_at=utc_now(),
    )


class CountingLoader:
    def __init__(self):
        self.calls = 0

    async def __call__(self) -> CatalogSnapshot:
        self.calls += 1
        return sample_snapshot()


@pytest.fixture
def loader():
    return CountingLoader()


class TestPermissionCache:
    """Loading, copying and invalidation."""

    async def test_loads_once(self, loader):
        cache = PermissionCache(PermissionConfig(), MemoryCacheStore(), loader)
        await cache.get()
        await cache.get()
        assert loader.calls == 1
        assert cache.loads == 1

    async def test_consumers_get_private_copies(self, loader):
        cache = PermissionCache(PermissionConfig(), MemoryCacheStore(), loader)
        first = await cache.get()
        first.permissions[0].name = "tampered"
        second = await cache.get()
        assert second.permissions[0].name == "edit posts"

    async def test_invalidate_forces_reload(self, loader):
        store = MemoryCacheStore()
        cache = PermissionCache(PermissionConfig(), store, loader)
        await cache.get()
        assert cache.key in store

        await cache.invalidate()
        assert cache.key not in store

        await cache.get()
        assert loader.calls == 2

    async def test_stale_snapshot_is_reloaded(self, loader):
        config = PermissionConfig(cache_ttl=timedelta(hours=1))
        store = MemoryCacheStore()
        stale = sample_snapshot()
        stale.loaded_at = utc_now() - timedelta(days=2)
        await store.set(config.cache_key, stale, timedelta(days=7))

        cache = PermissionCache(config, store, loader)
        snapshot = await cache.get()

        assert loader.calls == 1
        assert utc_now() - snapshot.loaded_at < timedelta(minutes=1)

    async def test_team_filtering(self, loader):
        cache = PermissionCache(PermissionConfig(teams_enabled=True), MemoryCacheStore(), loader)

        team = await cache.get(team_id=5)
        assert [r.name for r in team.roles] == ["team editor", "team admin"]
        assert [p.id for p in team.permissions] == [2]
        assert team.permissions[0].role_ids == [3]

        global_scope = await cache.get()
        assert [r.name for r in global_scope.roles] == ["editor"]
        assert global_scope.permissions[0].role_ids == [1]

    async def test_team_filtering_off(self, loader):
        cache = PermissionCache(PermissionConfig(teams_enabled=False), MemoryCacheStore(), loader)
        snapshot = await cache.get(team_id=5)
        assert len(snapshot.roles) == 3


class TestMemoryCacheStore:
    async def test_entries_expire(self):
        now = [100.0]
        store = MemoryCacheStore(clock=lambda: now[0])
        await store.set("key", sample_snapshot(), timedelta(seconds=10))
        assert await store.get("key") is not None

        now[0] += 11
        assert await store.get("key") is None
        assert "key" not in store

    async def test_forget_missing_key(self):
        store = MemoryCacheStore()
        await store.forget("missing")
        assert await store.get("missing") is None


class FakeRedis:
    """The slice of the redis.asyncio client the store uses."""

    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)


class TestRedisCacheStore:
    async def test_snapshot_stored_as_json_with_ttl(self):
        client = FakeRedis()
        store = RedisCacheStore(client, prefix="test:")
        await store.set("catalog", sample_snapshot(), timedelta(hours=2))

        assert isinstance(client.data["test:catalog"], str)
        assert client.expiry["test:catalog"] == 7200

        snapshot = await store.get("catalog")
        assert [p.id for p in snapshot.permissions] == [1, 2]
        assert snapshot.permissions[0].role_ids == [1, 2]

        await store.forget("catalog")
        assert await store.get("catalog") is None

    async def test_backs_the_permission_cache(self, loader):
        cache = PermissionCache(PermissionConfig(), RedisCacheStore(FakeRedis()), loader)
        await cache.get()
        await cache.get()
        assert loader.calls == 1
