"""
Catalog cache.

``PermissionCache`` memoizes the full permission/role catalog under a single
key in a ``CacheStore`` backing store. Readers get a deep copy, filtered to
their team when teams are enabled. Every mutation calls ``invalidate()``
after its transaction commits and before it returns.
"""
import asyncio
import time
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple

from redis import asyncio as aioredis

from rbac_engine.core.config import PermissionConfig
from rbac_engine.features.permissions.schemas import CatalogSnapshot
from rbac_engine.utils import ensure_utc, get_logger, utc_now


log = get_logger(__name__)


CatalogLoader = Callable[[], Awaitable[CatalogSnapshot]]


class CacheStore(Protocol):
    """Backing store for the catalog snapshot."""

    async def get(self, key: str) -> Optional[CatalogSnapshot]:
        ...

    async def set(self, key: str, value: CatalogSnapshot, ttl: timedelta) -> None:
        ...

    async def forget(self, key: str) -> None:
        ...


class MemoryCacheStore:
    """Process-local backing store. Entries expire lazily on ``get``."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, CatalogSnapshot]] = {}

    async def get(self, key: str) -> Optional[CatalogSnapshot]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, value = entry
        if self._clock() >= expires:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: CatalogSnapshot, ttl: timedelta) -> None:
        self._entries[key] = (self._clock() + ttl.total_seconds(), value)

    async def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class RedisCacheStore:
    """
    Redis backing store. Snapshots are stored as pydantic JSON with a TTL.

    Connection errors are not caught; they propagate to the caller.
    """

    def __init__(self, client: aioredis.Redis, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisCacheStore":
        return cls(aioredis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[CatalogSnapshot]:
        data = await self.client.get(self._key(key))
        if data is None:
            return None
        return CatalogSnapshot.model_validate_json(data)

    async def set(self, key: str, value: CatalogSnapshot, ttl: timedelta) -> None:
        await self.client.set(self._key(key), value.model_dump_json(), ex=int(ttl.total_seconds()))

    async def forget(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def close(self) -> None:
        await self.client.aclose()


class PermissionCache:
    """
    The catalog cache passed to every component that resolves permissions.

    Usage:
        cache = PermissionCache(config, MemoryCacheStore(), loader)
        snapshot = await cache.get(team_id=7)
        await cache.invalidate()
    """

    def __init__(self, config: PermissionConfig, store: CacheStore, loader: CatalogLoader):
        self.config = config
        self.store = store
        self.loader = loader
        self._snapshot: Optional[CatalogSnapshot] = None
        self._lock = asyncio.Lock()
        self.loads = 0

    @property
    def key(self) -> str:
        return self.config.cache_key

    @property
    def ttl(self) -> timedelta:
        return self.config.cache_ttl

    async def _shared(self) -> CatalogSnapshot:
        if self._snapshot is not None:
            return self._snapshot
        async with self._lock:
            if self._snapshot is not None:
                return self._snapshot
            snapshot = await self.store.get(self.key)
            if snapshot is None:
                log.debug(f"Catalog cache miss for {self.key}, loading from store")
                snapshot = await self.loader()
                self.loads += 1
                await self.store.set(self.key, snapshot, self.ttl)
            else:
                log.debug(f"Catalog cache hit for {self.key} in backing store")
            self._snapshot = snapshot
            return snapshot

    async def get(self, team_id: Optional[int] = None) -> CatalogSnapshot:
        """
        Return a private copy of the catalog.

        With teams enabled the copy only holds the given team's permissions
        and roles.
        """
        snapshot = await self._shared()
        if self._expired(snapshot):
            await self.invalidate()
            snapshot = await self._shared()
        copy = snapshot.model_copy(deep=True)
        if self.config.teams_enabled:
            return copy.for_team(team_id)
        return copy

    def _expired(self, snapshot: CatalogSnapshot) -> bool:
        if snapshot.loaded_at is None:
            return False
        return utc_now() - ensure_utc(snapshot.loaded_at) >= self.ttl

    async def invalidate(self) -> None:
        """Drop the in-process snapshot and the backing store entry."""
        async with self._lock:
            self._snapshot = None
            await self.store.forget(self.key)
        log.debug(f"Catalog cache invalidated ({self.key})")

    def drop(self) -> None:
        """Forget the in-process snapshot only; used on teardown."""
        self._snapshot = None
