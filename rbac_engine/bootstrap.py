"""
Composition root.

Builds the engine components once and wires them together explicitly:
store -> cache -> service/resolver -> detector/transfer. The FastAPI app keeps
the result on ``app.state.engine``; tests build their own.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbac_engine.core.cache import CacheStore, MemoryCacheStore, PermissionCache, RedisCacheStore
from rbac_engine.core.config import PermissionConfig
from rbac_engine.core.database.engine import AsyncSessionLocal, EntityStore
from rbac_engine.features.audit.sink import AuditSink, DatabaseAuditSink, LoggingAuditSink, MultiAuditSink
from rbac_engine.features.conflicts.detector import ConflictDetector
from rbac_engine.features.permissions import store as entity_store
from rbac_engine.features.permissions.resolver import PermissionResolver
from rbac_engine.features.permissions.service import PermissionService
from rbac_engine.features.transfer.service import TransferService
from rbac_engine.utils import get_logger


log = get_logger(__name__)


@dataclass
class PermissionEngine:
    config: PermissionConfig
    store: EntityStore
    cache: PermissionCache
    service: PermissionService
    resolver: PermissionResolver
    detector: ConflictDetector
    transfer: TransferService
    audit: Optional[AuditSink] = None

    async def close(self) -> None:
        """Drop the cached catalog and close the backing cache connection."""
        self.cache.drop()
        if isinstance(self.cache.store, RedisCacheStore):
            await self.cache.store.close()


def make_cache_store(config: PermissionConfig) -> CacheStore:
    if config.cache_store == "redis":
        log.info(f"Using redis catalog cache at {config.redis_url}")
        return RedisCacheStore.from_url(config.redis_url)
    if config.cache_store != "memory":
        raise ValueError(f"Unknown cache store {config.cache_store!r}, expected 'memory' or 'redis'")
    return MemoryCacheStore()


def build_engine(
    config: Optional[PermissionConfig] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    cache_store: Optional[CacheStore] = None,
    audit: Optional[AuditSink] = None,
) -> PermissionEngine:
    config = config or PermissionConfig()
    store = EntityStore(session_factory or AsyncSessionLocal)

    async def load_catalog():
        async with store.session() as db:
            return await entity_store.load_catalog(db)

    cache = PermissionCache(config, cache_store or make_cache_store(config), load_catalog)
    if audit is None and config.audit_enabled:
        audit = MultiAuditSink([LoggingAuditSink(), DatabaseAuditSink(store)])

    service = PermissionService(store, cache, config, audit)
    return PermissionEngine(
        config=config,
        store=store,
        cache=cache,
        service=service,
        resolver=PermissionResolver(store, cache, config),
        detector=ConflictDetector(store, config, service),
        transfer=TransferService(service),
        audit=audit,
    )
