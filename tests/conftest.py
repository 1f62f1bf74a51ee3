"""Pytest configuration and fixtures for rbac_engine tests."""

from typing import List

import pytest
import pytest_asyncio

from rbac_engine.bootstrap import build_engine
from rbac_engine.core.cache import MemoryCacheStore
from rbac_engine.core.config import PermissionConfig
from rbac_engine.core.database.engine import make_engine, make_session_factory, init_db
from rbac_engine.features.audit.schemas import AuditEvent
from rbac_engine.features.permissions.schemas import Principal


class RecordingAuditSink:
    """Keeps every audit event in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type for event in self.events]


class FailingAuditSink:
    """An audit backend that is down."""

    async def record(self, event: AuditEvent) -> None:
        raise ConnectionError("audit backend unavailable")


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh SQLite file database per test."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'permissions.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def config():
    """Engine settings with library defaults, independent of the environment."""
    return PermissionConfig(
        default_guard="web",
        teams_enabled=False,
        hierarchical_roles_enabled=True,
        max_depth=10,
        enforce_max_depth=True,
        time_based_enabled=True,
        resource_permissions_enabled=True,
        audit_enabled=True,
        bulk_batch_size=100,
    )


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def build(session_factory, audit_sink):
    """Factory for engines over the test database; pass a config to override."""
    def _build(config: PermissionConfig, audit=None):
        return build_engine(
            config=config,
            session_factory=session_factory,
            cache_store=MemoryCacheStore(),
            audit=audit if audit is not None else audit_sink,
        )
    return _build


@pytest.fixture
def engine(build, config):
    return build(config)


@pytest.fixture
def user42():
    return Principal(principal_type="user", principal_id=42)


@pytest.fixture
def alice():
    return Principal(principal_type="user", principal_id="alice")


@pytest.fixture
def failing_audit_sink():
    return FailingAuditSink()
