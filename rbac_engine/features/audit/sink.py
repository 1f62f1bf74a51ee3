"""
Audit sinks.

The engine hands every recorded mutation to an ``AuditSink`` after the
mutation has committed. A sink failure never undoes the mutation; the
service logs it and counts it.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_engine.core.database.engine import EntityStore
from rbac_engine.features.audit.models import PermissionAudit
from rbac_engine.features.audit.schemas import AuditEvent
from rbac_engine.utils import get_logger, utc_now


log = get_logger(__name__)


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink:
    """Writes events to the log only."""

    async def record(self, event: AuditEvent) -> None:
        log.info(
            f"Audit: action={event.event_type} "
            f"principal={event.principal_type}:{event.principal_id} actor={event.actor_id} "
            f"before={event.before} after={event.after}"
        )


class DatabaseAuditSink:
    """
    Appends ``PermissionAudit`` rows, each in its own transaction so that it
    is independent of the mutation being audited.
    """

    def __init__(self, store: EntityStore):
        self.store = store

    async def record(self, event: AuditEvent) -> None:
        data = event.model_dump(mode="json")
        entry = PermissionAudit(
            action=event.event_type,
            model_type=event.principal_type,
            model_id=event.principal_id,
            actor_id=event.actor_id,
            before=data["before"],
            after=data["after"],
            meta=data["meta"],
            created_at=event.timestamp,
            updated_at=event.timestamp,
        )
        async with self.store.transaction() as db:
            db.add(entry)
        log.debug(f"Audit entry written: {event.event_type}")


class MultiAuditSink:
    """
    Fans an event out to several sinks, in order.

    Every sink gets the event even if an earlier one fails; the first failure
    is re-raised once all of them have been tried.
    """

    def __init__(self, sinks: Sequence[AuditSink]):
        self.sinks = list(sinks)

    async def record(self, event: AuditEvent) -> None:
        first_error: Optional[Exception] = None
        for sink in self.sinks:
            try:
                await sink.record(event)
            except Exception as e:
                log.error(f"Audit sink {type(sink).__name__} failed for {event.event_type}: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error


# ============================================================================
# Queries
# ============================================================================

async def list_audit_entries(
    db: AsyncSession,
    action: Optional[str] = None,
    principal_type: Optional[str] = None,
    principal_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[PermissionAudit], int]:
    """Audit entries, newest first, with the total count for the filter."""
    stmt = select(PermissionAudit)
    count_stmt = select(func.count()).select_from(PermissionAudit)
    filters = []
    if action:
        filters.append(PermissionAudit.action == action)
    if principal_type:
        filters.append(PermissionAudit.model_type == principal_type)
    if principal_id:
        filters.append(PermissionAudit.model_id == principal_id)
    for clause in filters:
        stmt = stmt.where(clause)
        count_stmt = count_stmt.where(clause)

    total = (await db.execute(count_stmt)).scalar_one()
    stmt = stmt.order_by(PermissionAudit.created_at.desc(), PermissionAudit.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all()), total


async def purge_audit_entries(db: AsyncSession, retention_days: int, now: Optional[datetime] = None) -> int:
    """Delete audit entries older than the retention window. Returns rows removed."""
    cutoff = (now or utc_now()) - timedelta(days=retention_days)
    result = await db.execute(delete(PermissionAudit).where(PermissionAudit.created_at < cutoff))
    removed = result.rowcount or 0
    log.info(f"Purged {removed} audit entries older than {retention_days} days")
    return removed
