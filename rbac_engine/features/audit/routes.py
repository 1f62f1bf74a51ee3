"""
Audit trail API routes.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Query

from rbac_engine.bootstrap import PermissionEngine
from rbac_engine.core import config
from rbac_engine.features.audit.schemas import AuditEntryListResponse, AuditEntryResponse
from rbac_engine.features.audit.sink import list_audit_entries
from rbac_engine.features.permissions.dependencies import get_engine, require_permission
from rbac_engine.features.permissions.schemas import Principal


router = APIRouter()

Engine = Annotated[PermissionEngine, Depends(get_engine)]
Admin = Annotated[Principal, Depends(require_permission(config.ADMIN_PERMISSION))]


@router.get("", response_model=AuditEntryListResponse)
async def list_entries(
    engine: Engine,
    _admin: Admin,
    action: Optional[str] = None,
    principal_type: Optional[str] = None,
    principal_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List audit entries, newest first (admin only)."""
    async with engine.store.session() as db:
        entries, total = await list_audit_entries(db, action, principal_type, principal_id, skip, limit)
        items = [AuditEntryResponse.model_validate(entry) for entry in entries]
    return AuditEntryListResponse(items=items, total=total, skip=skip, limit=limit)


@router.post("/purge")
async def purge_entries(engine: Engine, _admin: Admin):
    """Delete entries older than the retention window (admin only)."""
    return {"removed": await engine.service.purge_audit_entries()}
