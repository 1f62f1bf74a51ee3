"""
Conflict detection API routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends

from rbac_engine.bootstrap import PermissionEngine
from rbac_engine.core import config
from rbac_engine.features.conflicts.schemas import AutoFixResponse, ConflictReport
from rbac_engine.features.permissions.dependencies import get_engine, require_permission
from rbac_engine.features.permissions.schemas import Principal
from rbac_engine.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

Engine = Annotated[PermissionEngine, Depends(get_engine)]
Admin = Annotated[Principal, Depends(require_permission(config.ADMIN_PERMISSION))]


@router.get("", response_model=ConflictReport)
async def get_conflicts(engine: Engine, _admin: Admin):
    """Scan the catalog for hierarchy and permission conflicts (admin only)."""
    return await engine.detector.detect()


@router.post("/fix", response_model=AutoFixResponse)
async def fix_conflicts(engine: Engine, admin: Admin):
    """
    Detect conflicts and remediate the safe categories (admin only).

    Orphaned roles are deleted and duplicate permissions merged; everything
    else is reported for manual intervention.
    """
    report = await engine.detector.detect()
    messages = await engine.detector.auto_fix(report, actor=admin.principal_id)
    log.info(f"Auto-fix by {admin.principal_id}: {len(messages)} finding(s)")
    return AutoFixResponse(messages=messages)
