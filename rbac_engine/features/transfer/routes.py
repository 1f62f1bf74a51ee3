"""
Catalog import/export API routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends

from rbac_engine.bootstrap import PermissionEngine
from rbac_engine.core import config
from rbac_engine.features.permissions.dependencies import get_engine, require_permission
from rbac_engine.features.permissions.schemas import Principal
from rbac_engine.features.transfer.schemas import CatalogExport, ImportResult


router = APIRouter()

Engine = Annotated[PermissionEngine, Depends(get_engine)]
Admin = Annotated[Principal, Depends(require_permission(config.ADMIN_PERMISSION))]


@router.get("/export", response_model=CatalogExport)
async def export_catalog(engine: Engine, _admin: Admin):
    """Export every permission and role, referenced by name (admin only)."""
    return await engine.transfer.export_catalog()


@router.post("/import", response_model=ImportResult)
async def import_catalog(document: CatalogExport, engine: Engine, admin: Admin):
    """Import a catalog document; existing entries are kept (admin only)."""
    return await engine.transfer.import_json(document, actor=admin.principal_id)
