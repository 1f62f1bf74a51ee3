"""
Pydantic schemas for audit events.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from rbac_engine.utils import utc_now


class AuditEvent(BaseModel):
    """An event emitted by a mutating engine operation."""
    event_type: str
    principal_type: Optional[str] = None
    principal_id: Optional[str] = None
    actor_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)


class AuditEntryResponse(BaseModel):
    """Schema for a stored audit entry."""
    id: int
    action: str
    model_type: Optional[str] = None
    model_id: Optional[str] = None
    actor_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditEntryListResponse(BaseModel):
    """Paginated list of audit entries."""
    items: List[AuditEntryResponse]
    total: int
    skip: int
    limit: int
