"""
Audit trail model.

Rows are written once per recorded mutation and only ever removed by the
retention purge.
"""
from typing import Any, Dict
from sqlalchemy import String, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from rbac_engine.core.database.base import Base, TimestampMixin


class PermissionAudit(Base, TimestampMixin):
    """
    Audit entry for a permission engine mutation.

    Tracks what happened, to which principal, by whom, and the values before
    and after the change.
    """
    __tablename__ = "permission_audits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Affected principal (or entity) and the actor
    model_type: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    model_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Before/after snapshots and free-form context
    before: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    meta: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<PermissionAudit(id={self.id}, action={self.action}, model={self.model_type}:{self.model_id})>"
