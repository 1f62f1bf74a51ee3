"""
Permission and Role models with their assignment tables.

This module implements the persistent side of the permission engine:
- Guard-scoped (and optionally team-scoped) permissions and roles
- Role hierarchy through a self-referencing parent pointer
- Role grants (role <-> permission)
- Principal role assignments and direct permission grants, the latter
  with optional expiry and resource scope override
"""
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, Table, Column, JSON, Text, DateTime, Integer, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rbac_engine.core.database.base import Base, TimestampMixin


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship (role grants)
role_has_permissions = Table(
    "role_has_permissions",
    Base.metadata,
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

# Principal-Role relationship (principals are owned elsewhere, referenced by type + id)
principal_has_roles = Table(
    "principal_has_roles",
    Base.metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("principal_type", String(100), primary_key=True),
    Column("principal_id", String(64), primary_key=True),
    Column("team_id", Integer, nullable=True, index=True),
)

# Principal direct permissions (bypassing roles)
principal_has_permissions = Table(
    "principal_has_permissions",
    Base.metadata,
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("principal_type", String(100), primary_key=True),
    Column("principal_id", String(64), primary_key=True),
    Column("expires_at", DateTime(timezone=True), nullable=True, index=True),
    # Resource scope override for this grant only
    Column("resource_type", String(100), nullable=True),
    Column("resource_id", String(64), nullable=True),
    Column("meta", JSON, nullable=True),
    Column("team_id", Integer, nullable=True, index=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission model.

    A permission is unique per (name, guard, team). It can be scoped to a
    single resource instance (resource_type + resource_id) and can expire.
    Examples:
    - name="edit posts", guard_name="web"
    - name="edit posts", resource_type="post", resource_id="17"
    """
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Permission definition
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    guard_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    group: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Resource-based permissions
    resource_type: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Time-based permissions
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    meta: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    # Relationships
    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_has_permissions,
        back_populates="permissions",
        lazy="selectin"
    )

    @property
    def is_resource_permission(self) -> bool:
        return bool(self.resource_type) and bool(self.resource_id)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, guard={self.guard_name!r})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Roles form a forest through parent_id; level caches the distance to the
    root and is informational only.
    """
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Role definition
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    guard_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Hierarchical roles
    parent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    meta: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    # Relationships
    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_has_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, guard={self.guard_name!r}, parent={self.parent_id})>"


# (name, guard, team) is unique, with every NULL team counting as the same team
NO_TEAM = -1

Index(
    "permissions_name_guard_team_unique",
    Permission.name,
    Permission.guard_name,
    func.coalesce(Permission.team_id, NO_TEAM),
    unique=True,
)
Index(
    "roles_name_guard_team_unique",
    Role.name,
    Role.guard_name,
    func.coalesce(Role.team_id, NO_TEAM),
    unique=True,
)
