"""
Module: funding_kernel.models.rbac
Responsibility: ORM persistence for roles, permissions, the role-permission
    link table and per-user role assignments.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Role names and permission names are unique.
    - (user_id, role_id) is unique: removals are soft (is_active = false)
      and a later grant reactivates the same row.

Failure modes:
    - IntegrityError on duplicate names or duplicate assignments.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from funding_kernel.db.base import Base, UTCDateTime, UUIDString

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", UUIDString(), ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", UUIDString(), ForeignKey("permissions.id"), primary_key=True),
)


class Permission(Base):
    """A ``resource:action`` capability."""

    __tablename__ = "permissions"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Permission {self.name}>"


class Role(Base):
    """A named bundle of permissions."""

    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    permissions: Mapped[list[Permission]] = relationship(
        Permission,
        secondary=role_permissions,
        lazy="selectin",
        order_by=Permission.name,
    )

    def __repr__(self) -> str:
        return f"<Role {self.name}>"

    @property
    def permission_names(self) -> frozenset[str]:
        return frozenset(p.name for p in self.permissions)


class UserRoleAssignment(Base):
    """A user's grant of one role, possibly expired or revoked."""

    __tablename__ = "user_role_assignments"

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role_assignments"),
        Index("ix_user_role_assignments_user_active", "user_id", "is_active"),
    )

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    role_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("roles.id"), nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    role: Mapped[Role] = relationship(Role, lazy="joined", innerjoin=True)

    def __repr__(self) -> str:
        return (
            f"<UserRoleAssignment user={self.user_id} role={self.role_id} "
            f"active={self.is_active}>"
        )

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)
