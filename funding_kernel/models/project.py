"""
Module: funding_kernel.models.project
Responsibility: ORM persistence for recurring projects and their cycles.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - (project_id, cycle_number) is unique; cycle numbers start at 1.
    - status values are limited to their enums (check constraints).
    - A closed cycle (completed or cancelled) may only have its
      current_amount settled; every other field is frozen.

Failure modes:
    - IntegrityError on a duplicate cycle number.
    - ImmutabilityViolationError on a forbidden update of a closed cycle.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from funding_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from funding_kernel.domain.project import (
    DEFAULT_CYCLE_DURATION_DAYS,
    CycleSnapshot,
    CycleStatus,
    ProjectSnapshot,
    ProjectStatus,
)
from funding_kernel.exceptions import ImmutabilityViolationError


class Project(TrackedBase):
    """A recurring fundraising effort split into cycles."""

    __tablename__ = "projects"

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'paused', 'completed', 'cancelled')",
            name="ck_projects_valid_status",
        ),
        CheckConstraint("target_amount > 0", name="ck_projects_target_positive"),
        CheckConstraint(
            "cycle_duration_days > 0", name="ck_projects_duration_positive",
        ),
        CheckConstraint(
            "total_cycles IS NULL OR total_cycles > 0",
            name="ck_projects_total_cycles_positive",
        ),
        Index("ix_projects_status_auto", "status", "auto_progress"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Template target copied onto every new cycle
    target_amount: Mapped[Decimal] = mapped_column(nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0.00"),
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProjectStatus.ACTIVE.value,
    )
    cycle_duration_days: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_CYCLE_DURATION_DAYS,
    )
    # NULL means unbounded
    total_cycles: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_cycle_number: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1,
    )
    next_cycle_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    last_cycle_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    auto_progress: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return (
            f"<Project {self.id} status={self.status} "
            f"cycle={self.current_cycle_number}>"
        )

    def to_snapshot(self) -> ProjectSnapshot:
        return ProjectSnapshot(
            project_id=self.id,
            name=self.name,
            status=ProjectStatus(self.status),
            target_amount=self.target_amount,
            current_amount=self.current_amount,
            cycle_duration_days=self.cycle_duration_days,
            total_cycles=self.total_cycles,
            current_cycle_number=self.current_cycle_number,
            next_cycle_date=self.next_cycle_date,
            last_cycle_date=self.last_cycle_date,
            auto_progress=self.auto_progress,
            created_by=self.created_by_id,
        )


class ProjectCycle(TrackedBase):
    """One funding period of a project."""

    __tablename__ = "project_cycles"

    __table_args__ = (
        UniqueConstraint(
            "project_id", "cycle_number", name="uq_project_cycles_number",
        ),
        CheckConstraint("cycle_number >= 1", name="ck_project_cycles_number_positive"),
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')",
            name="ck_project_cycles_valid_status",
        ),
        Index("ix_project_cycles_project_status", "project_id", "status"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    target_amount: Mapped[Decimal] = mapped_column(nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0.00"),
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CycleStatus.ACTIVE.value,
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ProjectCycle {self.project_id}#{self.cycle_number} {self.status}>"

    def to_snapshot(self) -> CycleSnapshot:
        return CycleSnapshot(
            cycle_id=self.id,
            project_id=self.project_id,
            cycle_number=self.cycle_number,
            status=CycleStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
            target_amount=self.target_amount,
            current_amount=self.current_amount,
            completed_at=self.completed_at,
        )


_CLOSED_CYCLE_MUTABLE_FIELDS = frozenset({"current_amount", "updated_at", "updated_by_id"})


@event.listens_for(ProjectCycle, "before_update")
def prevent_closed_cycle_update(mapper, connection, target):
    """Closed cycles only accept the final funded-amount settle."""
    state = inspect(target)
    status_history = state.attrs.status.history
    was_status = status_history.deleted[0] if status_history.deleted else target.status
    if was_status == CycleStatus.ACTIVE.value:
        return

    changed = {attr.key for attr in state.attrs if attr.history.has_changes()}
    forbidden = changed - _CLOSED_CYCLE_MUTABLE_FIELDS
    if forbidden:
        raise ImmutabilityViolationError(
            entity_type="ProjectCycle",
            entity_id=str(target.id),
            reason=f"Closed cycle fields are immutable: {', '.join(sorted(forbidden))}",
        )
