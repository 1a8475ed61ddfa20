"""
Module: funding_kernel.models.case
Responsibility: ORM persistence for cases, their status history and the
    timeline notes derived from status changes.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - status and case_type are limited to their enum values (check constraints).
    - target_amount > 0 and current_amount >= 0.
    - current_amount is derived: it is written only by FundingTotals.
    - CaseStatusHistory rows are append-only (ORM listeners).

Failure modes:
    - IntegrityError on constraint violations.
    - ImmutabilityViolationError on history UPDATE/DELETE.
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
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from funding_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from funding_kernel.domain.case_lifecycle import (
    CaseSnapshot,
    CaseStatus,
    CaseType,
    StatusHistoryEntry,
)
from funding_kernel.exceptions import ImmutabilityViolationError


class Case(TrackedBase):
    """A funding request moving through the case lifecycle."""

    __tablename__ = "cases"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'submitted', 'under_review', 'published', "
            "'closed', 'completed')",
            name="ck_cases_valid_status",
        ),
        CheckConstraint(
            "case_type IN ('one-time', 'recurring')",
            name="ck_cases_valid_type",
        ),
        CheckConstraint("target_amount > 0", name="ck_cases_target_positive"),
        CheckConstraint("current_amount >= 0", name="ck_cases_current_non_negative"),
        Index("ix_cases_status", "status"),
        Index("ix_cases_created_by", "created_by_id"),
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CaseStatus.DRAFT.value,
    )
    case_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CaseType.ONE_TIME.value,
    )
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_amount: Mapped[Decimal] = mapped_column(nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0.00"),
    )
    assigned_to: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    sponsored_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<Case {self.id} status={self.status}>"

    def to_snapshot(self) -> CaseSnapshot:
        return CaseSnapshot(
            case_id=self.id,
            title=self.title,
            status=CaseStatus(self.status),
            case_type=CaseType(self.case_type),
            target_amount=self.target_amount,
            current_amount=self.current_amount,
            created_by=self.created_by_id,
            assigned_to=self.assigned_to,
            sponsored_by=self.sponsored_by,
            category=self.category,
            created_at=self.created_at,
        )


class CaseStatusHistory(Base):
    """One row per accepted case transition. Append-only."""

    __tablename__ = "case_status_history"

    __table_args__ = (
        Index("ix_case_status_history_case", "case_id", "changed_at"),
        UniqueConstraint("case_id", "sequence", name="uq_case_status_history_sequence"),
    )

    case_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("cases.id"), nullable=False,
    )
    previous_status: Mapped[str] = mapped_column(String(20), nullable=False)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    # NULL for system-triggered transitions
    changed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    system_triggered: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # 1, 2, 3 ... per case; breaks ties between equal changed_at values
    sequence: Mapped[int] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CaseStatusHistory {self.case_id} "
            f"{self.previous_status}->{self.new_status}>"
        )

    def to_entry(self) -> StatusHistoryEntry:
        return StatusHistoryEntry(
            case_id=self.case_id,
            previous_status=CaseStatus(self.previous_status),
            new_status=CaseStatus(self.new_status),
            changed_by=self.changed_by,
            system_triggered=self.system_triggered,
            change_reason=self.change_reason,
            changed_at=self.changed_at,
        )


class CaseUpdate(Base):
    """Timeline note shown on a case, derived from a status change."""

    __tablename__ = "case_updates"

    __table_args__ = (
        CheckConstraint(
            "update_type IN ('progress', 'milestone', 'general')",
            name="ck_case_updates_valid_type",
        ),
        Index("ix_case_updates_case", "case_id"),
    )

    case_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("cases.id"), nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    update_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # NULL when the system wrote the note
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


# =============================================================================
# ORM-Level Immutability for Status History (Append-Only)
# =============================================================================


@event.listens_for(CaseStatusHistory, "before_update")
def prevent_status_history_update(mapper, connection, target):
    """Status history rows cannot be modified."""
    raise ImmutabilityViolationError(
        entity_type="CaseStatusHistory",
        entity_id=str(target.id),
        reason="Case status history is append-only -- cannot modify",
    )


@event.listens_for(CaseStatusHistory, "before_delete")
def prevent_status_history_delete(mapper, connection, target):
    """Status history rows cannot be deleted."""
    raise ImmutabilityViolationError(
        entity_type="CaseStatusHistory",
        entity_id=str(target.id),
        reason="Case status history is append-only -- cannot delete",
    )
