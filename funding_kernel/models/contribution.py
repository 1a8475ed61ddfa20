"""
Module: funding_kernel.models.contribution
Responsibility: ORM persistence for contributions and their 1:1 approval
    status rows.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Exactly one of case_id / project_id is set (check constraint).
    - amount > 0.
    - Contribution financial fields (amount, donor, target, payment method,
      revision link) are immutable after INSERT; only status and notes move.
    - One approval status row per contribution (unique contribution_id).
    - resubmission_count never decreases.

Failure modes:
    - IntegrityError on constraint violations.
    - ImmutabilityViolationError on a forbidden UPDATE or any DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from funding_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from funding_kernel.domain.contribution import (
    ApprovalSnapshot,
    ApprovalStatus,
    ContributionStatus,
)
from funding_kernel.exceptions import ImmutabilityViolationError


class Contribution(TrackedBase):
    """A donor's pledge toward a case or a project cycle."""

    __tablename__ = "contributions"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_contributions_amount_positive"),
        CheckConstraint(
            "(case_id IS NOT NULL AND project_id IS NULL) OR "
            "(case_id IS NULL AND project_id IS NOT NULL)",
            name="ck_contributions_single_target",
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_contributions_valid_status",
        ),
        Index("ix_contributions_case", "case_id"),
        Index("ix_contributions_project_cycle", "project_id", "project_cycle_id"),
        Index("ix_contributions_donor", "donor_id"),
        Index("ix_contributions_original", "original_contribution_id"),
    )

    case_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("cases.id"), nullable=True,
    )
    project_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=True,
    )
    # Cycle active when the contribution was made
    project_cycle_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("project_cycles.id"), nullable=True,
    )
    donor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ContributionStatus.PENDING.value,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_contribution_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("contributions.id"), nullable=True,
    )
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revision_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

    approval: Mapped["ContributionApprovalStatus"] = relationship(
        "ContributionApprovalStatus",
        back_populates="contribution",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="joined",
    )

    def __repr__(self) -> str:
        return f"<Contribution {self.id} {self.amount} status={self.status}>"

    def to_snapshot(self) -> ApprovalSnapshot:
        approval = self.approval
        return ApprovalSnapshot(
            contribution_id=self.id,
            donor_id=self.donor_id,
            amount=self.amount,
            payment_method=self.payment_method,
            status=ApprovalStatus(approval.status),
            case_id=self.case_id,
            project_id=self.project_id,
            project_cycle_id=self.project_cycle_id,
            admin_id=approval.admin_id,
            admin_comment=approval.admin_comment,
            rejection_reason=approval.rejection_reason,
            donor_reply=approval.donor_reply,
            donor_reply_date=approval.donor_reply_date,
            resubmission_count=approval.resubmission_count,
            original_contribution_id=self.original_contribution_id,
            revision_number=self.revision_number,
        )


class ContributionApprovalStatus(TrackedBase):
    """Review state of one contribution."""

    __tablename__ = "contribution_approval_status"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'revised')",
            name="ck_contribution_approval_valid_status",
        ),
        CheckConstraint(
            "resubmission_count >= 0",
            name="ck_contribution_approval_resubmission_non_negative",
        ),
        Index("ix_contribution_approval_status", "status"),
    )

    contribution_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contributions.id"), nullable=False, unique=True,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalStatus.PENDING.value,
    )
    admin_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    admin_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    donor_reply: Mapped[str | None] = mapped_column(Text, nullable=True)
    donor_reply_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    resubmission_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    contribution: Mapped[Contribution] = relationship(
        Contribution, back_populates="approval",
    )

    def __repr__(self) -> str:
        return f"<ContributionApprovalStatus {self.contribution_id} {self.status}>"


# =============================================================================
# ORM-Level Immutability
# =============================================================================

_CONTRIBUTION_MUTABLE_FIELDS = frozenset({"status", "notes", "updated_at", "updated_by_id"})


@event.listens_for(Contribution, "before_update")
def prevent_contribution_field_update(mapper, connection, target):
    """Only status and notes may change once a contribution exists."""
    state = inspect(target)
    changed = {
        attr.key
        for attr in state.attrs
        if attr.history.has_changes()
    }
    forbidden = changed - _CONTRIBUTION_MUTABLE_FIELDS - {"approval"}
    if forbidden:
        raise ImmutabilityViolationError(
            entity_type="Contribution",
            entity_id=str(target.id),
            reason=f"Fields are immutable: {', '.join(sorted(forbidden))}",
        )


@event.listens_for(Contribution, "before_delete")
def prevent_contribution_delete(mapper, connection, target):
    """Contributions are never deleted."""
    raise ImmutabilityViolationError(
        entity_type="Contribution",
        entity_id=str(target.id),
        reason="Contributions cannot be deleted",
    )


@event.listens_for(ContributionApprovalStatus, "before_update")
def prevent_resubmission_count_decrease(mapper, connection, target):
    """resubmission_count is monotonic."""
    history = inspect(target).attrs.resubmission_count.history
    if history.deleted and history.added:
        old, new = history.deleted[0], history.added[0]
        if old is not None and new is not None and new < old:
            raise ImmutabilityViolationError(
                entity_type="ContributionApprovalStatus",
                entity_id=str(target.id),
                reason="resubmission_count cannot decrease",
            )


@event.listens_for(ContributionApprovalStatus, "before_delete")
def prevent_approval_status_delete(mapper, connection, target):
    """Approval status rows are never deleted."""
    raise ImmutabilityViolationError(
        entity_type="ContributionApprovalStatus",
        entity_id=str(target.id),
        reason="Contribution approval status rows cannot be deleted",
    )
