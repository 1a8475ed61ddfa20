"""
Contribution approval domain (``funding_kernel.domain.contribution``).

Responsibility
--------------
The approval-status state machine for contributions, amount validation,
and the value objects returned by the approval workflow.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``APPROVAL_TRANSITIONS`` defines the only valid status moves.
  ``approved`` and ``revised`` are terminal.
* ``rejected -> pending`` is a resubmission of the same contribution;
  ``rejected -> revised`` retires it in favour of a new one.
* Amounts are positive, carry at most two decimal places and fit the
  money column (at most MAX_MONEY).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from funding_kernel.db.types import (
    MAX_MONEY,
    MONEY_DECIMAL_PLACES,
    money_from_value,
    round_money,
)
from funding_kernel.exceptions import InvalidAmountError, MissingFieldError


class ApprovalStatus(str, Enum):
    """Contribution approval lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISED = "revised"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
    }),
    ApprovalStatus.REJECTED: frozenset({
        ApprovalStatus.PENDING,
        ApprovalStatus.REVISED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REVISED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REVISED,
})


class ContributionStatus(str, Enum):
    """Status column kept on the contribution row itself."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def can_transition(from_status: ApprovalStatus, to_status: ApprovalStatus) -> bool:
    return to_status in APPROVAL_TRANSITIONS.get(from_status, frozenset())


def contribution_status_for(approval_status: ApprovalStatus) -> ContributionStatus:
    """Mirror an approval status onto the contribution row.

    A revised contribution stays ``rejected``; its successor carries on.
    """
    if approval_status == ApprovalStatus.REVISED:
        return ContributionStatus.REJECTED
    return ContributionStatus(approval_status.value)


def normalize_amount(amount: Decimal | int | str) -> Decimal:
    """Validate a client-supplied amount and return it at money scale.

    Raises:
        InvalidAmountError: For floats, non-numbers, more than two
            decimal places, values that are not positive, or values
            above MAX_MONEY.
    """
    try:
        value = money_from_value(amount)
    except ValueError as exc:
        raise InvalidAmountError(amount, str(exc)) from exc
    if value <= 0:
        raise InvalidAmountError(amount, "must be greater than zero")
    exponent = value.as_tuple().exponent
    if isinstance(exponent, int) and -exponent > MONEY_DECIMAL_PLACES:
        raise InvalidAmountError(amount, "at most two decimal places are allowed")
    if value > MAX_MONEY:
        raise InvalidAmountError(amount, f"must not exceed {MAX_MONEY}")
    return round_money(value)


def require_text(value: str | None, field_name: str) -> str:
    """Return ``value`` stripped, or raise if it is missing or blank."""
    if value is None or not value.strip():
        raise MissingFieldError(field_name)
    return value.strip()


def revision_notes(explanation: str) -> str:
    return f"REVISION: {explanation}"


def revision_admin_comment(original_contribution_id: UUID, rejection_reason: str | None) -> str:
    return (
        f"Revision of contribution {original_contribution_id}. "
        f"Original rejection reason: {rejection_reason or 'not recorded'}"
    )


@dataclass(frozen=True)
class ApprovalSnapshot:
    """Read-only view of a contribution and its approval status."""

    contribution_id: UUID
    donor_id: UUID
    amount: Decimal
    payment_method: str
    status: ApprovalStatus
    case_id: UUID | None
    project_id: UUID | None
    project_cycle_id: UUID | None
    admin_id: UUID | None
    admin_comment: str | None
    rejection_reason: str | None
    donor_reply: str | None
    donor_reply_date: datetime | None
    resubmission_count: int
    original_contribution_id: UUID | None
    revision_number: int


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of an approve or reject call.

    ``changed`` is False when the call was an idempotent repeat.
    """

    contribution_id: UUID
    status: ApprovalStatus
    changed: bool
    funded_amount: Decimal | None = None
