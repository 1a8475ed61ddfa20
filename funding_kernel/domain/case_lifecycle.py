"""
Case lifecycle domain (``funding_kernel.domain.case_lifecycle``).

Responsibility
--------------
The closed case-status transition table and the pure rules around it:
which (from, to) pairs exist, which roles may trigger them, which need a
reason, which the system may trigger on its own, and the human-readable
status-update note derived from each accepted transition.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  The engine
that applies transitions lives in
``funding_kernel.services.case_lifecycle_service``.

Invariants enforced
-------------------
* A status change is valid only if ``find_transition(from, to)`` returns a
  rule.  Every other pair is rejected regardless of the actor.
* ``closed`` and ``completed`` have no outgoing edges.
* Fully funded means ``current_amount >= target_amount``; equality counts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from funding_kernel.domain.rbac import ADMIN, CREATOR_ROLES, expand_roles


class CaseStatus(str, Enum):
    """Case lifecycle states."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    PUBLISHED = "published"
    CLOSED = "closed"
    COMPLETED = "completed"


class CaseType(str, Enum):
    """One-time cases close when funded; recurring cases stay open."""

    ONE_TIME = "one-time"
    RECURRING = "recurring"


class UpdateType(str, Enum):
    """Kinds of status-update notes shown on a case timeline."""

    PROGRESS = "progress"
    MILESTONE = "milestone"
    GENERAL = "general"


@dataclass(frozen=True)
class TransitionRule:
    """One row of the case transition table."""

    from_status: CaseStatus
    to_status: CaseStatus
    allowed_roles: frozenset[str]
    requires_reason: bool = False
    system_allowed: bool = False

    def permits_roles(self, roles: frozenset[str]) -> bool:
        """True if any of ``roles`` (after implications) is allowed."""
        return bool(expand_roles(roles) & self.allowed_roles)

    @property
    def is_creator_transition(self) -> bool:
        return bool(self.allowed_roles & CREATOR_ROLES)


_ADMIN_ONLY = frozenset({ADMIN})

CASE_TRANSITIONS: tuple[TransitionRule, ...] = (
    TransitionRule(
        CaseStatus.DRAFT, CaseStatus.SUBMITTED,
        allowed_roles=CREATOR_ROLES | _ADMIN_ONLY,
    ),
    TransitionRule(
        CaseStatus.SUBMITTED, CaseStatus.PUBLISHED,
        allowed_roles=_ADMIN_ONLY,
    ),
    TransitionRule(
        CaseStatus.SUBMITTED, CaseStatus.UNDER_REVIEW,
        allowed_roles=_ADMIN_ONLY, requires_reason=True,
    ),
    TransitionRule(
        CaseStatus.UNDER_REVIEW, CaseStatus.PUBLISHED,
        allowed_roles=_ADMIN_ONLY,
    ),
    TransitionRule(
        CaseStatus.UNDER_REVIEW, CaseStatus.CLOSED,
        allowed_roles=_ADMIN_ONLY, requires_reason=True,
    ),
    TransitionRule(
        CaseStatus.PUBLISHED, CaseStatus.CLOSED,
        allowed_roles=_ADMIN_ONLY, system_allowed=True,
    ),
    TransitionRule(
        CaseStatus.PUBLISHED, CaseStatus.UNDER_REVIEW,
        allowed_roles=_ADMIN_ONLY, requires_reason=True,
    ),
)

_RULES_BY_PAIR: dict[tuple[CaseStatus, CaseStatus], TransitionRule] = {
    (rule.from_status, rule.to_status): rule for rule in CASE_TRANSITIONS
}


def find_transition(
    from_status: CaseStatus | str,
    to_status: CaseStatus | str,
) -> TransitionRule | None:
    """Look up the rule for a status pair; None if the move does not exist."""
    try:
        key = (CaseStatus(from_status), CaseStatus(to_status))
    except ValueError:
        return None
    return _RULES_BY_PAIR.get(key)


def transitions_from(from_status: CaseStatus | str) -> tuple[TransitionRule, ...]:
    """All rules leaving ``from_status``, in table order."""
    status = CaseStatus(from_status)
    return tuple(rule for rule in CASE_TRANSITIONS if rule.from_status == status)


def is_fully_funded(current_amount: Decimal, target_amount: Decimal) -> bool:
    return current_amount >= target_amount


def requires_reason(from_status: CaseStatus | str, to_status: CaseStatus | str) -> bool:
    rule = find_transition(from_status, to_status)
    return rule is not None and rule.requires_reason


# =========================================================================
# Snapshots and notes
# =========================================================================


@dataclass(frozen=True)
class CaseSnapshot:
    """Read-only view of a case returned to callers."""

    case_id: UUID
    title: str
    status: CaseStatus
    case_type: CaseType
    target_amount: Decimal
    current_amount: Decimal
    created_by: UUID
    assigned_to: UUID | None = None
    sponsored_by: UUID | None = None
    category: str | None = None
    created_at: datetime | None = None

    @property
    def is_fully_funded(self) -> bool:
        return is_fully_funded(self.current_amount, self.target_amount)

    @property
    def stakeholders(self) -> tuple[UUID, ...]:
        """Creator, assignee and sponsor, deduplicated, in that order."""
        seen: list[UUID] = []
        for user_id in (self.created_by, self.assigned_to, self.sponsored_by):
            if user_id is not None and user_id not in seen:
                seen.append(user_id)
        return tuple(seen)


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One accepted transition as recorded in the history table."""

    case_id: UUID
    previous_status: CaseStatus
    new_status: CaseStatus
    changed_by: UUID | None
    system_triggered: bool
    change_reason: str | None
    changed_at: datetime


@dataclass(frozen=True)
class StatusUpdateNote:
    """Human-readable timeline note derived from a transition."""

    title: str
    content: str
    update_type: UpdateType
    is_public: bool


def status_update_note(
    to_status: CaseStatus,
    system_triggered: bool,
    reason: str | None = None,
) -> StatusUpdateNote:
    """Derive the timeline note for a transition into ``to_status``."""
    if to_status == CaseStatus.PUBLISHED:
        note = StatusUpdateNote(
            title="Case Published!",
            content="This case has been approved and is now live. "
                    "Contributions are now being accepted.",
            update_type=UpdateType.MILESTONE,
            is_public=True,
        )
    elif to_status == CaseStatus.UNDER_REVIEW:
        note = StatusUpdateNote(
            title="Case Under Review",
            content="This case is being reviewed by our team.",
            update_type=UpdateType.GENERAL,
            is_public=False,
        )
    elif to_status == CaseStatus.CLOSED and system_triggered:
        note = StatusUpdateNote(
            title="Case Successfully Completed!",
            content="The funding goal has been reached. "
                    "Thank you to everyone who contributed.",
            update_type=UpdateType.MILESTONE,
            is_public=True,
        )
    elif to_status == CaseStatus.CLOSED:
        note = StatusUpdateNote(
            title="Case Closed",
            content="This case has been closed.",
            update_type=UpdateType.GENERAL,
            is_public=True,
        )
    elif to_status == CaseStatus.SUBMITTED:
        note = StatusUpdateNote(
            title="Case Submitted for Review",
            content="This case has been submitted and is awaiting review.",
            update_type=UpdateType.PROGRESS,
            is_public=False,
        )
    else:
        note = StatusUpdateNote(
            title=f"Status Changed to {to_status.value}",
            content=f"The case status is now {to_status.value}.",
            update_type=UpdateType.GENERAL,
            is_public=False,
        )

    if reason:
        note = StatusUpdateNote(
            title=note.title,
            content=f"{note.content} Reason: {reason}",
            update_type=note.update_type,
            is_public=note.is_public,
        )
    return note


def auto_closure_reason(current_amount: Decimal, target_amount: Decimal) -> str:
    """Reason text recorded when the system closes a funded case."""
    return (
        f"Case automatically closed - funding goal reached "
        f"({current_amount}/{target_amount})"
    )
