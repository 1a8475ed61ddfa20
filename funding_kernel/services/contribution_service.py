"""
ContributionApprovalWorkflow -- submission, review, resubmission and revision.

Responsibility:
    Owns the contribution approval state machine.  Every change that can
    affect which contributions are approved is followed, in the same
    transaction, by a recompute of the owning case's (or cycle's and
    project's) funded amount through FundingTotals.

Architecture position:
    Kernel > Services.  Called by FundingWorkflowService.  Never commits.

Invariants enforced:
    - Approval moves follow ``APPROVAL_TRANSITIONS``; ``approved`` and
      ``revised`` are terminal.
    - Re-approving an approved contribution is a no-op; it is never
      counted twice.
    - Only the original donor may resubmit or revise.
    - A revision creates a new contribution linked to the original;
      the original is retired as ``revised``.
    - Contribution amounts are positive two-place decimals.

Failure modes:
    - ContributionNotFoundError
    - InvalidApprovalTransitionError
    - PermissionDeniedError / NotContributionOwnerError
    - MissingFieldError / InvalidAmountError / InvalidParentStateError /
      NotRevisableError

Audit relevance:
    One audit event per operation, with before/after approval status.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from funding_kernel.domain.actor import Actor
from funding_kernel.domain.case_lifecycle import CaseStatus
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.contribution import (
    ApprovalOutcome,
    ApprovalSnapshot,
    ApprovalStatus,
    can_transition,
    contribution_status_for,
    normalize_amount,
    require_text,
    revision_admin_comment,
    revision_notes,
)
from funding_kernel.domain.events import (
    NotificationEvent,
    NotificationKind,
    NotificationOutbox,
)
from funding_kernel.domain.project import CycleStatus, ProjectStatus
from funding_kernel.domain.rbac import Permissions
from funding_kernel.exceptions import (
    CaseNotFoundError,
    ContributionNotFoundError,
    InvalidApprovalTransitionError,
    InvalidParentStateError,
    MissingFieldError,
    NotContributionOwnerError,
    NotRevisableError,
    ProjectNotFoundError,
)
from funding_kernel.logging_config import get_logger
from funding_kernel.models.audit_event import AuditAction
from funding_kernel.models.case import Case
from funding_kernel.models.contribution import Contribution, ContributionApprovalStatus
from funding_kernel.models.project import Project, ProjectCycle
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.funding_totals import FundingTotals
from funding_kernel.services.permission_service import PermissionEvaluator

logger = get_logger("services.contribution")


def _approval_state(approval: ContributionApprovalStatus) -> dict[str, Any]:
    return {
        "status": approval.status,
        "resubmission_count": approval.resubmission_count,
        "rejection_reason": approval.rejection_reason,
        "donor_reply": approval.donor_reply,
    }


class ContributionApprovalWorkflow:
    """
    Workflow for contribution submission and review.

    Contract:
        Mutating methods lock the contribution's approval status row,
        validate, write, recompute funded totals, record the audit event
        and queue a notification.  They flush; the caller commits.

    Non-goals:
        - Does NOT move case status (automatic closure is a separate job).
        - Does NOT process payments.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        evaluator: PermissionEvaluator,
        outbox: NotificationOutbox | None = None,
        clock: Clock | None = None,
        totals: FundingTotals | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._evaluator = evaluator
        self._outbox = outbox if outbox is not None else NotificationOutbox()
        self._clock = clock or SystemClock()
        self._totals = totals or FundingTotals(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _lock_approval(self, contribution_id: UUID) -> ContributionApprovalStatus:
        approval = self._session.execute(
            select(ContributionApprovalStatus)
            .where(ContributionApprovalStatus.contribution_id == contribution_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if approval is None:
            raise ContributionNotFoundError(str(contribution_id))
        return approval

    def _load_contribution(self, contribution_id: UUID) -> Contribution:
        contribution = self._session.get(Contribution, contribution_id)
        if contribution is None:
            raise ContributionNotFoundError(str(contribution_id))
        return contribution

    def _active_cycle(self, project_id: UUID) -> ProjectCycle | None:
        return self._session.execute(
            select(ProjectCycle).where(
                ProjectCycle.project_id == project_id,
                ProjectCycle.status == CycleStatus.ACTIVE.value,
            )
        ).scalar_one_or_none()

    def _require_open_target(
        self,
        case_id: UUID | None,
        project_id: UUID | None,
        action: str,
    ) -> ProjectCycle | None:
        """Check the owning case is published or the project active.

        Returns the project's active cycle for project targets.
        """
        if case_id is not None:
            case = self._session.get(Case, case_id)
            if case is None:
                raise CaseNotFoundError(str(case_id))
            if case.status != CaseStatus.PUBLISHED.value:
                raise InvalidParentStateError("Case", str(case_id), case.status, action)
            return None

        project = self._session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        if project.status != ProjectStatus.ACTIVE.value:
            raise InvalidParentStateError("Project", str(project_id), project.status, action)
        cycle = self._active_cycle(project_id)
        if cycle is None:
            raise InvalidParentStateError("Project", str(project_id), "without active cycle", action)
        return cycle

    def _require_owner(self, contribution: Contribution, donor: Actor) -> None:
        if donor.is_system or contribution.donor_id != donor.user_id:
            logger.warning(
                "contribution_owner_mismatch",
                extra={
                    "contribution_id": str(contribution.id),
                    "actor_id": str(donor.actor_id),
                },
            )
            raise NotContributionOwnerError(str(contribution.id), str(donor.actor_id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_approval_status(self, contribution_id: UUID) -> ApprovalSnapshot:
        return self._load_contribution(contribution_id).to_snapshot()

    def get_revision_chain(self, contribution_id: UUID) -> list[ApprovalSnapshot]:
        """The whole revision chain containing a contribution, oldest first."""
        current = self._load_contribution(contribution_id)
        seen = {current.id}
        while current.original_contribution_id is not None:
            parent = self._load_contribution(current.original_contribution_id)
            if parent.id in seen:
                break
            seen.add(parent.id)
            current = parent

        chain = [current]
        while True:
            successor = self._session.execute(
                select(Contribution).where(
                    Contribution.original_contribution_id == chain[-1].id,
                )
            ).scalar_one_or_none()
            if successor is None or successor.id in {c.id for c in chain}:
                break
            chain.append(successor)
        return [c.to_snapshot() for c in chain]

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        donor: Actor,
        amount: Decimal | int | str,
        payment_method: str,
        case_id: UUID | None = None,
        project_id: UUID | None = None,
        notes: str | None = None,
    ) -> ApprovalSnapshot:
        """
        Create a pending contribution toward a case or a project.

        Raises:
            PermissionDeniedError: Donor lacks ``contributions:create``.
            MissingFieldError: Neither or both targets, or blank method.
            InvalidAmountError: Amount is not a positive two-place decimal.
            InvalidParentStateError: Case not published or project not active.
        """
        self._evaluator.require_permission(donor, Permissions.CONTRIBUTIONS_CREATE)
        if (case_id is None) == (project_id is None):
            raise MissingFieldError("case_id or project_id")
        value = normalize_amount(amount)
        method = require_text(payment_method, "payment_method")
        cycle = self._require_open_target(case_id, project_id, "contribute")

        now = self._clock.now()
        contribution = Contribution(
            case_id=case_id,
            project_id=project_id,
            project_cycle_id=cycle.id if cycle is not None else None,
            donor_id=donor.actor_id,
            amount=value,
            payment_method=method,
            status=ApprovalStatus.PENDING.value,
            notes=notes,
            revision_number=0,
            created_at=now,
            created_by_id=donor.actor_id,
        )
        contribution.approval = ContributionApprovalStatus(
            status=ApprovalStatus.PENDING.value,
            resubmission_count=0,
            created_at=now,
            created_by_id=donor.actor_id,
        )
        self._session.add(contribution)
        self._session.flush()

        self._auditor.record(
            donor,
            AuditAction.CONTRIBUTION_SUBMITTED,
            "Contribution",
            contribution.id,
            after=_approval_state(contribution.approval),
            amount=value,
            case_id=case_id,
            project_id=project_id,
        )
        self._notify_reviewers(
            NotificationKind.CONTRIBUTION_SUBMITTED,
            contribution,
            "New contribution awaiting review",
            f"A contribution of {value} was submitted.",
        )
        logger.info(
            "contribution_submitted",
            extra={"contribution_id": str(contribution.id), "amount": str(value)},
        )
        return contribution.to_snapshot()

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def approve(self, contribution_id: UUID, actor: Actor) -> ApprovalOutcome:
        """
        Approve a pending contribution and recompute funded totals.

        Approving an already-approved contribution returns an outcome with
        ``changed=False`` and writes nothing.

        Raises:
            PermissionDeniedError: Actor lacks ``contributions:approve``.
            ContributionNotFoundError: No such contribution.
            InvalidApprovalTransitionError: Status is rejected or revised.
        """
        self._evaluator.require_permission(actor, Permissions.CONTRIBUTIONS_APPROVE)
        approval = self._lock_approval(contribution_id)
        current = ApprovalStatus(approval.status)

        if current == ApprovalStatus.APPROVED:
            logger.info(
                "contribution_already_approved",
                extra={"contribution_id": str(contribution_id)},
            )
            return ApprovalOutcome(contribution_id, current, changed=False)
        if not can_transition(current, ApprovalStatus.APPROVED):
            raise InvalidApprovalTransitionError(
                str(contribution_id), current.value, ApprovalStatus.APPROVED.value,
            )

        before = _approval_state(approval)
        funded = self._decide(approval, ApprovalStatus.APPROVED, actor)

        self._auditor.record(
            actor,
            AuditAction.CONTRIBUTION_APPROVED,
            "Contribution",
            contribution_id,
            before=before,
            after=_approval_state(approval),
            funded_amount=funded,
        )
        contribution = approval.contribution
        self._notify_donor(
            NotificationKind.CONTRIBUTION_APPROVED,
            contribution,
            "Contribution approved",
            f"Your contribution of {contribution.amount} has been approved.",
        )
        logger.info(
            "contribution_approved",
            extra={"contribution_id": str(contribution_id), "funded_amount": str(funded)},
        )
        return ApprovalOutcome(
            contribution_id, ApprovalStatus.APPROVED, changed=True, funded_amount=funded,
        )

    def reject(
        self,
        contribution_id: UUID,
        actor: Actor,
        rejection_reason: str | None,
    ) -> ApprovalOutcome:
        """
        Reject a pending contribution with a reason.

        Raises:
            PermissionDeniedError: Actor lacks ``contributions:reject``.
            MissingFieldError: Reason is blank.
            ContributionNotFoundError: No such contribution.
            InvalidApprovalTransitionError: Status is not pending.
        """
        self._evaluator.require_permission(actor, Permissions.CONTRIBUTIONS_REJECT)
        reason = require_text(rejection_reason, "rejection_reason")
        approval = self._lock_approval(contribution_id)
        current = ApprovalStatus(approval.status)
        if not can_transition(current, ApprovalStatus.REJECTED):
            raise InvalidApprovalTransitionError(
                str(contribution_id), current.value, ApprovalStatus.REJECTED.value,
            )

        before = _approval_state(approval)
        approval.rejection_reason = reason
        funded = self._decide(approval, ApprovalStatus.REJECTED, actor)

        self._auditor.record(
            actor,
            AuditAction.CONTRIBUTION_REJECTED,
            "Contribution",
            contribution_id,
            before=before,
            after=_approval_state(approval),
            reason=reason,
        )
        self._notify_donor(
            NotificationKind.CONTRIBUTION_REJECTED,
            approval.contribution,
            "Contribution rejected",
            f"Your contribution was rejected. Reason: {reason}",
        )
        logger.info(
            "contribution_rejected",
            extra={"contribution_id": str(contribution_id)},
        )
        return ApprovalOutcome(
            contribution_id, ApprovalStatus.REJECTED, changed=True, funded_amount=funded,
        )

    def _decide(
        self,
        approval: ContributionApprovalStatus,
        status: ApprovalStatus,
        actor: Actor,
    ) -> Decimal:
        approval.status = status.value
        approval.admin_id = actor.user_id
        approval.decided_at = self._clock.now()
        approval.updated_by_id = actor.user_id

        contribution = approval.contribution
        contribution.status = contribution_status_for(status).value
        contribution.updated_by_id = actor.user_id
        self._session.flush()
        return self._totals.recompute_for(contribution)

    # ------------------------------------------------------------------
    # Donor responses
    # ------------------------------------------------------------------

    def resubmit(self, contribution_id: UUID, donor: Actor, reply_text: str | None) -> ApprovalSnapshot:
        """
        Send a rejected contribution back to review with the donor's reply.

        Postconditions:
            - Status is ``pending``; ``resubmission_count`` grew by one.
            - The amount and funded totals are unchanged.

        Raises:
            ContributionNotFoundError: No such contribution.
            NotContributionOwnerError: Caller is not the donor.
            InvalidApprovalTransitionError: Status is not rejected.
            MissingFieldError: Reply is blank.
        """
        approval = self._lock_approval(contribution_id)
        contribution = approval.contribution
        self._require_owner(contribution, donor)
        current = ApprovalStatus(approval.status)
        if current != ApprovalStatus.REJECTED:
            raise InvalidApprovalTransitionError(
                str(contribution_id), current.value, ApprovalStatus.PENDING.value,
            )
        reply = require_text(reply_text, "donor_reply")

        before = _approval_state(approval)
        approval.status = ApprovalStatus.PENDING.value
        approval.donor_reply = reply
        approval.donor_reply_date = self._clock.now()
        approval.resubmission_count = approval.resubmission_count + 1
        approval.updated_by_id = donor.user_id
        contribution.status = contribution_status_for(ApprovalStatus.PENDING).value
        contribution.updated_by_id = donor.user_id
        self._session.flush()
        self._totals.recompute_for(contribution)

        self._auditor.record(
            donor,
            AuditAction.CONTRIBUTION_RESUBMITTED,
            "Contribution",
            contribution_id,
            before=before,
            after=_approval_state(approval),
        )
        self._notify_reviewers(
            NotificationKind.CONTRIBUTION_RESUBMITTED,
            contribution,
            "Contribution resubmitted",
            f"A rejected contribution was resubmitted: {reply}",
        )
        logger.info(
            "contribution_resubmitted",
            extra={
                "contribution_id": str(contribution_id),
                "resubmission_count": approval.resubmission_count,
            },
        )
        return contribution.to_snapshot()

    def revise(
        self,
        contribution_id: UUID,
        donor: Actor,
        new_amount: Decimal | int | str,
        new_payment_method: str,
        explanation: str | None,
    ) -> UUID:
        """
        Replace a rejected contribution with a corrected one.

        Postconditions:
            - A new pending contribution exists with
              ``original_contribution_id == contribution_id`` and
              ``revision_number`` one above the original's.
            - The original's approval status is ``revised`` (terminal).

        Returns:
            The new contribution's id.

        Raises:
            ContributionNotFoundError: No such contribution.
            NotContributionOwnerError: Caller is not the donor.
            NotRevisableError: Status is not rejected.
            InvalidParentStateError: Case not published or project not active.
            InvalidAmountError / MissingFieldError: Bad amount, method or
                explanation.
        """
        approval = self._lock_approval(contribution_id)
        original = approval.contribution
        self._require_owner(original, donor)
        if approval.status != ApprovalStatus.REJECTED.value:
            raise NotRevisableError(str(contribution_id), approval.status)
        cycle = self._require_open_target(original.case_id, original.project_id, "revise")
        value = normalize_amount(new_amount)
        method = require_text(new_payment_method, "payment_method")
        reason = require_text(explanation, "explanation")

        now = self._clock.now()
        revision = Contribution(
            case_id=original.case_id,
            project_id=original.project_id,
            project_cycle_id=cycle.id if cycle is not None else None,
            donor_id=original.donor_id,
            amount=value,
            payment_method=method,
            status=ApprovalStatus.PENDING.value,
            notes=revision_notes(reason),
            original_contribution_id=original.id,
            revision_number=original.revision_number + 1,
            revision_explanation=reason,
            created_at=now,
            created_by_id=donor.actor_id,
        )
        revision.approval = ContributionApprovalStatus(
            status=ApprovalStatus.PENDING.value,
            admin_comment=revision_admin_comment(original.id, approval.rejection_reason),
            resubmission_count=0,
            created_at=now,
            created_by_id=donor.actor_id,
        )
        self._session.add(revision)

        before = _approval_state(approval)
        approval.status = ApprovalStatus.REVISED.value
        approval.donor_reply = reason
        approval.donor_reply_date = now
        approval.resubmission_count = approval.resubmission_count + 1
        approval.updated_by_id = donor.user_id
        self._session.flush()
        self._totals.recompute_for(original)

        self._auditor.record(
            donor,
            AuditAction.CONTRIBUTION_REVISED,
            "Contribution",
            original.id,
            before=before,
            after=_approval_state(approval),
            revision_id=revision.id,
        )
        self._auditor.record(
            donor,
            AuditAction.CONTRIBUTION_SUBMITTED,
            "Contribution",
            revision.id,
            after=_approval_state(revision.approval),
            amount=value,
            revision_of=original.id,
        )
        self._notify_reviewers(
            NotificationKind.CONTRIBUTION_REVISED,
            revision,
            "Contribution revised",
            f"A rejected contribution was revised to {value}.",
        )
        logger.info(
            "contribution_revised",
            extra={
                "contribution_id": str(original.id),
                "revision_id": str(revision.id),
                "amount": str(value),
            },
        )
        return revision.id

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify_donor(
        self,
        kind: NotificationKind,
        contribution: Contribution,
        title: str,
        message: str,
    ) -> None:
        self._outbox.queue(NotificationEvent(
            kind=kind,
            recipients=(contribution.donor_id,),
            title=title,
            message=message,
            case_id=contribution.case_id,
            project_id=contribution.project_id,
            contribution_id=contribution.id,
            payload={"amount": str(contribution.amount)},
        ))

    def _notify_reviewers(
        self,
        kind: NotificationKind,
        contribution: Contribution,
        title: str,
        message: str,
    ) -> None:
        recipients = tuple(
            user_id
            for user_id in self._evaluator.users_with_permission(
                Permissions.CONTRIBUTIONS_APPROVE,
            )
            if user_id != contribution.donor_id
        )
        self._outbox.queue(NotificationEvent(
            kind=kind,
            recipients=recipients,
            title=title,
            message=message,
            case_id=contribution.case_id,
            project_id=contribution.project_id,
            contribution_id=contribution.id,
            payload={"amount": str(contribution.amount)},
        ))
