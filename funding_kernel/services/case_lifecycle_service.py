"""
CaseLifecycleEngine -- applies case status transitions.

Responsibility:
    Validates and applies every case status change against the closed
    transition table in ``funding_kernel.domain.case_lifecycle``, writes
    the status history row, the derived timeline note and the audit
    event, and queues the lifecycle notification.

Architecture position:
    Kernel > Services.  Called by FundingWorkflowService and by the
    automatic closure job.  Never commits.

Invariants enforced:
    - A transition is valid only if the table has a rule for the pair;
      the check happens before authorization.
    - User actors need a role in the rule's allowed set (super_admin
      satisfies admin).  An actor acting only through a creator role may
      move only cases they created.
    - System actors may only take system-allowed transitions, and the
      system closure additionally requires a fully funded one-time case.
    - Exactly one history row per accepted transition, written in the same
      transaction as the status update.

Failure modes:
    - CaseNotFoundError
    - InvalidCaseTransitionError
    - TransitionNotPermittedError / NotCaseOwnerError / PermissionDeniedError
    - ReasonRequiredError / NotFullyFundedError / MissingFieldError /
      InvalidAmountError

Audit relevance:
    ``case_created`` and ``case_status_changed`` events carry before/after
    snapshots of the status and amounts.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from funding_kernel.db.types import ZERO
from funding_kernel.domain.actor import Actor
from funding_kernel.domain.case_lifecycle import (
    CaseSnapshot,
    CaseStatus,
    CaseType,
    StatusHistoryEntry,
    TransitionRule,
    find_transition,
    is_fully_funded,
    status_update_note,
    transitions_from,
)
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.contribution import normalize_amount, require_text
from funding_kernel.domain.events import (
    NotificationEvent,
    NotificationKind,
    NotificationOutbox,
)
from funding_kernel.domain.rbac import ADMIN, Permissions, expand_roles
from funding_kernel.exceptions import (
    CaseNotFoundError,
    InvalidCaseTransitionError,
    NotCaseOwnerError,
    NotFullyFundedError,
    ReasonRequiredError,
    TransitionNotPermittedError,
)
from funding_kernel.logging_config import get_logger
from funding_kernel.models.audit_event import AuditAction
from funding_kernel.models.case import Case, CaseStatusHistory, CaseUpdate
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.permission_service import PermissionEvaluator

logger = get_logger("services.case_lifecycle")


def _case_state(case: Case) -> dict[str, Any]:
    return {
        "status": case.status,
        "current_amount": case.current_amount,
        "target_amount": case.target_amount,
    }


class CaseLifecycleEngine:
    """
    Engine for case creation and status transitions.

    Contract:
        Accepts a case id, a target status and an Actor.  Returns a frozen
        ``CaseSnapshot`` of the case after the change.  All writes flush
        inside the caller's transaction.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT dispatch notifications; it only queues them on the
          outbox for dispatch after commit.
        - Does NOT change ``current_amount`` (see FundingTotals).
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        evaluator: PermissionEvaluator,
        outbox: NotificationOutbox | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._evaluator = evaluator
        self._outbox = outbox if outbox is not None else NotificationOutbox()
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _load_case(self, case_id: UUID, for_update: bool = False) -> Case:
        stmt = select(Case).where(Case.id == case_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        case = self._session.execute(stmt).scalar_one_or_none()
        if case is None:
            raise CaseNotFoundError(str(case_id))
        return case

    def _next_history_sequence(self, case_id: UUID) -> int:
        # Caller holds the case row lock.
        current = self._session.execute(
            select(func.max(CaseStatusHistory.sequence))
            .where(CaseStatusHistory.case_id == case_id)
        ).scalar_one()
        return (current or 0) + 1

    def get_case(self, case_id: UUID) -> CaseSnapshot:
        return self._load_case(case_id).to_snapshot()

    def get_status_history(self, case_id: UUID) -> list[StatusHistoryEntry]:
        """Accepted transitions of a case, newest first."""
        self._load_case(case_id)
        rows = self._session.execute(
            select(CaseStatusHistory)
            .where(CaseStatusHistory.case_id == case_id)
            .order_by(CaseStatusHistory.changed_at.desc(), CaseStatusHistory.sequence.desc())
        ).scalars().all()
        return [row.to_entry() for row in rows]

    def available_transitions(self, case_id: UUID, actor: Actor) -> tuple[CaseStatus, ...]:
        """Target statuses the actor could request from the case's current status.

        Reason and funding requirements are not evaluated here.
        """
        case = self._load_case(case_id)
        return tuple(
            rule.to_status
            for rule in transitions_from(case.status)
            if self._is_permitted(rule, case, actor)
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_case(
        self,
        title: str,
        target_amount: Decimal | int | str,
        actor: Actor,
        case_type: CaseType = CaseType.ONE_TIME,
        description: str | None = None,
        category: str | None = None,
        assigned_to: UUID | None = None,
        sponsored_by: UUID | None = None,
    ) -> CaseSnapshot:
        """
        Create a case in ``draft``.

        Raises:
            PermissionDeniedError: Actor lacks ``cases:create``.
            MissingFieldError: Title is blank.
            InvalidAmountError: Target is not a positive two-place amount.
        """
        self._evaluator.require_permission(actor, Permissions.CASES_CREATE)
        title = require_text(title, "title")
        target = normalize_amount(target_amount)

        case = Case(
            title=title,
            description=description,
            status=CaseStatus.DRAFT.value,
            case_type=CaseType(case_type).value,
            category=category,
            target_amount=target,
            current_amount=ZERO,
            assigned_to=assigned_to,
            sponsored_by=sponsored_by,
            created_at=self._clock.now(),
            created_by_id=actor.actor_id,
        )
        self._session.add(case)
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.CASE_CREATED,
            "Case",
            case.id,
            after=_case_state(case),
            title=title,
        )
        logger.info(
            "case_created",
            extra={"case_id": str(case.id), "target_amount": str(target)},
        )
        return case.to_snapshot()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _is_permitted(self, rule: TransitionRule, case: Case, actor: Actor) -> bool:
        if actor.is_system:
            return rule.system_allowed
        roles = self._evaluator.get_effective_roles(actor.user_id)
        if not rule.permits_roles(roles):
            return False
        if rule.is_creator_transition and ADMIN not in expand_roles(roles):
            return case.created_by_id == actor.user_id
        return True

    def _authorize(self, rule: TransitionRule, case: Case, actor: Actor) -> None:
        if actor.is_system:
            if not rule.system_allowed:
                raise TransitionNotPermittedError(
                    "system",
                    rule.from_status.value,
                    rule.to_status.value,
                    sorted(rule.allowed_roles),
                )
            return

        roles = self._evaluator.get_effective_roles(actor.user_id)
        if not rule.permits_roles(roles):
            logger.warning(
                "case_transition_forbidden",
                extra={
                    "case_id": str(case.id),
                    "actor_id": str(actor.user_id),
                    "from_status": rule.from_status.value,
                    "to_status": rule.to_status.value,
                },
            )
            raise TransitionNotPermittedError(
                str(actor.user_id),
                rule.from_status.value,
                rule.to_status.value,
                sorted(rule.allowed_roles),
            )
        if (
            rule.is_creator_transition
            and ADMIN not in expand_roles(roles)
            and case.created_by_id != actor.user_id
        ):
            raise NotCaseOwnerError(str(case.id), str(actor.user_id))

    def change_status(
        self,
        case_id: UUID,
        target_status: CaseStatus | str,
        actor: Actor,
        reason: str | None = None,
    ) -> CaseSnapshot:
        """
        Move a case to ``target_status``.

        Preconditions:
            - The (current, target) pair exists in the transition table.

        Postconditions:
            - ``case.status == target_status``.
            - One CaseStatusHistory row, one CaseUpdate note and one
              ``case_status_changed`` audit event exist for the change.
            - A lifecycle notification for the case stakeholders is queued.

        Raises:
            CaseNotFoundError: No such case.
            InvalidCaseTransitionError: The pair is not in the table.
            TransitionNotPermittedError: Actor may not take this transition.
            NotCaseOwnerError: Creator-role actor does not own the case.
            ReasonRequiredError: The transition needs a reason.
            NotFullyFundedError: System closure of an unfunded case.
        """
        case = self._load_case(case_id, for_update=True)
        from_status = CaseStatus(case.status)

        rule = find_transition(from_status, target_status)
        if rule is None:
            raise InvalidCaseTransitionError(
                str(case_id), from_status.value, str(getattr(target_status, "value", target_status)),
            )
        to_status = rule.to_status

        self._authorize(rule, case, actor)

        reason = reason.strip() if reason and reason.strip() else None
        if rule.requires_reason and reason is None:
            raise ReasonRequiredError(from_status.value, to_status.value)

        if actor.is_system and to_status == CaseStatus.CLOSED:
            if case.case_type != CaseType.ONE_TIME.value or not is_fully_funded(
                case.current_amount, case.target_amount,
            ):
                raise NotFullyFundedError(
                    str(case_id), str(case.current_amount), str(case.target_amount),
                )

        now = self._clock.now()
        before = _case_state(case)

        case.status = to_status.value
        case.updated_by_id = actor.user_id

        self._session.add(CaseStatusHistory(
            case_id=case.id,
            previous_status=from_status.value,
            new_status=to_status.value,
            changed_by=actor.user_id,
            system_triggered=actor.is_system,
            change_reason=reason,
            changed_at=now,
            sequence=self._next_history_sequence(case.id),
        ))

        note = status_update_note(to_status, actor.is_system, reason)
        self._session.add(CaseUpdate(
            case_id=case.id,
            title=note.title,
            content=note.content,
            update_type=note.update_type.value,
            is_public=note.is_public,
            created_by=actor.user_id,
            created_at=now,
        ))
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.CASE_STATUS_CHANGED,
            "Case",
            case.id,
            before=before,
            after=_case_state(case),
            reason=reason,
        )

        snapshot = case.to_snapshot()
        self._outbox.queue(NotificationEvent(
            kind=NotificationKind.CASE_STATUS_CHANGED,
            recipients=snapshot.stakeholders,
            title=note.title,
            message=note.content,
            case_id=case.id,
            payload={
                "case_id": str(case.id),
                "from": from_status.value,
                "to": to_status.value,
                "system_triggered": actor.is_system,
                "reason": reason,
            },
        ))

        logger.info(
            "case_status_changed",
            extra={
                "case_id": str(case.id),
                "from_status": from_status.value,
                "to_status": to_status.value,
                "system_triggered": actor.is_system,
            },
        )
        return snapshot
