"""
Periodic funding jobs.

Contract:
    Every job exposes ``name`` and ``run(session, outbox) -> JobResult``.
    ``run`` flushes inside the given session and queues notifications on
    the given outbox; the scheduler owns commit and dispatch.

Architecture: funding_batch.  Composes funding_kernel services; the
    kernel never imports from here.

Invariants enforced:
    - One SAVEPOINT per item.  A failing item is rolled back, logged and
      reported; the remaining items still run.
    - Automatic closure goes through ``CaseLifecycleEngine.change_status``
      with a system actor, so the transition table and the fully funded
      check still apply.
    - Reconciliation only writes (and audits) amounts that differ from the
      recomputed value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funding_kernel.domain.actor import SystemActor
from funding_kernel.domain.case_lifecycle import CaseStatus, CaseType, auto_closure_reason
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.events import NotificationOutbox
from funding_kernel.exceptions import FundingKernelError
from funding_kernel.logging_config import get_logger
from funding_kernel.models.audit_event import AuditAction
from funding_kernel.models.case import Case
from funding_kernel.models.project import Project, ProjectCycle
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.case_lifecycle_service import CaseLifecycleEngine
from funding_kernel.services.funding_totals import FundingTotals, TotalsUpdate
from funding_kernel.services.permission_cache import PermissionCache
from funding_kernel.services.permission_service import PermissionEvaluator
from funding_kernel.services.project_cycle_service import ProjectCycleManager

logger = get_logger("batch.jobs")


# =============================================================================
# Result DTOs
# =============================================================================


@dataclass(frozen=True)
class JobFailure:
    """One item that failed inside a job run."""

    entity_id: UUID
    error_code: str
    error_message: str


@dataclass(frozen=True)
class JobResult:
    """Summary of one job run."""

    job_name: str
    processed: int = 0
    changed: tuple[UUID, ...] = ()
    failures: tuple[JobFailure, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return not self.failures


def _failure(entity_id: UUID, exc: Exception) -> JobFailure:
    return JobFailure(
        entity_id=entity_id,
        error_code=getattr(exc, "code", type(exc).__name__),
        error_message=str(exc),
    )


# =============================================================================
# Job protocol
# =============================================================================


@runtime_checkable
class FundingJob(Protocol):
    """A unit of periodic work.

    Non-goals:
        - Does NOT commit.  The scheduler owns the transaction.
        - Does NOT dispatch notifications.
    """

    name: str

    def run(self, session: Session, outbox: NotificationOutbox) -> JobResult: ...


class _KernelJob:
    """Shared wiring for jobs that drive kernel engines."""

    name = "kernel_job"

    def __init__(self, clock: Clock | None = None, cache: PermissionCache | None = None):
        self._clock = clock or SystemClock()
        self._cache = cache

    def _auditor(self, session: Session) -> AuditorService:
        return AuditorService(session, self._clock)

    def _evaluator(self, session: Session, auditor: AuditorService) -> PermissionEvaluator:
        return PermissionEvaluator(session, auditor, self._cache, self._clock)


# =============================================================================
# Jobs
# =============================================================================


class CycleAdvancementJob(_KernelJob):
    """Advance every due cycle of active auto-progressing projects."""

    name = "cycle_advancement"

    def run(self, session: Session, outbox: NotificationOutbox) -> JobResult:
        auditor = self._auditor(session)
        manager = ProjectCycleManager(
            session, auditor, self._evaluator(session, auditor), outbox, self._clock,
        )
        report = manager.check_and_advance_cycles()
        return JobResult(
            job_name=self.name,
            processed=report.checked,
            changed=tuple(r.project_id for r in report.advanced + report.completed),
            failures=tuple(
                JobFailure(f.project_id, f.error_code, f.error_message)
                for f in report.failed
            ),
        )


class AutoClosureJob(_KernelJob):
    """Close fully funded one-time cases once the grace period has passed.

    The grace period is measured from the case's creation time.  Recurring
    cases are never closed automatically.
    """

    name = "auto_closure"

    def __init__(
        self,
        clock: Clock | None = None,
        cache: PermissionCache | None = None,
        grace_hours: int = 24,
    ):
        super().__init__(clock, cache)
        if grace_hours < 0:
            raise ValueError("grace_hours must be >= 0")
        self._grace = timedelta(hours=grace_hours)

    def _candidates(self, session: Session) -> list[UUID]:
        cutoff = self._clock.now() - self._grace
        return list(session.execute(
            select(Case.id)
            .where(
                Case.status == CaseStatus.PUBLISHED.value,
                Case.case_type == CaseType.ONE_TIME.value,
                Case.current_amount >= Case.target_amount,
                Case.created_at <= cutoff,
            )
            .order_by(Case.created_at, Case.id)
        ).scalars().all())

    def run(self, session: Session, outbox: NotificationOutbox) -> JobResult:
        auditor = self._auditor(session)
        evaluator = self._evaluator(session, auditor)
        actor = SystemActor(job_name=self.name)

        case_ids = self._candidates(session)
        closed: list[UUID] = []
        failures: list[JobFailure] = []

        for case_id in case_ids:
            item_outbox = NotificationOutbox()
            engine = CaseLifecycleEngine(session, auditor, evaluator, item_outbox, self._clock)
            savepoint = session.begin_nested()
            try:
                case = engine.get_case(case_id)
                engine.change_status(
                    case_id,
                    CaseStatus.CLOSED,
                    actor,
                    auto_closure_reason(case.current_amount, case.target_amount),
                )
                savepoint.commit()
            except (FundingKernelError, SQLAlchemyError) as exc:
                savepoint.rollback()
                logger.exception("case_auto_closure_failed", extra={"case_id": str(case_id)})
                failures.append(_failure(case_id, exc))
                continue

            for event in item_outbox.drain():
                outbox.queue(event)
            closed.append(case_id)

        logger.info(
            "auto_closure_completed",
            extra={"checked": len(case_ids), "closed": len(closed), "failed": len(failures)},
        )
        return JobResult(
            job_name=self.name,
            processed=len(case_ids),
            changed=tuple(closed),
            failures=tuple(failures),
        )


class FundedAmountReconciliationJob(_KernelJob):
    """Recompute stored funded amounts from approved contributions.

    Repairs drift left by manual data fixes or partial failures.  Every
    corrected case or project is audited with the before and after value.
    """

    name = "funded_amount_reconciliation"

    def _record(
        self,
        auditor: AuditorService,
        action: AuditAction,
        update: TotalsUpdate,
    ) -> None:
        auditor.record(
            SystemActor(job_name=self.name),
            action,
            update.entity_type,
            update.entity_id,
            before={"current_amount": str(update.previous)},
            after={"current_amount": str(update.current)},
        )

    def _reconcile_project(self, session: Session, totals: FundingTotals, project_id: UUID) -> TotalsUpdate:
        totals.lock_project(project_id)
        cycle_ids = session.execute(
            select(ProjectCycle.id)
            .where(ProjectCycle.project_id == project_id)
            .order_by(ProjectCycle.cycle_number)
        ).scalars().all()
        for cycle_id in cycle_ids:
            totals.recompute_cycle(cycle_id)
        return totals.recompute_project(project_id)

    def _reconcile_each(
        self,
        session: Session,
        auditor: AuditorService,
        entity_ids: list[UUID],
        reconcile: Callable[[UUID], TotalsUpdate],
        action: AuditAction,
        changed: list[UUID],
        failures: list[JobFailure],
    ) -> None:
        for entity_id in entity_ids:
            savepoint = session.begin_nested()
            try:
                update = reconcile(entity_id)
                if update.changed:
                    self._record(auditor, action, update)
                savepoint.commit()
            except (FundingKernelError, SQLAlchemyError) as exc:
                savepoint.rollback()
                logger.exception(
                    "funded_amount_reconciliation_failed",
                    extra={"entity_id": str(entity_id)},
                )
                failures.append(_failure(entity_id, exc))
                continue
            if update.changed:
                changed.append(entity_id)

    def run(self, session: Session, outbox: NotificationOutbox) -> JobResult:
        auditor = self._auditor(session)
        totals = FundingTotals(session)

        case_ids = list(session.execute(
            select(Case.id).order_by(Case.created_at, Case.id)
        ).scalars().all())
        project_ids = list(session.execute(
            select(Project.id).order_by(Project.created_at, Project.id)
        ).scalars().all())

        changed: list[UUID] = []
        failures: list[JobFailure] = []
        self._reconcile_each(
            session, auditor, case_ids, totals.recompute_case,
            AuditAction.CASE_AMOUNT_RECONCILED, changed, failures,
        )
        self._reconcile_each(
            session, auditor, project_ids,
            lambda project_id: self._reconcile_project(session, totals, project_id),
            AuditAction.PROJECT_AMOUNT_RECONCILED, changed, failures,
        )

        logger.info(
            "funded_amount_reconciliation_completed",
            extra={
                "cases": len(case_ids),
                "projects": len(project_ids),
                "corrected": len(changed),
                "failed": len(failures),
            },
        )
        return JobResult(
            job_name=self.name,
            processed=len(case_ids) + len(project_ids),
            changed=tuple(changed),
            failures=tuple(failures),
        )
