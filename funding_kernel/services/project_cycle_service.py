"""
ProjectCycleManager -- recurring project lifecycle and cycle advancement.

Responsibility:
    Creates projects with their first cycle, advances cycles when they
    are due (time elapsed or target reached), completes projects whose
    cycle budget is exhausted, and handles pause / resume / cancel.

Architecture position:
    Kernel > Services.  Called by FundingWorkflowService for manual
    operations and by CycleAdvancementJob for the periodic sweep.
    Never commits.

Invariants enforced:
    - Cycle numbers are contiguous from 1; at most one active cycle per
      project.  The project row is locked before any cycle write.
    - Advancing a cycle that has already been advanced is a no-op
      result; advancing twice yields exactly one new cycle.
    - Paused projects never advance; resuming does not replay missed
      cycles.
    - The sweep isolates each project in its own savepoint.

Failure modes:
    - ProjectNotFoundError
    - ProjectPausedError for a manual advance of a paused project.
    - StaleCycleError when the expected cycle is ahead of the project.
    - InvalidProjectTransitionError for pause / resume / cancel moves the
      project status machine does not allow.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funding_kernel.db.types import ZERO, round_money
from funding_kernel.domain.actor import Actor, SystemActor
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.contribution import normalize_amount, require_text
from funding_kernel.domain.events import (
    NotificationEvent,
    NotificationKind,
    NotificationOutbox,
)
from funding_kernel.domain.project import (
    DEFAULT_CYCLE_DURATION_DAYS,
    PROJECT_TRANSITIONS,
    AdvanceOutcome,
    CycleAdvanceFailure,
    CycleAdvanceReport,
    CycleAdvanceResult,
    CycleSnapshot,
    CycleStatus,
    ProjectCycleStats,
    ProjectSnapshot,
    ProjectStatus,
    TERMINAL_PROJECT_STATUSES,
    cycle_window,
    has_next_cycle,
    is_cycle_due,
)
from funding_kernel.domain.rbac import Permissions
from funding_kernel.exceptions import (
    FundingKernelError,
    InvalidAmountError,
    InvalidProjectTransitionError,
    ProjectNotFoundError,
    ProjectPausedError,
    StaleCycleError,
)
from funding_kernel.logging_config import get_logger
from funding_kernel.models.audit_event import AuditAction
from funding_kernel.models.project import Project, ProjectCycle
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.permission_service import PermissionEvaluator

logger = get_logger("services.project_cycle")


def _project_state(project: Project) -> dict[str, Any]:
    return {
        "status": project.status,
        "current_cycle_number": project.current_cycle_number,
        "next_cycle_date": project.next_cycle_date,
    }


class ProjectCycleManager:
    """
    Manager for recurring projects and their cycles.

    Contract:
        All methods flush inside the caller's transaction, except
        ``check_and_advance_cycles`` which wraps each project in a
        savepoint so one failure does not discard the others.
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
    # Loading
    # ------------------------------------------------------------------

    def _lock_project(self, project_id: UUID) -> Project:
        project = self._session.execute(
            select(Project)
            .where(Project.id == project_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        return project

    def _active_cycle(self, project_id: UUID) -> ProjectCycle | None:
        return self._session.execute(
            select(ProjectCycle)
            .where(
                ProjectCycle.project_id == project_id,
                ProjectCycle.status == CycleStatus.ACTIVE.value,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_project(self, project_id: UUID) -> ProjectSnapshot:
        project = self._session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        return project.to_snapshot()

    def get_cycles(self, project_id: UUID) -> list[CycleSnapshot]:
        """All cycles of a project in cycle-number order."""
        self.get_project(project_id)
        cycles = self._session.execute(
            select(ProjectCycle)
            .where(ProjectCycle.project_id == project_id)
            .order_by(ProjectCycle.cycle_number)
        ).scalars().all()
        return [cycle.to_snapshot() for cycle in cycles]

    def get_cycle_stats(self, project_id: UUID) -> ProjectCycleStats:
        project = self._session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))

        rows = self._session.execute(
            select(
                ProjectCycle.status,
                func.count(ProjectCycle.id),
                func.coalesce(func.sum(ProjectCycle.current_amount), 0),
            )
            .where(ProjectCycle.project_id == project_id)
            .group_by(ProjectCycle.status)
        ).all()

        counts: dict[str, int] = {}
        raised = ZERO
        for status, count, amount in rows:
            counts[status] = count
            raised += Decimal(str(amount))

        return ProjectCycleStats(
            project_id=project_id,
            total_cycles=sum(counts.values()),
            completed_cycles=counts.get(CycleStatus.COMPLETED.value, 0),
            active_cycles=counts.get(CycleStatus.ACTIVE.value, 0),
            total_raised=round_money(raised),
            current_cycle_number=project.current_cycle_number,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        target_amount: Decimal | int | str,
        actor: Actor,
        cycle_duration_days: int = DEFAULT_CYCLE_DURATION_DAYS,
        total_cycles: int | None = None,
        auto_progress: bool = True,
        description: str | None = None,
        category: str | None = None,
    ) -> ProjectSnapshot:
        """
        Create an active project together with its first cycle.

        Raises:
            PermissionDeniedError: Actor lacks ``projects:create``.
            MissingFieldError: Name is blank.
            InvalidAmountError: Target, duration or cycle count is invalid.
        """
        self._evaluator.require_permission(actor, Permissions.PROJECTS_CREATE)
        name = require_text(name, "name")
        target = normalize_amount(target_amount)
        if cycle_duration_days <= 0:
            raise InvalidAmountError(cycle_duration_days, "cycle duration must be positive")
        if total_cycles is not None and total_cycles <= 0:
            raise InvalidAmountError(total_cycles, "total cycles must be positive")

        now = self._clock.now()
        start, end = cycle_window(now, cycle_duration_days)
        project = Project(
            name=name,
            description=description,
            category=category,
            target_amount=target,
            current_amount=ZERO,
            status=ProjectStatus.ACTIVE.value,
            cycle_duration_days=cycle_duration_days,
            total_cycles=total_cycles,
            current_cycle_number=1,
            next_cycle_date=end,
            auto_progress=auto_progress,
            created_at=now,
            created_by_id=actor.actor_id,
        )
        self._session.add(project)
        self._session.flush()

        self._session.add(ProjectCycle(
            project_id=project.id,
            cycle_number=1,
            start_date=start,
            end_date=end,
            target_amount=target,
            current_amount=ZERO,
            status=CycleStatus.ACTIVE.value,
            created_at=now,
            created_by_id=actor.actor_id,
        ))
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.PROJECT_CREATED,
            "Project",
            project.id,
            after=_project_state(project),
            target_amount=target,
            total_cycles=total_cycles,
        )
        logger.info(
            "project_created",
            extra={
                "project_id": str(project.id),
                "total_cycles": total_cycles,
                "cycle_duration_days": cycle_duration_days,
            },
        )
        return project.to_snapshot()

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    def advance_project_cycle(
        self,
        project_id: UUID,
        actor: Actor | None = None,
        expected_cycle_number: int | None = None,
    ) -> CycleAdvanceResult:
        """
        Advance a project to its next cycle, or complete it.

        Without ``expected_cycle_number`` only a due cycle is advanced.
        With it, that cycle is advanced if it is still the active one;
        a lower number means another caller already advanced it.

        Raises:
            ProjectNotFoundError: No such project.
            PermissionDeniedError: User actor lacks ``projects:update``.
            ProjectPausedError: The project is paused.
            StaleCycleError: ``expected_cycle_number`` is ahead of the project.
        """
        return self._advance_project(
            project_id,
            actor or SystemActor(job_name="cycle_advancement"),
            expected_cycle_number,
            self._outbox,
        )

    def _advance_project(
        self,
        project_id: UUID,
        actor: Actor,
        expected_cycle_number: int | None,
        outbox: NotificationOutbox,
    ) -> CycleAdvanceResult:
        self._evaluator.require_permission(actor, Permissions.PROJECTS_UPDATE)

        project = self._lock_project(project_id)
        status = ProjectStatus(project.status)
        if status in TERMINAL_PROJECT_STATUSES:
            return CycleAdvanceResult(project_id, AdvanceOutcome.PROJECT_INACTIVE)
        if status == ProjectStatus.PAUSED:
            raise ProjectPausedError(str(project_id))

        cycle = self._active_cycle(project_id)
        if expected_cycle_number is not None:
            if expected_cycle_number < project.current_cycle_number or cycle is None:
                logger.info(
                    "project_cycle_already_advanced",
                    extra={
                        "project_id": str(project_id),
                        "expected_cycle": expected_cycle_number,
                        "current_cycle": project.current_cycle_number,
                    },
                )
                return CycleAdvanceResult(project_id, AdvanceOutcome.ALREADY_ADVANCED)
            if expected_cycle_number > project.current_cycle_number:
                raise StaleCycleError(
                    str(project_id), expected_cycle_number, project.current_cycle_number,
                )
        elif cycle is None or not is_cycle_due(
            self._clock.now(), cycle.end_date, cycle.current_amount, cycle.target_amount,
        ):
            return CycleAdvanceResult(project_id, AdvanceOutcome.NOT_DUE)

        return self._advance(project, cycle, actor, outbox)

    def _advance(
        self,
        project: Project,
        cycle: ProjectCycle,
        actor: Actor,
        outbox: NotificationOutbox,
    ) -> CycleAdvanceResult:
        now = self._clock.now()
        before = _project_state(project)
        completed_number = cycle.cycle_number

        cycle.status = CycleStatus.COMPLETED.value
        cycle.completed_at = now
        cycle.updated_by_id = actor.user_id

        project.last_cycle_date = now
        project.updated_by_id = actor.user_id

        if not has_next_cycle(completed_number, project.total_cycles):
            project.status = ProjectStatus.COMPLETED.value
            project.next_cycle_date = None
            self._session.flush()

            self._auditor.record(
                actor,
                AuditAction.PROJECT_COMPLETED,
                "Project",
                project.id,
                before=before,
                after=_project_state(project),
                completed_cycle_number=completed_number,
            )
            outbox.queue(NotificationEvent(
                kind=NotificationKind.PROJECT_COMPLETED,
                recipients=(project.created_by_id,),
                title="Project completed",
                message=f"{project.name} finished its final cycle ({completed_number}).",
                project_id=project.id,
                payload={"completed_cycle_number": completed_number},
            ))
            logger.info(
                "project_completed",
                extra={"project_id": str(project.id), "cycle_number": completed_number},
            )
            return CycleAdvanceResult(
                project.id,
                AdvanceOutcome.PROJECT_COMPLETED,
                completed_cycle_number=completed_number,
            )

        # The completed cycle must be flushed before its successor exists.
        self._session.flush()

        start, end = cycle_window(now, project.cycle_duration_days)
        new_cycle = ProjectCycle(
            project_id=project.id,
            cycle_number=completed_number + 1,
            start_date=start,
            end_date=end,
            target_amount=project.target_amount,
            current_amount=ZERO,
            status=CycleStatus.ACTIVE.value,
            created_at=now,
            created_by_id=actor.actor_id,
        )
        self._session.add(new_cycle)
        project.current_cycle_number = new_cycle.cycle_number
        project.next_cycle_date = end
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.PROJECT_CYCLE_ADVANCED,
            "Project",
            project.id,
            before=before,
            after=_project_state(project),
            completed_cycle_number=completed_number,
            new_cycle_id=new_cycle.id,
        )
        outbox.queue(NotificationEvent(
            kind=NotificationKind.PROJECT_CYCLE_ADVANCED,
            recipients=(project.created_by_id,),
            title="New project cycle started",
            message=f"{project.name} moved to cycle {new_cycle.cycle_number}.",
            project_id=project.id,
            payload={
                "completed_cycle_number": completed_number,
                "new_cycle_number": new_cycle.cycle_number,
            },
        ))
        logger.info(
            "project_cycle_advanced",
            extra={
                "project_id": str(project.id),
                "completed_cycle": completed_number,
                "new_cycle": new_cycle.cycle_number,
            },
        )
        return CycleAdvanceResult(
            project.id,
            AdvanceOutcome.ADVANCED,
            completed_cycle_number=completed_number,
            new_cycle_number=new_cycle.cycle_number,
            new_cycle_id=new_cycle.id,
        )

    def check_and_advance_cycles(self) -> CycleAdvanceReport:
        """
        Advance every due cycle of active auto-progressing projects.

        Each project runs in its own savepoint.  A failing project is
        logged, reported and left for the next run; only notifications of
        projects whose savepoint committed reach the outbox.
        """
        project_ids = self._session.execute(
            select(Project.id)
            .where(
                Project.status == ProjectStatus.ACTIVE.value,
                Project.auto_progress.is_(True),
            )
            .order_by(Project.created_at, Project.id)
        ).scalars().all()

        actor = SystemActor(job_name="cycle_advancement")
        advanced: list[CycleAdvanceResult] = []
        completed: list[CycleAdvanceResult] = []
        failed: list[CycleAdvanceFailure] = []

        for project_id in project_ids:
            item_outbox = NotificationOutbox()
            savepoint = self._session.begin_nested()
            try:
                result = self._advance_project(project_id, actor, None, item_outbox)
                savepoint.commit()
            except (FundingKernelError, SQLAlchemyError) as exc:
                savepoint.rollback()
                logger.exception(
                    "project_cycle_advance_failed",
                    extra={"project_id": str(project_id)},
                )
                failed.append(CycleAdvanceFailure(
                    project_id=project_id,
                    error_code=getattr(exc, "code", type(exc).__name__),
                    error_message=str(exc),
                ))
                continue

            for event in item_outbox.drain():
                self._outbox.queue(event)
            if result.outcome == AdvanceOutcome.ADVANCED:
                advanced.append(result)
            elif result.outcome == AdvanceOutcome.PROJECT_COMPLETED:
                completed.append(result)

        report = CycleAdvanceReport(
            checked=len(project_ids),
            advanced=tuple(advanced),
            completed=tuple(completed),
            failed=tuple(failed),
        )
        logger.info(
            "project_cycles_checked",
            extra={
                "checked": report.checked,
                "advanced": len(report.advanced),
                "completed": len(report.completed),
                "failed": len(report.failed),
            },
        )
        return report

    # ------------------------------------------------------------------
    # Project status
    # ------------------------------------------------------------------

    def _change_status(
        self,
        project_id: UUID,
        target: ProjectStatus,
        actor: Actor,
        reason: str | None = None,
    ) -> ProjectSnapshot:
        self._evaluator.require_permission(actor, Permissions.PROJECTS_UPDATE)
        project = self._lock_project(project_id)
        current = ProjectStatus(project.status)
        if target not in PROJECT_TRANSITIONS[current]:
            raise InvalidProjectTransitionError(str(project_id), current.value, target.value)

        before = _project_state(project)
        project.status = target.value
        project.updated_by_id = actor.user_id

        if target == ProjectStatus.CANCELLED:
            cycle = self._active_cycle(project_id)
            if cycle is not None:
                cycle.status = CycleStatus.CANCELLED.value
                cycle.completed_at = self._clock.now()
                cycle.notes = reason
                cycle.updated_by_id = actor.user_id
            project.next_cycle_date = None
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.PROJECT_STATUS_CHANGED,
            "Project",
            project.id,
            before=before,
            after=_project_state(project),
            reason=reason,
        )
        logger.info(
            "project_status_changed",
            extra={
                "project_id": str(project_id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return project.to_snapshot()

    def pause_project(self, project_id: UUID, actor: Actor, reason: str | None = None) -> ProjectSnapshot:
        return self._change_status(project_id, ProjectStatus.PAUSED, actor, reason)

    def resume_project(self, project_id: UUID, actor: Actor) -> ProjectSnapshot:
        """Reactivate a paused project.  Missed cycles are not replayed."""
        return self._change_status(project_id, ProjectStatus.ACTIVE, actor)

    def cancel_project(self, project_id: UUID, actor: Actor, reason: str | None = None) -> ProjectSnapshot:
        """Cancel a project and its active cycle."""
        return self._change_status(project_id, ProjectStatus.CANCELLED, actor, reason)
