"""
FundingWorkflowService -- the public API of the funding workflow.

Responsibility:
    Owns the transaction boundary of every workflow operation.  Each call
    opens one session, wires the kernel engines onto it, runs the
    operation, commits, and only then invalidates permission caches and
    dispatches the queued notifications.

Architecture position:
    Services layer -- the outermost layer callers use.  Composes
    ``funding_kernel`` services; reads ``funding_config`` values.

Invariants enforced:
    - One transaction per operation: all-or-nothing.
    - Notifications are dispatched only after a successful commit and
      are discarded on rollback.
    - Persistence failures are rolled back and surfaced as InternalError
      with a generic message; details are logged.
    - Typed kernel errors are re-raised unchanged after rollback.

Failure modes:
    - Any ``FundingKernelError`` subclass from the engines.
    - ``InternalError`` wrapping a ``SQLAlchemyError``.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Iterator
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funding_config.schema import FundingConfig, RbacConfig, WorkflowConfig
from funding_kernel.db.engine import get_session_factory, init_engine_from_url
from funding_kernel.domain.actor import SystemActor, UserActor, actor_for
from funding_kernel.domain.case_lifecycle import (
    CaseSnapshot,
    CaseStatus,
    CaseType,
    StatusHistoryEntry,
)
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.contribution import ApprovalOutcome, ApprovalSnapshot
from funding_kernel.domain.events import NotificationDispatcher, NotificationOutbox
from funding_kernel.domain.project import (
    CycleAdvanceReport,
    CycleAdvanceResult,
    CycleSnapshot,
    ProjectCycleStats,
    ProjectSnapshot,
)
from funding_kernel.domain.rbac import SUPER_ADMIN, RoleAssignmentResult
from funding_kernel.exceptions import FundingKernelError, InternalError
from funding_kernel.logging_config import LogContext, get_logger
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.case_lifecycle_service import CaseLifecycleEngine
from funding_kernel.services.contribution_service import ContributionApprovalWorkflow
from funding_kernel.services.funding_totals import FundingTotals
from funding_kernel.services.permission_cache import AccessSet, PermissionCache
from funding_kernel.services.permission_service import PermissionEvaluator
from funding_kernel.services.project_cycle_service import ProjectCycleManager
from funding_services.notifications import (
    LoggingNotificationDispatcher,
    dispatch_notifications,
)
from funding_services.rbac_seed import seed_rbac

logger = get_logger("services.workflow")


@dataclass(frozen=True)
class WorkflowContext:
    """Kernel services bound to one session and one outbox."""

    session: Session
    auditor: AuditorService
    evaluator: PermissionEvaluator
    cases: CaseLifecycleEngine
    contributions: ContributionApprovalWorkflow
    projects: ProjectCycleManager
    totals: FundingTotals
    outbox: NotificationOutbox


class FundingWorkflowService:
    """
    Facade over the case, contribution, project and RBAC engines.

    Contract:
        Every public method is one transaction.  Arguments are plain ids
        and values; results are frozen snapshots.  ``actor_id=None`` means
        the system acts.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        permission_cache: PermissionCache | None = None,
        config: FundingConfig | None = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._clock = clock or SystemClock()
        self._config = config
        workflow = config.workflow if config is not None else WorkflowConfig()
        self._default_cycle_days = workflow.default_cycle_duration_days
        ttl = (
            config.rbac.permission_cache_ttl_seconds
            if config is not None
            else RbacConfig.permission_cache_ttl_seconds
        )
        self._cache = (
            permission_cache
            if permission_cache is not None
            else PermissionCache(ttl_seconds=ttl, clock=self._clock)
        )

    @classmethod
    def from_config(
        cls,
        config: FundingConfig,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
    ) -> FundingWorkflowService:
        """Initialize the engine from ``config.database`` and build the facade."""
        init_engine_from_url(
            config.database.url,
            echo=config.database.echo,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )
        return cls(get_session_factory(), dispatcher=dispatcher, clock=clock, config=config)

    @property
    def permission_cache(self) -> PermissionCache:
        return self._cache

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    def _build_context(self, session: Session) -> WorkflowContext:
        outbox = NotificationOutbox()
        auditor = AuditorService(session, self._clock)
        evaluator = PermissionEvaluator(session, auditor, self._cache, self._clock)
        totals = FundingTotals(session)
        return WorkflowContext(
            session=session,
            auditor=auditor,
            evaluator=evaluator,
            cases=CaseLifecycleEngine(session, auditor, evaluator, outbox, self._clock),
            contributions=ContributionApprovalWorkflow(
                session, auditor, evaluator, outbox, self._clock, totals,
            ),
            projects=ProjectCycleManager(session, auditor, evaluator, outbox, self._clock),
            totals=totals,
            outbox=outbox,
        )

    @contextmanager
    def unit_of_work(self, operation: str, **log_fields) -> Iterator[WorkflowContext]:
        """
        Run one operation in its own transaction.

        Postconditions:
            - On success the session is committed, touched users are
              evicted from the permission cache and queued notifications
              are dispatched.
            - On failure the session is rolled back and nothing is
              dispatched.
            - Touched users are evicted on every exit path, so a read made
              inside a rolled-back transaction never stays cached.
        """
        session = self._session_factory()
        ctx = self._build_context(session)
        with LogContext.bind(correlation_id=str(uuid4()), **log_fields):
            try:
                yield ctx
                session.commit()
            except FundingKernelError as exc:
                session.rollback()
                ctx.outbox.discard()
                logger.info(
                    "operation_rejected",
                    extra={"operation": operation, "error_code": exc.code},
                )
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                ctx.outbox.discard()
                logger.exception("operation_failed", extra={"operation": operation})
                raise InternalError(operation) from exc
            except Exception:
                session.rollback()
                ctx.outbox.discard()
                raise
            finally:
                session.close()
                self._cache.invalidate_many(ctx.evaluator.touched_users)

            dispatch_notifications(ctx.outbox.drain(), self._dispatcher)

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def create_case(
        self,
        actor_id: UUID,
        title: str,
        target_amount: Decimal | int | str,
        case_type: CaseType = CaseType.ONE_TIME,
        description: str | None = None,
        category: str | None = None,
        assigned_to: UUID | None = None,
        sponsored_by: UUID | None = None,
    ) -> CaseSnapshot:
        with self.unit_of_work("create_case", actor_id=actor_id) as ctx:
            return ctx.cases.create_case(
                title,
                target_amount,
                UserActor(actor_id),
                case_type=case_type,
                description=description,
                category=category,
                assigned_to=assigned_to,
                sponsored_by=sponsored_by,
            )

    def change_case_status(
        self,
        case_id: UUID,
        target_status: CaseStatus | str,
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> CaseSnapshot:
        """Move a case to ``target_status``.  ``actor_id=None`` is the system."""
        with self.unit_of_work("change_case_status", actor_id=actor_id, case_id=case_id) as ctx:
            return ctx.cases.change_status(
                case_id, target_status, actor_for(actor_id, "case_lifecycle"), reason,
            )

    def get_case(self, case_id: UUID) -> CaseSnapshot:
        with self.unit_of_work("get_case", case_id=case_id) as ctx:
            return ctx.cases.get_case(case_id)

    def get_case_history(self, case_id: UUID) -> list[StatusHistoryEntry]:
        with self.unit_of_work("get_case_history", case_id=case_id) as ctx:
            return ctx.cases.get_status_history(case_id)

    def available_case_transitions(
        self, case_id: UUID, actor_id: UUID | None = None,
    ) -> tuple[CaseStatus, ...]:
        with self.unit_of_work("available_case_transitions", case_id=case_id) as ctx:
            return ctx.cases.available_transitions(case_id, actor_for(actor_id))

    # ------------------------------------------------------------------
    # Contributions
    # ------------------------------------------------------------------

    def submit_contribution(
        self,
        donor_id: UUID,
        amount: Decimal | int | str,
        payment_method: str,
        case_id: UUID | None = None,
        project_id: UUID | None = None,
        notes: str | None = None,
    ) -> ApprovalSnapshot:
        with self.unit_of_work(
            "submit_contribution", actor_id=donor_id, case_id=case_id, project_id=project_id,
        ) as ctx:
            return ctx.contributions.submit(
                UserActor(donor_id),
                amount,
                payment_method,
                case_id=case_id,
                project_id=project_id,
                notes=notes,
            )

    def approve_contribution(self, contribution_id: UUID, actor_id: UUID) -> ApprovalOutcome:
        with self.unit_of_work(
            "approve_contribution", actor_id=actor_id, contribution_id=contribution_id,
        ) as ctx:
            return ctx.contributions.approve(contribution_id, UserActor(actor_id))

    def reject_contribution(
        self, contribution_id: UUID, actor_id: UUID, reason: str | None,
    ) -> ApprovalOutcome:
        with self.unit_of_work(
            "reject_contribution", actor_id=actor_id, contribution_id=contribution_id,
        ) as ctx:
            return ctx.contributions.reject(contribution_id, UserActor(actor_id), reason)

    def resubmit_contribution(
        self, contribution_id: UUID, donor_id: UUID, reply: str | None,
    ) -> ApprovalSnapshot:
        with self.unit_of_work(
            "resubmit_contribution", actor_id=donor_id, contribution_id=contribution_id,
        ) as ctx:
            return ctx.contributions.resubmit(contribution_id, UserActor(donor_id), reply)

    def revise_contribution(
        self,
        contribution_id: UUID,
        donor_id: UUID,
        new_amount: Decimal | int | str,
        new_method: str,
        explanation: str | None,
    ) -> UUID:
        with self.unit_of_work(
            "revise_contribution", actor_id=donor_id, contribution_id=contribution_id,
        ) as ctx:
            return ctx.contributions.revise(
                contribution_id, UserActor(donor_id), new_amount, new_method, explanation,
            )

    def get_contribution(self, contribution_id: UUID) -> ApprovalSnapshot:
        with self.unit_of_work("get_contribution", contribution_id=contribution_id) as ctx:
            return ctx.contributions.get_approval_status(contribution_id)

    def get_revision_chain(self, contribution_id: UUID) -> list[ApprovalSnapshot]:
        with self.unit_of_work("get_revision_chain", contribution_id=contribution_id) as ctx:
            return ctx.contributions.get_revision_chain(contribution_id)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(
        self,
        actor_id: UUID,
        name: str,
        target_amount: Decimal | int | str,
        cycle_duration_days: int | None = None,
        total_cycles: int | None = None,
        auto_progress: bool = True,
        description: str | None = None,
        category: str | None = None,
    ) -> ProjectSnapshot:
        with self.unit_of_work("create_project", actor_id=actor_id) as ctx:
            return ctx.projects.create_project(
                name,
                target_amount,
                UserActor(actor_id),
                cycle_duration_days=cycle_duration_days or self._default_cycle_days,
                total_cycles=total_cycles,
                auto_progress=auto_progress,
                description=description,
                category=category,
            )

    def advance_project_cycle(
        self,
        project_id: UUID,
        actor_id: UUID | None = None,
        expected_cycle_number: int | None = None,
    ) -> CycleAdvanceResult:
        with self.unit_of_work(
            "advance_project_cycle", actor_id=actor_id, project_id=project_id,
        ) as ctx:
            return ctx.projects.advance_project_cycle(
                project_id,
                actor_for(actor_id, "cycle_advancement"),
                expected_cycle_number,
            )

    def check_and_advance_cycles(self) -> CycleAdvanceReport:
        with self.unit_of_work("check_and_advance_cycles", job_name="cycle_advancement") as ctx:
            return ctx.projects.check_and_advance_cycles()

    def pause_project(
        self, project_id: UUID, actor_id: UUID, reason: str | None = None,
    ) -> ProjectSnapshot:
        with self.unit_of_work("pause_project", actor_id=actor_id, project_id=project_id) as ctx:
            return ctx.projects.pause_project(project_id, UserActor(actor_id), reason)

    def resume_project(self, project_id: UUID, actor_id: UUID) -> ProjectSnapshot:
        with self.unit_of_work("resume_project", actor_id=actor_id, project_id=project_id) as ctx:
            return ctx.projects.resume_project(project_id, UserActor(actor_id))

    def cancel_project(
        self, project_id: UUID, actor_id: UUID, reason: str | None = None,
    ) -> ProjectSnapshot:
        with self.unit_of_work("cancel_project", actor_id=actor_id, project_id=project_id) as ctx:
            return ctx.projects.cancel_project(project_id, UserActor(actor_id), reason)

    def get_project_cycles(self, project_id: UUID) -> list[CycleSnapshot]:
        with self.unit_of_work("get_project_cycles", project_id=project_id) as ctx:
            return ctx.projects.get_cycles(project_id)

    def get_cycle_stats(self, project_id: UUID) -> ProjectCycleStats:
        with self.unit_of_work("get_cycle_stats", project_id=project_id) as ctx:
            return ctx.projects.get_cycle_stats(project_id)

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    def assign_roles(
        self,
        user_id: UUID,
        role_ids: Iterable[UUID],
        actor_id: UUID,
        expires_at: datetime | None = None,
    ) -> RoleAssignmentResult:
        with self.unit_of_work("assign_roles", actor_id=actor_id) as ctx:
            return ctx.evaluator.assign_roles(user_id, role_ids, actor_id, expires_at)

    def has_permission(self, user_id: UUID, permission_name: str) -> bool:
        with self.unit_of_work("has_permission", actor_id=user_id) as ctx:
            return ctx.evaluator.has_permission(user_id, permission_name)

    def get_effective_roles(self, user_id: UUID) -> frozenset[str]:
        with self.unit_of_work("get_effective_roles", actor_id=user_id) as ctx:
            return ctx.evaluator.get_effective_roles(user_id)

    def refresh_permissions(self, user_id: UUID) -> AccessSet:
        with self.unit_of_work("refresh_permissions", actor_id=user_id) as ctx:
            return ctx.evaluator.refresh(user_id)

    def role_ids(self, role_names: Iterable[str]) -> tuple[UUID, ...]:
        """Resolve role names to ids, sorted by name."""
        with self.unit_of_work("role_ids") as ctx:
            return ctx.evaluator.role_ids_for(role_names)

    def seed_rbac(self, rbac_config: RbacConfig | None = None) -> dict[str, UUID]:
        """Install configured roles and permissions.  Idempotent."""
        config = rbac_config or (self._config.rbac if self._config is not None else None)
        if config is None:
            raise ValueError("No RBAC configuration to seed")
        with self.unit_of_work("seed_rbac", job_name="rbac_seed") as ctx:
            return seed_rbac(ctx.session, ctx.evaluator, config)

    def bootstrap_super_admin(self, user_id: UUID) -> None:
        """Grant super_admin to the first administrator as the system."""
        with self.unit_of_work("bootstrap_super_admin", actor_id=user_id) as ctx:
            ctx.evaluator.bootstrap_role(user_id, SUPER_ADMIN)
            logger.info("super_admin_bootstrapped", extra={"target_user_id": str(user_id)})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def validate_audit_chain(self) -> bool:
        with self.unit_of_work("validate_audit_chain", job_name="audit") as ctx:
            return ctx.auditor.validate_chain()


__all__ = ["FundingWorkflowService", "SystemActor", "WorkflowContext"]
