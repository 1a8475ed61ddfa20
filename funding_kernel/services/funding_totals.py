"""
FundingTotals -- recomputes derived funded amounts from approved contributions.

Responsibility:
    ``current_amount`` on cases, project cycles and projects is never
    incremented or taken from input.  It is recomputed as one aggregate
    SUM over the contributions whose approval status is ``approved``,
    while the owning row is locked.

Architecture position:
    Kernel > Services.  Called by ContributionApprovalWorkflow after every
    approval-state change and by the reconciliation job.  This service is
    the only writer of derived amounts.

Invariants enforced:
    - case.current_amount == SUM(amount) of the case's approved contributions.
    - cycle.current_amount == SUM(amount) of the cycle's approved contributions.
    - project.current_amount == SUM(amount) of all the project's approved
      contributions, across cycles.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from funding_kernel.db.types import round_money
from funding_kernel.domain.contribution import ApprovalStatus
from funding_kernel.exceptions import CaseNotFoundError, ProjectNotFoundError
from funding_kernel.logging_config import get_logger
from funding_kernel.models.case import Case
from funding_kernel.models.contribution import Contribution, ContributionApprovalStatus
from funding_kernel.models.project import Project, ProjectCycle

logger = get_logger("services.funding_totals")


@dataclass(frozen=True)
class TotalsUpdate:
    """Previous and recomputed funded amount of one owning row."""

    entity_type: str
    entity_id: UUID
    previous: Decimal
    current: Decimal

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class FundingTotals:
    """Recomputes and stores derived funded amounts.  Never commits."""

    def __init__(self, session: Session):
        self._session = session

    def _approved_sum(self, *criteria) -> Decimal:
        total = self._session.execute(
            select(func.coalesce(func.sum(Contribution.amount), 0))
            .join(
                ContributionApprovalStatus,
                ContributionApprovalStatus.contribution_id == Contribution.id,
            )
            .where(
                ContributionApprovalStatus.status == ApprovalStatus.APPROVED.value,
                *criteria,
            )
        ).scalar_one()
        return round_money(Decimal(str(total)))

    def _lock(self, model, entity_id: UUID):
        return self._session.execute(
            select(model)
            .where(model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _store(self, entity_type: str, row, total: Decimal) -> TotalsUpdate:
        previous = round_money(Decimal(str(row.current_amount)))
        if previous != total:
            row.current_amount = total
            self._session.flush()
            logger.info(
                "funded_amount_recomputed",
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(row.id),
                    "previous": str(previous),
                    "current": str(total),
                },
            )
        return TotalsUpdate(
            entity_type=entity_type,
            entity_id=row.id,
            previous=previous,
            current=total,
        )

    def lock_project(self, project_id: UUID) -> Project:
        """Take the project row lock.

        Callers that touch a project and its cycles lock the project first;
        cycle advancement takes the same order.
        """
        project = self._lock(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        return project

    def recompute_case(self, case_id: UUID) -> TotalsUpdate:
        case = self._lock(Case, case_id)
        if case is None:
            raise CaseNotFoundError(str(case_id))
        total = self._approved_sum(Contribution.case_id == case_id)
        return self._store("Case", case, total)

    def recompute_cycle(self, cycle_id: UUID) -> TotalsUpdate:
        cycle = self._lock(ProjectCycle, cycle_id)
        if cycle is None:
            raise ProjectNotFoundError(str(cycle_id))
        total = self._approved_sum(Contribution.project_cycle_id == cycle_id)
        return self._store("ProjectCycle", cycle, total)

    def recompute_project(self, project_id: UUID) -> TotalsUpdate:
        project = self._lock(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        total = self._approved_sum(Contribution.project_id == project_id)
        return self._store("Project", project, total)

    def recompute_for(self, contribution: Contribution) -> Decimal:
        """Recompute every total the contribution counts toward.

        Returns the funded amount of its direct owner (the case, or the
        cycle for project contributions).
        """
        if contribution.case_id is not None:
            return self.recompute_case(contribution.case_id).current

        self.lock_project(contribution.project_id)
        owner_total = None
        if contribution.project_cycle_id is not None:
            owner_total = self.recompute_cycle(contribution.project_cycle_id).current
        project_total = self.recompute_project(contribution.project_id).current
        return owner_total if owner_total is not None else project_total
