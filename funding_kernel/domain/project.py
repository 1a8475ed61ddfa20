"""
Project cycle domain (``funding_kernel.domain.project``).

Responsibility
--------------
Project and cycle states, the project status machine, the pure rule that
decides when a cycle is due, and the result types of cycle advancement.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Cycle numbers are 1-based and contiguous per project.
* A project has at most one ``active`` cycle.
* A cycle is due when ``now >= end_date`` or its funded amount has
  reached its target.
* ``completed`` and ``cancelled`` projects have no outgoing edges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

DEFAULT_CYCLE_DURATION_DAYS = 30


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CycleStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PROJECT_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.ACTIVE: frozenset({
        ProjectStatus.PAUSED,
        ProjectStatus.COMPLETED,
        ProjectStatus.CANCELLED,
    }),
    ProjectStatus.PAUSED: frozenset({
        ProjectStatus.ACTIVE,
        ProjectStatus.CANCELLED,
    }),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.CANCELLED: frozenset(),
}

TERMINAL_PROJECT_STATUSES: frozenset[ProjectStatus] = frozenset({
    ProjectStatus.COMPLETED,
    ProjectStatus.CANCELLED,
})


def is_cycle_due(
    now: datetime,
    end_date: datetime,
    current_amount: Decimal,
    target_amount: Decimal,
) -> bool:
    return now >= end_date or current_amount >= target_amount


def cycle_window(start: datetime, duration_days: int) -> tuple[datetime, datetime]:
    """Start and end of a cycle beginning at ``start``."""
    return start, start + timedelta(days=duration_days)


def has_next_cycle(current_cycle_number: int, total_cycles: int | None) -> bool:
    """True if another cycle may follow; ``None`` means unbounded."""
    return total_cycles is None or current_cycle_number < total_cycles


class AdvanceOutcome(str, Enum):
    """What a single advancement attempt did."""

    ADVANCED = "advanced"
    PROJECT_COMPLETED = "project_completed"
    NOT_DUE = "not_due"
    ALREADY_ADVANCED = "already_advanced"
    PROJECT_INACTIVE = "project_inactive"

    @property
    def changed(self) -> bool:
        return self in (AdvanceOutcome.ADVANCED, AdvanceOutcome.PROJECT_COMPLETED)


@dataclass(frozen=True)
class CycleAdvanceResult:
    """Result of advancing one project."""

    project_id: UUID
    outcome: AdvanceOutcome
    completed_cycle_number: int | None = None
    new_cycle_number: int | None = None
    new_cycle_id: UUID | None = None


@dataclass(frozen=True)
class CycleAdvanceFailure:
    project_id: UUID
    error_code: str
    error_message: str


@dataclass(frozen=True)
class CycleAdvanceReport:
    """Summary of one ``check_and_advance_cycles`` run."""

    checked: int
    advanced: tuple[CycleAdvanceResult, ...] = ()
    completed: tuple[CycleAdvanceResult, ...] = ()
    failed: tuple[CycleAdvanceFailure, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CycleSnapshot:
    cycle_id: UUID
    project_id: UUID
    cycle_number: int
    status: CycleStatus
    start_date: datetime
    end_date: datetime
    target_amount: Decimal
    current_amount: Decimal
    completed_at: datetime | None = None


@dataclass(frozen=True)
class ProjectSnapshot:
    project_id: UUID
    name: str
    status: ProjectStatus
    target_amount: Decimal
    current_amount: Decimal
    cycle_duration_days: int
    total_cycles: int | None
    current_cycle_number: int
    next_cycle_date: datetime | None
    last_cycle_date: datetime | None
    auto_progress: bool
    created_by: UUID


@dataclass(frozen=True)
class ProjectCycleStats:
    """Aggregate view of a project's cycles."""

    project_id: UUID
    total_cycles: int
    completed_cycles: int
    active_cycles: int
    total_raised: Decimal
    current_cycle_number: int
