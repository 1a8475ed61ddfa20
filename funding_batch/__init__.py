"""
funding_batch -- Periodic jobs and the in-process job scheduler.

Runs the system-triggered side of the workflow: advancing project cycles
that have come due, closing fully funded one-time cases after a grace
period, and reconciling stored funded amounts against approved
contributions.

Architecture:
    funding_batch/ is a top-level package.  Nothing in funding_kernel/ or
    funding_services/ imports from it.

Invariants:
    - Each job runs in its own session and commits or rolls back alone.
    - Each item inside a job runs in its own SAVEPOINT; a failing item is
      logged and retried on the next run.
    - All timestamps come from the injected Clock.
    - Notifications queued by a job are dispatched only after its commit.
"""

from funding_batch.jobs import (
    AutoClosureJob,
    CycleAdvancementJob,
    FundedAmountReconciliationJob,
    FundingJob,
    JobFailure,
    JobResult,
)
from funding_batch.scheduler import JobScheduler, ScheduledJob

__all__ = [
    "AutoClosureJob",
    "CycleAdvancementJob",
    "FundedAmountReconciliationJob",
    "FundingJob",
    "JobFailure",
    "JobResult",
    "JobScheduler",
    "ScheduledJob",
]
