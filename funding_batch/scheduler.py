"""
JobScheduler -- In-process polling scheduler for funding jobs.

Contract:
    Polls on a configurable tick, runs every job whose interval has
    elapsed, and commits each job's work in its own session.  Queued
    notifications are dispatched after the job commits.

Architecture: funding_batch.  Uses funding_batch.jobs and the
    notification helpers of funding_services.

Invariants enforced:
    - All timestamps from the injected Clock.
    - One session and one transaction per job run; a failing job is rolled
      back and logged and does not affect the others.
    - Graceful shutdown: the stop signal is honoured between jobs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from funding_config.schema import FundingConfig
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.events import NotificationDispatcher, NotificationOutbox
from funding_kernel.logging_config import LogContext, get_logger
from funding_kernel.services.permission_cache import PermissionCache
from funding_services.notifications import (
    LoggingNotificationDispatcher,
    dispatch_notifications,
)

from funding_batch.jobs import (
    AutoClosureJob,
    CycleAdvancementJob,
    FundedAmountReconciliationJob,
    FundingJob,
    JobResult,
)

logger = get_logger("batch.scheduler")


@dataclass
class ScheduledJob:
    """A job and how often it runs."""

    job: FundingJob
    interval_seconds: float
    last_run_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if self.last_run_at is None:
            return True
        return now >= self.last_run_at + timedelta(seconds=self.interval_seconds)


class JobScheduler:
    """In-process polling scheduler for funding jobs.

    Contract:
        - ``tick()`` runs every due job once.
        - ``run_job()`` runs one job immediately.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        jobs: list[ScheduledJob] | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60,
    ):
        self._session_factory = session_factory
        self._jobs: list[ScheduledJob] = list(jobs or [])
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(
        cls,
        session_factory: Callable[[], Session],
        config: FundingConfig,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        permission_cache: PermissionCache | None = None,
    ) -> JobScheduler:
        """Build a scheduler running the three standard jobs."""
        clock = clock or SystemClock()
        cache = (
            permission_cache
            if permission_cache is not None
            else PermissionCache(
                ttl_seconds=config.rbac.permission_cache_ttl_seconds, clock=clock,
            )
        )
        scheduler_config = config.scheduler
        jobs = [
            ScheduledJob(
                CycleAdvancementJob(clock, cache),
                scheduler_config.cycle_advancement_interval_seconds,
            ),
            ScheduledJob(
                AutoClosureJob(clock, cache, config.workflow.auto_closure_grace_hours),
                scheduler_config.auto_closure_interval_seconds,
            ),
            ScheduledJob(
                FundedAmountReconciliationJob(clock, cache),
                scheduler_config.reconciliation_interval_seconds,
            ),
        ]
        return cls(
            session_factory,
            jobs=jobs,
            dispatcher=dispatcher,
            clock=clock,
            tick_interval_seconds=scheduler_config.tick_interval_seconds,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def jobs(self) -> tuple[ScheduledJob, ...]:
        return tuple(self._jobs)

    def add_job(self, job: FundingJob, interval_seconds: float) -> ScheduledJob:
        scheduled = ScheduledJob(job=job, interval_seconds=interval_seconds)
        self._jobs.append(scheduled)
        return scheduled

    def tick(self) -> list[JobResult]:
        """Run every due job (public for testing).

        Returns the results of the jobs that ran successfully.
        """
        now = self._clock.now()
        results: list[JobResult] = []
        for scheduled in self._jobs:
            if self._stop_event.is_set():
                break
            if not scheduled.is_due(now):
                continue
            result = self.run_job(scheduled.job)
            # A failed run stays due and is retried on the next tick.
            if result is not None:
                scheduled.last_run_at = now
                results.append(result)
        return results

    def run_job(self, job: FundingJob) -> JobResult | None:
        """Run one job in its own transaction.  Returns None if it failed."""
        session = self._session_factory()
        outbox = NotificationOutbox()
        with LogContext.bind(job_name=job.name):
            try:
                result = job.run(session, outbox)
                session.commit()
            except Exception:
                session.rollback()
                outbox.discard()
                logger.exception("job_failed", extra={"job": job.name})
                return None
            finally:
                session.close()

            delivered = dispatch_notifications(outbox.drain(), self._dispatcher)
            logger.info(
                "job_completed",
                extra={
                    "job": job.name,
                    "processed": result.processed,
                    "changed": len(result.changed),
                    "failed": len(result.failures),
                    "notifications": delivered,
                },
            )
        return result

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="funding-job-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop. Exits when stop_event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)
