"""
JobScheduler tests: due-ness, per-job transactions, failure retry,
post-commit dispatch and background thread lifecycle.
"""

from datetime import timedelta
from uuid import uuid4

from funding_batch import JobResult, JobScheduler, ScheduledJob
from funding_batch.jobs import AutoClosureJob, CycleAdvancementJob, FundedAmountReconciliationJob
from funding_kernel.domain.events import NotificationEvent, NotificationKind
from funding_services import FundingWorkflowService, RecordingNotificationDispatcher


class _CountingJob:
    name = "counting"

    def __init__(self):
        self.runs = 0

    def run(self, session, outbox):
        self.runs += 1
        outbox.queue(NotificationEvent(
            kind=NotificationKind.PROJECT_CYCLE_ADVANCED,
            recipients=(uuid4(),),
            title="tick",
            message="tick",
        ))
        return JobResult(self.name, processed=1)


class _FailingJob:
    name = "failing"

    def __init__(self):
        self.runs = 0

    def run(self, session, outbox):
        self.runs += 1
        outbox.queue(NotificationEvent(
            kind=NotificationKind.PROJECT_COMPLETED,
            recipients=(uuid4(),),
            title="never sent",
            message="never sent",
        ))
        raise RuntimeError("boom")


class TestScheduledJob:

    def test_due_when_never_run(self, clock):
        assert ScheduledJob(_CountingJob(), 60).is_due(clock.now())

    def test_due_after_interval(self, clock):
        scheduled = ScheduledJob(_CountingJob(), 60, last_run_at=clock.now())
        assert not scheduled.is_due(clock.now() + timedelta(seconds=59))
        assert scheduled.is_due(clock.now() + timedelta(seconds=60))


class TestTick:

    def test_runs_due_jobs_once_per_interval(self, session_factory, clock):
        job = _CountingJob()
        dispatcher = RecordingNotificationDispatcher()
        scheduler = JobScheduler(session_factory, dispatcher=dispatcher, clock=clock)
        scheduler.add_job(job, interval_seconds=60)

        assert [r.job_name for r in scheduler.tick()] == ["counting"]
        assert scheduler.tick() == []
        clock.advance(60)
        scheduler.tick()

        assert job.runs == 2
        assert len(dispatcher.events) == 2

    def test_failed_job_stays_due_and_sends_nothing(self, session_factory, clock, captured_logs):
        failing, counting = _FailingJob(), _CountingJob()
        dispatcher = RecordingNotificationDispatcher()
        scheduler = JobScheduler(session_factory, dispatcher=dispatcher, clock=clock)
        failing_entry = scheduler.add_job(failing, interval_seconds=3600)
        scheduler.add_job(counting, interval_seconds=3600)

        results = scheduler.tick()
        scheduler.tick()

        assert [r.job_name for r in results] == ["counting"]
        assert failing.runs == 2
        assert counting.runs == 1
        assert failing_entry.last_run_at is None
        assert [e.title for e in dispatcher.events] == ["tick"]
        failures = [r for r in captured_logs() if r["message"] == "job_failed"]
        assert failures[0]["job_name"] == "failing"

    def test_from_config_registers_standard_jobs(self, session_factory, clock, funding_config):
        scheduler = JobScheduler.from_config(session_factory, funding_config, clock=clock)

        jobs = {type(entry.job): entry.interval_seconds for entry in scheduler.jobs}
        assert jobs == {
            CycleAdvancementJob: funding_config.scheduler.cycle_advancement_interval_seconds,
            AutoClosureJob: funding_config.scheduler.auto_closure_interval_seconds,
            FundedAmountReconciliationJob: funding_config.scheduler.reconciliation_interval_seconds,
        }

    def test_end_to_end_cycle_advancement(self, session_factory, clock, funding_config):
        dispatcher = RecordingNotificationDispatcher()
        service = FundingWorkflowService(
            session_factory, dispatcher=dispatcher, clock=clock, config=funding_config,
        )
        service.seed_rbac()
        admin = uuid4()
        service.bootstrap_super_admin(admin)
        project = service.create_project(admin, "Meals", "100", cycle_duration_days=1)
        clock.advance_by(timedelta(days=2))

        scheduler = JobScheduler.from_config(
            session_factory, funding_config, dispatcher=dispatcher, clock=clock,
        )
        results = {r.job_name: r for r in scheduler.tick()}

        assert results["cycle_advancement"].changed == (project.project_id,)
        assert results["auto_closure"].processed == 0
        assert results["funded_amount_reconciliation"].changed == ()
        assert service.get_cycle_stats(project.project_id).current_cycle_number == 2
        assert dispatcher.kinds() == [NotificationKind.PROJECT_CYCLE_ADVANCED.value]


class TestLifecycle:

    def test_start_and_stop(self, session_factory, clock):
        scheduler = JobScheduler(session_factory, clock=clock, tick_interval_seconds=0.01)

        scheduler.start()
        assert scheduler.is_running
        scheduler.stop(timeout=5)

        assert not scheduler.is_running
