"""
FundingWorkflowService tests.

Each facade call runs in its own session; ``commit()`` releases a
savepoint of the per-test outer transaction (see ``session_factory``).

Verifies:
- one transaction per operation, rolled back on any error
- notifications are dispatched only after commit
- persistence failures surface as InternalError
- permission cache eviction after role changes
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from funding_kernel.domain.actor import UserActor
from funding_kernel.domain.case_lifecycle import CaseStatus
from funding_kernel.domain.contribution import ApprovalStatus
from funding_kernel.domain.events import NotificationKind
from funding_kernel.exceptions import (
    ErrorKind,
    InternalError,
    MissingFieldError,
    PrivilegeEscalationError,
    ReasonRequiredError,
    error_payload,
)
from funding_kernel.services.case_lifecycle_service import CaseLifecycleEngine
from funding_services import FundingWorkflowService, RecordingNotificationDispatcher


@dataclass(frozen=True)
class FacadeUsers:
    super_admin: UUID
    admin: UUID
    donor: UUID
    volunteer: UUID


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


@pytest.fixture
def service(session_factory, dispatcher, clock, funding_config):
    svc = FundingWorkflowService(
        session_factory, dispatcher=dispatcher, clock=clock, config=funding_config,
    )
    svc.seed_rbac()
    return svc


@pytest.fixture
def people(service, dispatcher) -> FacadeUsers:
    people = FacadeUsers(uuid4(), uuid4(), uuid4(), uuid4())
    service.bootstrap_super_admin(people.super_admin)
    for user_id, role in (
        (people.admin, "admin"),
        (people.donor, "donor"),
        (people.volunteer, "volunteer"),
    ):
        service.assign_roles(user_id, service.role_ids([role]), people.super_admin)
    dispatcher.clear()
    return people


@pytest.fixture
def live_case(service, people, clock, dispatcher):
    case = service.create_case(people.donor, "Clinic visit", "1000")
    clock.advance(1)
    service.change_case_status(case.case_id, CaseStatus.SUBMITTED, people.donor)
    clock.advance(1)
    published = service.change_case_status(case.case_id, CaseStatus.PUBLISHED, people.admin)
    dispatcher.clear()
    return published


class TestOperations:

    def test_funding_to_closure(self, service, people, live_case, dispatcher):
        first = service.submit_contribution(people.donor, "600", "card", case_id=live_case.case_id)
        second = service.submit_contribution(people.donor, "500", "card", case_id=live_case.case_id)
        service.approve_contribution(first.contribution_id, people.admin)
        outcome = service.approve_contribution(second.contribution_id, people.admin)

        assert outcome.funded_amount == Decimal("1100.00")
        assert service.get_case(live_case.case_id).current_amount == Decimal("1100.00")

        closed = service.change_case_status(live_case.case_id, CaseStatus.CLOSED)
        assert closed.status == CaseStatus.CLOSED
        history = service.get_case_history(live_case.case_id)
        assert history[0].system_triggered
        assert history[0].changed_by is None

        assert dispatcher.kinds() == [
            NotificationKind.CONTRIBUTION_SUBMITTED.value,
            NotificationKind.CONTRIBUTION_SUBMITTED.value,
            NotificationKind.CONTRIBUTION_APPROVED.value,
            NotificationKind.CONTRIBUTION_APPROVED.value,
            NotificationKind.CASE_STATUS_CHANGED.value,
        ]

    def test_reject_resubmit_revise(self, service, people, live_case):
        snapshot = service.submit_contribution(
            people.donor, "200", "card", case_id=live_case.case_id,
        )
        service.reject_contribution(snapshot.contribution_id, people.admin, "invalid proof")
        resubmitted = service.resubmit_contribution(
            snapshot.contribution_id, people.donor, "receipt attached",
        )
        assert resubmitted.status == ApprovalStatus.PENDING
        assert resubmitted.resubmission_count == 1

        service.reject_contribution(snapshot.contribution_id, people.admin, "still wrong")
        revision_id = service.revise_contribution(
            snapshot.contribution_id, people.donor, "250", "card", "corrected amount",
        )

        chain = service.get_revision_chain(revision_id)
        assert [c.contribution_id for c in chain] == [snapshot.contribution_id, revision_id]
        assert service.get_contribution(snapshot.contribution_id).status == ApprovalStatus.REVISED
        assert service.get_contribution(revision_id).amount == Decimal("250.00")

    def test_project_uses_configured_cycle_length(self, service, people, funding_config):
        project = service.create_project(people.admin, "Meals", "300")
        assert project.cycle_duration_days == funding_config.workflow.default_cycle_duration_days

        result = service.advance_project_cycle(
            project.project_id, people.admin, expected_cycle_number=1,
        )
        assert result.new_cycle_number == 2
        assert len(service.get_project_cycles(project.project_id)) == 2
        assert service.get_cycle_stats(project.project_id).completed_cycles == 1

    def test_available_transitions(self, service, people):
        case = service.create_case(people.donor, "Clinic visit", "1000")
        assert service.available_case_transitions(case.case_id, people.donor) == (
            CaseStatus.SUBMITTED,
        )

    def test_audit_chain_valid_after_workflow(self, service, people, live_case):
        service.submit_contribution(people.donor, "10", "card", case_id=live_case.case_id)
        assert service.validate_audit_chain()


class TestTransactionBoundary:

    def test_rejected_operation_writes_nothing(self, service, people, live_case, dispatcher):
        with pytest.raises(ReasonRequiredError):
            service.change_case_status(live_case.case_id, CaseStatus.UNDER_REVIEW, people.admin)

        assert service.get_case(live_case.case_id).status == CaseStatus.PUBLISHED
        assert dispatcher.events == []

    def test_rollback_discards_queued_notifications(self, service, people, dispatcher):
        case = service.create_case(people.donor, "Clinic visit", "1000")

        with pytest.raises(MissingFieldError):
            with service.unit_of_work("test_operation") as ctx:
                ctx.cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(people.donor))
                assert len(ctx.outbox) == 1
                raise MissingFieldError("anything")

        assert service.get_case(case.case_id).status == CaseStatus.DRAFT
        assert service.get_case_history(case.case_id) == []
        assert dispatcher.events == []

    def test_persistence_failure_becomes_internal_error(
        self, service, people, monkeypatch, captured_logs,
    ):
        def _fail(self, *args, **kwargs):
            raise OperationalError("INSERT INTO cases", {}, Exception("database is locked"))

        monkeypatch.setattr(CaseLifecycleEngine, "create_case", _fail)

        with pytest.raises(InternalError) as exc_info:
            service.create_case(people.donor, "Clinic visit", "1000")

        assert isinstance(exc_info.value.__cause__, OperationalError)
        payload = error_payload(exc_info.value)
        assert payload == {
            "kind": ErrorKind.INTERNAL_ERROR.value,
            "code": "INTERNAL_ERROR",
            "message": "Internal error",
        }
        failures = [r for r in captured_logs() if r["message"] == "operation_failed"]
        assert len(failures) == 1
        assert failures[0]["operation"] == "create_case"
        assert failures[0]["exc_type"] == "OperationalError"

    def test_failing_dispatcher_does_not_fail_operation(
        self, session_factory, clock, funding_config, captured_logs,
    ):
        class _Broken:
            def notify(self, event):
                raise RuntimeError("gateway down")

        svc = FundingWorkflowService(
            session_factory, dispatcher=_Broken(), clock=clock, config=funding_config,
        )
        svc.seed_rbac()
        owner = uuid4()
        svc.bootstrap_super_admin(owner)
        case = svc.create_case(owner, "Clinic visit", "1000")

        snapshot = svc.change_case_status(case.case_id, CaseStatus.SUBMITTED, owner)

        assert snapshot.status == CaseStatus.SUBMITTED
        assert svc.get_case(case.case_id).status == CaseStatus.SUBMITTED
        assert any(r["message"] == "notification_dispatch_failed" for r in captured_logs())

    def test_operations_carry_correlation_id(self, service, people, captured_logs):
        service.create_case(people.donor, "Clinic visit", "1000")

        created = [r for r in captured_logs() if r["message"] == "case_created"]
        assert len(created) == 1
        assert created[0]["correlation_id"]
        assert created[0]["actor_id"] == str(people.donor)


class TestRoleManagement:

    def test_escalation_is_rejected_and_nothing_changes(self, service, people):
        with pytest.raises(PrivilegeEscalationError):
            service.assign_roles(
                people.donor, service.role_ids(["donor", "super_admin"]), people.admin,
            )
        assert service.get_effective_roles(people.donor) == frozenset({"donor"})

    def test_role_change_is_visible_immediately(self, service, people):
        assert not service.has_permission(people.volunteer, "contributions:create")

        assert people.volunteer in service.permission_cache

        service.assign_roles(people.volunteer, service.role_ids(["donor"]), people.admin)

        assert people.volunteer not in service.permission_cache
        assert service.has_permission(people.volunteer, "contributions:create")

    def test_refresh_permissions(self, service, people):
        access = service.refresh_permissions(people.admin)
        assert "admin" in access.roles
        assert people.admin in service.permission_cache

    def test_seed_is_idempotent(self, service):
        first = service.seed_rbac()
        second = service.seed_rbac()
        assert first == second

    def test_facade_reads_fill_the_shared_cache(self, service, people):
        service.permission_cache.clear()

        service.has_permission(people.donor, "contributions:create")
        service.has_permission(people.donor, "contributions:create")

        assert len(service.permission_cache) == 1
        assert people.donor in service.permission_cache

    def test_failed_operation_evicts_touched_users(self, service, people):
        donor_role = service.role_ids(["donor"])

        with pytest.raises(RuntimeError):
            with service.unit_of_work("test_operation") as ctx:
                ctx.evaluator.assign_roles(people.volunteer, donor_role, people.admin)
                assert ctx.evaluator.has_permission(people.volunteer, "contributions:create")
                raise RuntimeError("worker crashed")

        assert people.volunteer not in service.permission_cache
        assert not service.has_permission(people.volunteer, "contributions:create")
        assert service.get_effective_roles(people.volunteer) == frozenset({"volunteer"})
