"""
Audit chain and append-only record tests.

Verifies:
- Every workflow step leaves a hash-chained audit event
- Tampering with a stored hash is detected by validate_chain()
- ORM updates/deletes of audit events and status history are rejected
- Contribution and closed-cycle immutability rules
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from funding_kernel.domain.actor import UserActor
from funding_kernel.exceptions import AuditChainBrokenError, ImmutabilityViolationError
from funding_kernel.models.audit_event import AuditAction, AuditEvent
from funding_kernel.models.case import CaseStatusHistory
from funding_kernel.models.contribution import Contribution
from funding_kernel.models.project import ProjectCycle


@pytest.fixture
def funded_contribution(published_case, contributions, users):
    """A published case with one approved contribution of 250.00."""
    case = published_case("1000.00")
    snapshot = contributions.submit(UserActor(users.donor), "250", "card", case_id=case.case_id)
    contributions.approve(snapshot.contribution_id, UserActor(users.admin))
    return case, snapshot.contribution_id


def _events(session) -> list[AuditEvent]:
    return list(session.execute(select(AuditEvent).order_by(AuditEvent.seq)).scalars())


class TestChainIntegrity:

    def test_chain_valid_after_workflow(self, auditor, funded_contribution):
        assert auditor.validate_chain()

    def test_workflow_steps_are_traced(self, auditor, funded_contribution):
        case, contribution_id = funded_contribution

        assert auditor.get_trace("Case", case.case_id).actions == (
            AuditAction.CASE_CREATED,
            AuditAction.CASE_STATUS_CHANGED,
            AuditAction.CASE_STATUS_CHANGED,
        )
        assert auditor.get_trace("Contribution", contribution_id).actions == (
            AuditAction.CONTRIBUTION_SUBMITTED,
            AuditAction.CONTRIBUTION_APPROVED,
        )

    def test_events_link_to_predecessor(self, session, funded_contribution):
        events = _events(session)

        assert events[0].is_genesis
        for previous, current in zip(events, events[1:]):
            assert current.prev_hash == previous.hash
            assert current.seq > previous.seq

    def test_empty_chain_is_valid(self, auditor):
        assert auditor.validate_chain()


class TestTamperDetection:

    def test_altered_payload_hash_detected(self, session, auditor, funded_contribution):
        target = _events(session)[2]
        session.execute(
            update(AuditEvent)
            .where(AuditEvent.id == target.id)
            .values(payload_hash="0" * 64)
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor.validate_chain()
        assert exc_info.value.audit_event_id == str(target.id)

    def test_broken_link_detected(self, session, auditor, funded_contribution):
        target = _events(session)[-1]
        session.execute(
            update(AuditEvent)
            .where(AuditEvent.id == target.id)
            .values(prev_hash="f" * 64)
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor.validate_chain()

    def test_altered_payload_detected(self, session, auditor, funded_contribution):
        target = _events(session)[0]
        session.execute(
            update(AuditEvent)
            .where(AuditEvent.id == target.id)
            .values(payload={"before": None, "after": {"title": "forged"}})
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor.validate_chain()


class TestAppendOnlyRecords:

    def test_audit_event_update_rejected(self, session, funded_contribution):
        event = _events(session)[0]
        event.action = "forged"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_audit_event_delete_rejected(self, session, funded_contribution):
        session.delete(_events(session)[0])

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_status_history_update_rejected(self, session, funded_contribution):
        case, _ = funded_contribution
        row = session.execute(
            select(CaseStatusHistory).where(CaseStatusHistory.case_id == case.case_id)
        ).scalars().first()
        row.change_reason = "rewritten"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_status_history_delete_rejected(self, session, funded_contribution):
        case, _ = funded_contribution
        row = session.execute(
            select(CaseStatusHistory).where(CaseStatusHistory.case_id == case.case_id)
        ).scalars().first()
        session.delete(row)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestContributionImmutability:

    def test_amount_cannot_change(self, session, funded_contribution):
        _, contribution_id = funded_contribution
        row = session.get(Contribution, contribution_id)
        row.amount = Decimal("9999.00")

        with pytest.raises(ImmutabilityViolationError, match="amount"):
            session.flush()

    def test_notes_may_change(self, session, funded_contribution):
        _, contribution_id = funded_contribution
        row = session.get(Contribution, contribution_id)
        row.notes = "thank-you letter sent"
        session.flush()

        assert session.get(Contribution, contribution_id).notes == "thank-you letter sent"

    def test_contribution_cannot_be_deleted(self, session, funded_contribution):
        _, contribution_id = funded_contribution
        session.delete(session.get(Contribution, contribution_id))

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_resubmission_count_cannot_decrease(
        self, session, published_case, contributions, users,
    ):
        case = published_case()
        snapshot = contributions.submit(UserActor(users.donor), "80", "card", case_id=case.case_id)
        contributions.reject(snapshot.contribution_id, UserActor(users.admin), "missing receipt")
        contributions.resubmit(snapshot.contribution_id, UserActor(users.donor), "receipt attached")

        approval = session.get(Contribution, snapshot.contribution_id).approval
        assert approval.resubmission_count == 1
        approval.resubmission_count = 0

        with pytest.raises(ImmutabilityViolationError, match="resubmission_count"):
            session.flush()


class TestClosedCycleImmutability:

    @pytest.fixture
    def completed_cycle(self, session, projects, users, clock):
        project = projects.create_project(
            "Meals", "100", UserActor(users.admin), cycle_duration_days=1,
        )
        clock.advance_by(timedelta(days=1))
        projects.advance_project_cycle(project.project_id, UserActor(users.admin))
        return session.execute(
            select(ProjectCycle).where(
                ProjectCycle.project_id == project.project_id,
                ProjectCycle.cycle_number == 1,
            )
        ).scalar_one()

    def test_closed_cycle_fields_are_frozen(self, session, completed_cycle):
        completed_cycle.target_amount = Decimal("5000.00")

        with pytest.raises(ImmutabilityViolationError, match="target_amount"):
            session.flush()

    def test_closed_cycle_accepts_amount_settle(self, session, completed_cycle):
        completed_cycle.current_amount = Decimal("40.00")
        session.flush()

        assert completed_cycle.current_amount == Decimal("40.00")
