"""
CaseLifecycleEngine tests.

Verifies:
- creation in draft with an audit event
- every transition writes exactly one history row and one timeline note
- invalid pairs fail before authorization
- role, ownership, reason and funding checks
- stakeholder notifications are queued, not sent
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from funding_kernel.domain.actor import SystemActor, UserActor
from funding_kernel.domain.case_lifecycle import CaseStatus, CaseType
from funding_kernel.domain.events import NotificationKind
from funding_kernel.exceptions import (
    CaseNotFoundError,
    ErrorKind,
    InvalidCaseTransitionError,
    MissingFieldError,
    NotCaseOwnerError,
    NotFullyFundedError,
    PermissionDeniedError,
    ReasonRequiredError,
    TransitionNotPermittedError,
)
from funding_kernel.models.audit_event import AuditAction
from funding_kernel.models.case import Case, CaseStatusHistory, CaseUpdate


def _history_count(session, case_id) -> int:
    return session.execute(
        select(func.count(CaseStatusHistory.id)).where(CaseStatusHistory.case_id == case_id)
    ).scalar_one()


class TestCreateCase:

    def test_creates_draft(self, cases, users, auditor):
        snapshot = cases.create_case("Roof repair", "1500", UserActor(users.donor))

        assert snapshot.status == CaseStatus.DRAFT
        assert snapshot.case_type == CaseType.ONE_TIME
        assert snapshot.target_amount == Decimal("1500.00")
        assert snapshot.current_amount == Decimal("0.00")
        assert snapshot.created_by == users.donor

        trace = auditor.get_trace("Case", snapshot.case_id)
        assert trace.actions == (AuditAction.CASE_CREATED,)

    def test_requires_cases_create(self, cases, users):
        with pytest.raises(PermissionDeniedError):
            cases.create_case("Roof repair", "1500", UserActor(users.volunteer))

    def test_blank_title_rejected(self, cases, users):
        with pytest.raises(MissingFieldError):
            cases.create_case("   ", "1500", UserActor(users.donor))


class TestChangeStatus:

    def test_full_happy_path(self, cases, users, session, clock, outbox):
        case = cases.create_case("Medical bills", "1000", UserActor(users.donor))

        clock.advance(1)
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))
        clock.advance(1)
        cases.change_status(
            case.case_id, CaseStatus.UNDER_REVIEW, UserActor(users.admin), "needs documents",
        )
        clock.advance(1)
        snapshot = cases.change_status(case.case_id, CaseStatus.PUBLISHED, UserActor(users.admin))

        assert snapshot.status == CaseStatus.PUBLISHED
        assert _history_count(session, case.case_id) == 3

        history = cases.get_status_history(case.case_id)
        assert [h.new_status for h in history] == [
            CaseStatus.PUBLISHED, CaseStatus.UNDER_REVIEW, CaseStatus.SUBMITTED,
        ]
        assert history[1].change_reason == "needs documents"
        assert history[0].changed_by == users.admin
        assert not history[0].system_triggered

        notes = session.execute(
            select(CaseUpdate).where(CaseUpdate.case_id == case.case_id)
        ).scalars().all()
        assert len(notes) == 3
        assert "Case Published!" in {n.title for n in notes}

        events = outbox.drain()
        assert [e.kind for e in events] == [NotificationKind.CASE_STATUS_CHANGED] * 3
        assert events[-1].recipients == (users.donor,)
        assert events[-1].payload["to"] == "published"

    def test_same_instant_history_is_newest_first(self, cases, users):
        case = cases.create_case("Medical bills", "1000", UserActor(users.donor))

        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))
        cases.change_status(
            case.case_id, CaseStatus.UNDER_REVIEW, UserActor(users.admin), "needs documents",
        )
        cases.change_status(case.case_id, CaseStatus.PUBLISHED, UserActor(users.admin))

        history = cases.get_status_history(case.case_id)
        assert len({h.changed_at for h in history}) == 1
        assert [h.new_status for h in history] == [
            CaseStatus.PUBLISHED, CaseStatus.UNDER_REVIEW, CaseStatus.SUBMITTED,
        ]

    def test_invalid_pair_rejected_for_every_actor(self, cases, users, session):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        for actor in (UserActor(users.super_admin), UserActor(users.donor), SystemActor()):
            with pytest.raises(InvalidCaseTransitionError) as exc_info:
                cases.change_status(case.case_id, CaseStatus.PUBLISHED, actor)
            assert exc_info.value.kind == ErrorKind.INVALID_TRANSITION
        assert _history_count(session, case.case_id) == 0

    def test_unknown_target_status_string(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        with pytest.raises(InvalidCaseTransitionError):
            cases.change_status(case.case_id, "archived", UserActor(users.admin))

    def test_missing_case(self, cases, users):
        from uuid import uuid4

        with pytest.raises(CaseNotFoundError):
            cases.change_status(uuid4(), CaseStatus.SUBMITTED, UserActor(users.admin))

    def test_donor_cannot_publish(self, cases, users, session):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))

        with pytest.raises(TransitionNotPermittedError) as exc_info:
            cases.change_status(case.case_id, CaseStatus.PUBLISHED, UserActor(users.donor))
        assert exc_info.value.kind == ErrorKind.FORBIDDEN
        assert session.get(Case, case.case_id).status == CaseStatus.SUBMITTED.value

    def test_super_admin_acts_as_admin(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))
        snapshot = cases.change_status(
            case.case_id, CaseStatus.PUBLISHED, UserActor(users.super_admin),
        )
        assert snapshot.status == CaseStatus.PUBLISHED

    def test_creator_role_must_own_case(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        with pytest.raises(NotCaseOwnerError):
            cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.other_donor))

    def test_admin_may_submit_any_case(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        snapshot = cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.admin))
        assert snapshot.status == CaseStatus.SUBMITTED

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reason_required(self, cases, users, session, reason):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))
        with pytest.raises(ReasonRequiredError):
            cases.change_status(
                case.case_id, CaseStatus.UNDER_REVIEW, UserActor(users.admin), reason,
            )
        assert _history_count(session, case.case_id) == 1

    def test_system_may_not_take_admin_transitions(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))
        with pytest.raises(TransitionNotPermittedError) as exc_info:
            cases.change_status(case.case_id, CaseStatus.PUBLISHED, SystemActor())
        assert exc_info.value.actor_id == "system"

    def test_system_closure_requires_full_funding(self, cases, published_case, session):
        case = published_case("1000.00")
        with pytest.raises(NotFullyFundedError):
            cases.change_status(case.case_id, CaseStatus.CLOSED, SystemActor())
        assert session.get(Case, case.case_id).status == CaseStatus.PUBLISHED.value

    def test_system_closure_never_closes_recurring(self, cases, published_case, session):
        case = published_case("100.00", case_type=CaseType.RECURRING)
        row = session.get(Case, case.case_id)
        row.current_amount = Decimal("150.00")
        session.flush()

        with pytest.raises(NotFullyFundedError):
            cases.change_status(case.case_id, CaseStatus.CLOSED, SystemActor())

    def test_admin_may_close_unfunded_case(self, cases, users, published_case):
        case = published_case("1000.00")
        snapshot = cases.change_status(case.case_id, CaseStatus.CLOSED, UserActor(users.admin))
        assert snapshot.status == CaseStatus.CLOSED

    def test_closed_is_terminal(self, cases, users, published_case):
        case = published_case()
        cases.change_status(case.case_id, CaseStatus.CLOSED, UserActor(users.admin))
        with pytest.raises(InvalidCaseTransitionError):
            cases.change_status(
                case.case_id, CaseStatus.UNDER_REVIEW, UserActor(users.admin), "reopen",
            )

    def test_transition_is_logged(self, cases, users, captured_logs):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))

        records = [r for r in captured_logs() if r["message"] == "case_status_changed"]
        assert len(records) == 1
        assert records[0]["from_status"] == "draft"
        assert records[0]["to_status"] == "submitted"


class TestAvailableTransitions:

    def test_admin_on_submitted(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))
        assert set(cases.available_transitions(case.case_id, UserActor(users.admin))) == {
            CaseStatus.PUBLISHED, CaseStatus.UNDER_REVIEW,
        }

    def test_owner_and_stranger_on_draft(self, cases, users):
        case = cases.create_case("Tuition", "500", UserActor(users.donor))
        assert cases.available_transitions(case.case_id, UserActor(users.donor)) == (
            CaseStatus.SUBMITTED,
        )
        assert cases.available_transitions(case.case_id, UserActor(users.other_donor)) == ()

    def test_system_on_published(self, cases, published_case):
        case = published_case()
        assert cases.available_transitions(case.case_id, SystemActor()) == (CaseStatus.CLOSED,)
