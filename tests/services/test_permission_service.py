"""
PermissionEvaluator tests.

Verifies:
- effective roles honour activity, expiry and the super_admin implication
- the privilege-escalation rule is checked before any write
- replace semantics of assign_roles with per-role savepoints
- cache invalidation on every role mutation
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from funding_kernel.domain.actor import SystemActor, UserActor
from funding_kernel.domain.rbac import ADMIN, DONOR, MODERATOR, SUPER_ADMIN, Permissions
from funding_kernel.exceptions import (
    PermissionDeniedError,
    PermissionNotFoundError,
    PrivilegeEscalationError,
    RoleNotFoundError,
)
from funding_kernel.models.audit_event import AuditAction, AuditEvent
from funding_kernel.models.rbac import UserRoleAssignment
from funding_kernel.services.permission_cache import PermissionCache
from funding_kernel.services.permission_service import PermissionEvaluator


def _assignments(session, user_id) -> list[UserRoleAssignment]:
    return list(session.execute(
        select(UserRoleAssignment).where(UserRoleAssignment.user_id == user_id)
    ).scalars().all())


class TestEvaluation:

    def test_super_admin_implies_admin_and_everything(self, evaluator, users):
        roles = evaluator.get_effective_roles(users.super_admin)
        assert {SUPER_ADMIN, ADMIN} <= roles
        assert evaluator.has_permission(users.super_admin, "anything:at_all")

    def test_donor_permissions(self, evaluator, users):
        assert evaluator.has_permission(users.donor, Permissions.CONTRIBUTIONS_CREATE)
        assert not evaluator.has_permission(users.donor, Permissions.CONTRIBUTIONS_APPROVE)

    def test_user_without_roles(self, evaluator, users):
        assert evaluator.get_effective_roles(users.nobody) == frozenset()
        assert not evaluator.has_permission(users.nobody, Permissions.CASES_READ)

    def test_system_actor_passes(self, evaluator):
        evaluator.require_permission(SystemActor(), Permissions.RBAC_MANAGE)

    def test_require_permission_raises(self, evaluator, users):
        with pytest.raises(PermissionDeniedError) as exc_info:
            evaluator.require_permission(UserActor(users.donor), Permissions.RBAC_MANAGE)
        assert exc_info.value.permission == Permissions.RBAC_MANAGE

    def test_expired_assignment_is_ignored(self, evaluator, role_ids, clock):
        user_id = uuid4()
        evaluator.bootstrap_role(user_id, MODERATOR, expires_at=clock.now() + timedelta(hours=1))
        assert evaluator.has_role(user_id, MODERATOR)

        clock.advance_by(timedelta(hours=2))

        assert not evaluator.has_role(user_id, MODERATOR)

    def test_users_with_permission(self, evaluator, users):
        holders = set(evaluator.users_with_permission(Permissions.CONTRIBUTIONS_APPROVE))
        assert holders == {users.admin, users.super_admin}


class TestAssignRoles:

    def test_replace_semantics(self, evaluator, users, role_ids, session):
        result = evaluator.assign_roles(
            users.volunteer, [role_ids[DONOR], role_ids[MODERATOR]], users.admin,
        )

        assert set(result.added) == {DONOR, MODERATOR}
        assert result.removed == ("volunteer",)
        assert not result.has_failures
        assert evaluator.get_effective_roles(users.volunteer) == frozenset({DONOR, MODERATOR})

    def test_same_set_is_unchanged(self, evaluator, users, role_ids):
        result = evaluator.assign_roles(users.donor, [role_ids[DONOR]], users.admin)
        assert result.unchanged

    def test_each_change_is_audited(self, evaluator, users, role_ids, session):
        evaluator.assign_roles(users.volunteer, [role_ids[DONOR]], users.admin)

        actions = session.execute(
            select(AuditEvent.action).where(AuditEvent.actor_id == users.admin)
        ).scalars().all()
        assert sorted(actions) == sorted([
            AuditAction.ROLE_GRANTED.value, AuditAction.ROLE_REVOKED.value,
        ])

    def test_regrant_reactivates_assignment(self, evaluator, users, role_ids, session):
        evaluator.assign_roles(users.volunteer, [], users.admin)
        evaluator.assign_roles(users.volunteer, [role_ids["volunteer"]], users.admin)

        rows = _assignments(session, users.volunteer)
        assert len(rows) == 1
        assert rows[0].is_active
        assert rows[0].revoked_at is None

    def test_admin_may_not_grant_super_admin(self, evaluator, users, role_ids, session):
        before = len(_assignments(session, users.donor))
        with pytest.raises(PrivilegeEscalationError):
            evaluator.assign_roles(
                users.donor, [role_ids[DONOR], role_ids[SUPER_ADMIN]], users.admin,
            )
        assert len(_assignments(session, users.donor)) == before
        assert not evaluator.has_role(users.donor, SUPER_ADMIN)

    def test_admin_may_not_revoke_super_admin(self, evaluator, users, role_ids):
        with pytest.raises(PrivilegeEscalationError):
            evaluator.assign_roles(users.super_admin, [role_ids[ADMIN]], users.admin)
        assert evaluator.has_role(users.super_admin, SUPER_ADMIN)

    def test_admin_may_not_change_own_roles(self, evaluator, users, role_ids):
        with pytest.raises(PrivilegeEscalationError):
            evaluator.assign_roles(
                users.admin, [role_ids[ADMIN], role_ids[MODERATOR]], users.admin,
            )

    def test_super_admin_may_grant_super_admin(self, evaluator, users, role_ids):
        result = evaluator.assign_roles(
            users.admin, [role_ids[ADMIN], role_ids[SUPER_ADMIN]], users.super_admin,
        )
        assert result.added == (SUPER_ADMIN,)
        assert evaluator.has_role(users.admin, SUPER_ADMIN)

    def test_requires_rbac_manage(self, evaluator, users, role_ids):
        with pytest.raises(PermissionDeniedError):
            evaluator.assign_roles(users.volunteer, [role_ids[DONOR]], users.moderator)

    def test_unknown_role_rejected_before_writes(self, evaluator, users, role_ids, session):
        with pytest.raises(RoleNotFoundError):
            evaluator.assign_roles(users.volunteer, [role_ids[DONOR], uuid4()], users.admin)
        assert evaluator.get_effective_roles(users.volunteer) == frozenset({"volunteer"})

    def test_partial_failure_is_reported(self, evaluator, users, role_ids, monkeypatch):
        original = evaluator._apply_grant

        def _apply_grant(user_id, role, actor, expires_at):
            if role.name == MODERATOR:
                raise OperationalError("INSERT", {}, Exception("disk full"))
            return original(user_id, role, actor, expires_at)

        monkeypatch.setattr(evaluator, "_apply_grant", _apply_grant)
        result = evaluator.assign_roles(
            users.volunteer,
            [role_ids["volunteer"], role_ids[DONOR], role_ids[MODERATOR]],
            users.admin,
        )

        assert result.added == (DONOR,)
        assert [f.role_name for f in result.failed_adds] == [MODERATOR]
        assert result.failed_adds[0].error == "OperationalError"
        assert result.is_partial
        assert evaluator.get_effective_roles(users.volunteer) == frozenset({"volunteer", DONOR})

    def test_assignment_invalidates_cache(self, evaluator, users, role_ids, permission_cache):
        evaluator.get_access(users.volunteer)
        assert users.volunteer in permission_cache

        evaluator.assign_roles(users.volunteer, [role_ids[DONOR]], users.admin)

        assert users.volunteer in evaluator.touched_users
        assert users.volunteer not in permission_cache
        assert evaluator.has_permission(users.volunteer, Permissions.CONTRIBUTIONS_CREATE)


class TestRoleDefinitions:

    def test_grant_permission_to_role(self, evaluator, users):
        admin = UserActor(users.super_admin)
        assert not evaluator.has_permission(users.volunteer, Permissions.PROJECTS_READ)

        assert evaluator.grant_permission_to_role("volunteer", Permissions.PROJECTS_READ, admin)
        assert not evaluator.grant_permission_to_role("volunteer", Permissions.PROJECTS_READ, admin)

        assert evaluator.has_permission(users.volunteer, Permissions.PROJECTS_READ)

    def test_revoke_permission_from_role(self, evaluator, users):
        admin = UserActor(users.super_admin)
        assert evaluator.revoke_permission_from_role("donor", Permissions.CASES_CREATE, admin)
        assert not evaluator.has_permission(users.donor, Permissions.CASES_CREATE)
        assert not evaluator.revoke_permission_from_role("donor", Permissions.CASES_CREATE, admin)

    def test_revoke_unknown_permission(self, evaluator, users):
        with pytest.raises(PermissionNotFoundError):
            evaluator.revoke_permission_from_role(
                "donor", "reports:export", UserActor(users.super_admin),
            )

    def test_role_ids_for_unknown_name(self, evaluator, role_ids):
        with pytest.raises(RoleNotFoundError) as exc_info:
            evaluator.role_ids_for([DONOR, "treasurer"])
        assert exc_info.value.role_refs == ["treasurer"]


class TestSharedCache:

    def test_empty_injected_cache_is_used(self, session, auditor, clock):
        shared = PermissionCache(ttl_seconds=60, clock=clock)
        assert len(shared) == 0

        evaluator = PermissionEvaluator(session, auditor, shared, clock)
        evaluator.get_access(uuid4())

        assert len(shared) == 1

    def test_evaluators_share_entries(self, session, auditor, clock, permission_cache, users):
        first = PermissionEvaluator(session, auditor, permission_cache, clock)
        second = PermissionEvaluator(session, auditor, permission_cache, clock)

        first.get_access(users.donor)

        assert users.donor in permission_cache
        assert second.get_access(users.donor) is first.get_access(users.donor)
