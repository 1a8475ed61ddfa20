"""
PermissionEvaluator -- role and permission evaluation and role management.

Responsibility:
    Answers "may this user do X?" for every engine, and applies role
    mutations under the privilege-escalation rule.  Effective access is
    cached per user in a shared PermissionCache and invalidated on every
    mutation that could change it.

Architecture position:
    Kernel > Services.  Leaf dependency of every engine.  Pure rules live
    in ``funding_kernel.domain.rbac``.

Invariants enforced:
    - Effective roles are active assignments that are unexpired on the
      injected clock.
    - ``super_admin`` implies ``admin`` and holds every permission.
    - Privilege escalation: only a super_admin may grant or revoke
      super_admin, and only a super_admin may change their own roles.
      Checked before any write.
    - Each role grant or revoke runs in its own savepoint and is audited
      individually; failures are reported in RoleAssignmentResult.

Failure modes:
    - PermissionDeniedError when the actor lacks ``rbac:manage``.
    - PrivilegeEscalationError on an escalation attempt.
    - RoleNotFoundError / PermissionNotFoundError for unknown references.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funding_kernel.domain.actor import Actor, SystemActor, UserActor
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.domain.rbac import (
    SUPER_ADMIN,
    Permissions,
    RoleAssignmentResult,
    RoleChangeFailure,
    check_role_change,
    compute_role_delta,
    expand_roles,
    split_permission,
)
from funding_kernel.exceptions import (
    PermissionDeniedError,
    PermissionNotFoundError,
    PrivilegeEscalationError,
    RoleNotFoundError,
)
from funding_kernel.logging_config import get_logger
from funding_kernel.models.audit_event import AuditAction
from funding_kernel.models.rbac import Permission, Role, UserRoleAssignment
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.permission_cache import AccessSet, PermissionCache

logger = get_logger("services.permission")


def _assignment_state(assignment: UserRoleAssignment) -> dict[str, Any]:
    return {
        "user_id": assignment.user_id,
        "role_id": assignment.role_id,
        "is_active": assignment.is_active,
        "expires_at": assignment.expires_at,
    }


class PermissionEvaluator:
    """Evaluates and mutates role-based access.

    Contract:
        Read methods consult the cache first and fall back to the database.
        Mutating methods flush inside the caller's transaction and
        invalidate affected users synchronously.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        cache: PermissionCache | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._cache = cache if cache is not None else PermissionCache(clock=self._clock)
        self._touched_users: set[UUID] = set()

    @property
    def touched_users(self) -> frozenset[UUID]:
        """Users whose access changed in this evaluator's transaction."""
        return frozenset(self._touched_users)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _load_access(self, user_id: UUID) -> AccessSet:
        now = self._clock.now()
        assignments = self._session.execute(
            select(UserRoleAssignment).where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active.is_(True),
            )
        ).scalars().all()

        roles: set[str] = set()
        permissions: set[str] = set()
        for assignment in assignments:
            if not assignment.is_effective(now):
                continue
            roles.add(assignment.role.name)
            permissions |= assignment.role.permission_names

        return AccessSet(
            user_id=user_id,
            roles=expand_roles(frozenset(roles)),
            permissions=frozenset(permissions),
        )

    def get_access(self, user_id: UUID) -> AccessSet:
        access = self._cache.get(user_id)
        if access is None:
            access = self._load_access(user_id)
            self._cache.put(access)
        return access

    def refresh(self, user_id: UUID) -> AccessSet:
        """Drop the cached entry and recompute from the database."""
        self._cache.invalidate(user_id)
        return self.get_access(user_id)

    def get_effective_roles(self, user_id: UUID) -> frozenset[str]:
        return self.get_access(user_id).roles

    def get_effective_permissions(self, user_id: UUID) -> frozenset[str]:
        return self.get_access(user_id).permissions

    def has_role(self, user_id: UUID, role_name: str) -> bool:
        return role_name in self.get_effective_roles(user_id)

    def has_permission(self, user_id: UUID, permission_name: str) -> bool:
        access = self.get_access(user_id)
        if SUPER_ADMIN in access.roles:
            return True
        return permission_name in access.permissions

    def require_permission(self, actor: Actor, permission_name: str) -> None:
        """Raise unless ``actor`` holds the permission.  System actors pass."""
        if actor.is_system:
            return
        if not self.has_permission(actor.actor_id, permission_name):
            logger.warning(
                "permission_denied",
                extra={"actor_id": str(actor.actor_id), "permission": permission_name},
            )
            raise PermissionDeniedError(str(actor.actor_id), permission_name)

    def users_with_permission(self, permission_name: str) -> tuple[UUID, ...]:
        """Users currently holding a permission (directly or as super_admin)."""
        now = self._clock.now()
        assignments = self._session.execute(
            select(UserRoleAssignment).where(UserRoleAssignment.is_active.is_(True))
        ).scalars().all()

        holders: set[UUID] = set()
        for assignment in assignments:
            if not assignment.is_effective(now):
                continue
            role = assignment.role
            if role.name == SUPER_ADMIN or permission_name in role.permission_names:
                holders.add(assignment.user_id)
        return tuple(sorted(holders, key=str))

    # ------------------------------------------------------------------
    # Role assignment
    # ------------------------------------------------------------------

    def assign_roles(
        self,
        user_id: UUID,
        role_ids: Iterable[UUID],
        actor_id: UUID,
        expires_at: datetime | None = None,
    ) -> RoleAssignmentResult:
        """Replace ``user_id``'s role set with ``role_ids``.

        Validation (permission, unknown roles, escalation) happens before
        any write.  Grants and revokes are applied one by one; a failure
        of one item does not undo the others.
        """
        actor = UserActor(actor_id)
        self.require_permission(actor, Permissions.RBAC_MANAGE)

        requested_ids = frozenset(role_ids)
        requested_roles = self._load_roles_by_id(requested_ids)

        current = self._current_assignments(user_id)
        current_ids = frozenset(current)
        delta = compute_role_delta(current_ids, requested_ids)

        touched_names = frozenset(
            [requested_roles[role_id].name for role_id in delta.to_add]
            + [current[role_id].role.name for role_id in delta.to_remove]
        )
        actor_roles = self.get_effective_roles(actor_id)
        allowed, reason = check_role_change(actor_id, actor_roles, user_id, touched_names)
        if not allowed:
            logger.warning(
                "privilege_escalation_blocked",
                extra={
                    "actor_id": str(actor_id),
                    "target_user_id": str(user_id),
                    "roles": sorted(touched_names),
                    "reason": reason,
                },
            )
            raise PrivilegeEscalationError(str(actor_id), str(user_id), reason or "")

        added: list[str] = []
        removed: list[str] = []
        failed_adds: list[RoleChangeFailure] = []
        failed_removes: list[RoleChangeFailure] = []

        for role in sorted((requested_roles[r] for r in delta.to_add), key=lambda r: r.name):
            failure = self._in_savepoint(
                lambda role=role: self._apply_grant(user_id, role, actor, expires_at),
                role,
                "role_grant_failed",
                user_id,
            )
            if failure is None:
                added.append(role.name)
            else:
                failed_adds.append(failure)

        for role in sorted((current[r].role for r in delta.to_remove), key=lambda r: r.name):
            failure = self._in_savepoint(
                lambda role=role: self._apply_revoke(user_id, role, actor),
                role,
                "role_revoke_failed",
                user_id,
            )
            if failure is None:
                removed.append(role.name)
            else:
                failed_removes.append(failure)

        self._invalidate(user_id)

        result = RoleAssignmentResult(
            user_id=user_id,
            added=tuple(added),
            removed=tuple(removed),
            failed_adds=tuple(failed_adds),
            failed_removes=tuple(failed_removes),
        )
        logger.info(
            "roles_assigned",
            extra={
                "target_user_id": str(user_id),
                "added": list(result.added),
                "removed": list(result.removed),
                "failed": len(failed_adds) + len(failed_removes),
                "is_partial": result.is_partial,
            },
        )
        return result

    def bootstrap_role(
        self,
        user_id: UUID,
        role_name: str,
        expires_at: datetime | None = None,
    ) -> None:
        """Grant a role as the system, bypassing actor checks.

        Used to install the first super_admin when no principal exists yet.
        """
        role = self._load_role_by_name(role_name)
        self._apply_grant(user_id, role, SystemActor(job_name="bootstrap"), expires_at)
        self._invalidate(user_id)

    def _in_savepoint(self, apply, role: Role, event_name: str, user_id: UUID):
        savepoint = self._session.begin_nested()
        try:
            apply()
            savepoint.commit()
            return None
        except SQLAlchemyError as exc:
            savepoint.rollback()
            logger.warning(
                event_name,
                extra={"target_user_id": str(user_id), "role": role.name},
                exc_info=True,
            )
            return RoleChangeFailure(role_id=role.id, role_name=role.name, error=type(exc).__name__)

    def _apply_grant(
        self,
        user_id: UUID,
        role: Role,
        actor: Actor,
        expires_at: datetime | None,
    ) -> UserRoleAssignment:
        now = self._clock.now()
        assignment = self._session.execute(
            select(UserRoleAssignment)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role.id,
            )
            .with_for_update(of=UserRoleAssignment)
        ).scalar_one_or_none()

        before = _assignment_state(assignment) if assignment is not None else None
        if assignment is None:
            assignment = UserRoleAssignment(
                user_id=user_id,
                role_id=role.id,
                role=role,
                is_active=True,
                assigned_by=actor.user_id,
                assigned_at=now,
                expires_at=expires_at,
            )
            self._session.add(assignment)
        else:
            assignment.is_active = True
            assignment.assigned_by = actor.user_id
            assignment.assigned_at = now
            assignment.expires_at = expires_at
            assignment.revoked_at = None
            assignment.revoked_by = None
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.ROLE_GRANTED,
            "UserRoleAssignment",
            assignment.id,
            before=before,
            after=_assignment_state(assignment),
            role_name=role.name,
        )
        return assignment

    def _apply_revoke(self, user_id: UUID, role: Role, actor: Actor) -> UserRoleAssignment:
        assignment = self._session.execute(
            select(UserRoleAssignment)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role.id,
            )
            .with_for_update(of=UserRoleAssignment)
        ).scalar_one()

        before = _assignment_state(assignment)
        assignment.is_active = False
        assignment.revoked_at = self._clock.now()
        assignment.revoked_by = actor.user_id
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.ROLE_REVOKED,
            "UserRoleAssignment",
            assignment.id,
            before=before,
            after=_assignment_state(assignment),
            role_name=role.name,
        )
        return assignment

    # ------------------------------------------------------------------
    # Role and permission definitions
    # ------------------------------------------------------------------

    def ensure_permission(self, name: str, description: str | None = None) -> Permission:
        """Return the named permission, creating it if needed."""
        permission = self._session.execute(
            select(Permission).where(Permission.name == name)
        ).scalar_one_or_none()
        if permission is None:
            resource, action = split_permission(name)
            permission = Permission(
                name=name, resource=resource, action=action, description=description,
            )
            self._session.add(permission)
            self._session.flush()
        return permission

    def create_role(
        self,
        name: str,
        display_name: str,
        actor: Actor,
        permission_names: Iterable[str] = (),
        description: str | None = None,
        is_system: bool = False,
    ) -> Role:
        self.require_permission(actor, Permissions.RBAC_MANAGE)
        role = Role(
            name=name,
            display_name=display_name,
            description=description,
            is_system=is_system,
        )
        role.permissions = [self.ensure_permission(p) for p in sorted(set(permission_names))]
        self._session.add(role)
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.ROLE_CREATED,
            "Role",
            role.id,
            after={"name": name, "permissions": sorted(role.permission_names)},
        )
        logger.info("role_created", extra={"role": name, "is_system": is_system})
        return role

    def grant_permission_to_role(self, role_name: str, permission_name: str, actor: Actor) -> bool:
        """Attach a permission to a role.  Returns False if already attached."""
        self.require_permission(actor, Permissions.RBAC_MANAGE)
        role = self._load_role_by_name(role_name)
        if permission_name in role.permission_names:
            return False
        before = sorted(role.permission_names)
        role.permissions.append(self.ensure_permission(permission_name))
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.PERMISSION_GRANTED,
            "Role",
            role.id,
            before={"permissions": before},
            after={"permissions": sorted(role.permission_names)},
            permission=permission_name,
        )
        self._invalidate_role_holders(role)
        return True

    def revoke_permission_from_role(self, role_name: str, permission_name: str, actor: Actor) -> bool:
        """Detach a permission from a role.  Returns False if it was not attached."""
        self.require_permission(actor, Permissions.RBAC_MANAGE)
        role = self._load_role_by_name(role_name)
        permission = next((p for p in role.permissions if p.name == permission_name), None)
        if permission is None:
            if self._session.execute(
                select(Permission.id).where(Permission.name == permission_name)
            ).first() is None:
                raise PermissionNotFoundError(permission_name)
            return False
        before = sorted(role.permission_names)
        role.permissions.remove(permission)
        self._session.flush()

        self._auditor.record(
            actor,
            AuditAction.PERMISSION_REVOKED,
            "Role",
            role.id,
            before={"permissions": before},
            after={"permissions": sorted(role.permission_names)},
            permission=permission_name,
        )
        self._invalidate_role_holders(role)
        return True

    def role_ids_for(self, role_names: Iterable[str]) -> tuple[UUID, ...]:
        """Resolve role names to ids, raising for unknown names."""
        names = sorted(set(role_names))
        roles = self._session.execute(
            select(Role).where(Role.name.in_(names))
        ).scalars().all()
        found = {role.name: role.id for role in roles}
        missing = [name for name in names if name not in found]
        if missing:
            raise RoleNotFoundError(missing)
        return tuple(found[name] for name in names)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _invalidate(self, user_id: UUID) -> None:
        self._touched_users.add(user_id)
        self._cache.invalidate(user_id)

    def _invalidate_role_holders(self, role: Role) -> None:
        holders = self._session.execute(
            select(UserRoleAssignment.user_id).where(
                UserRoleAssignment.role_id == role.id,
                UserRoleAssignment.is_active.is_(True),
            )
        ).scalars().all()
        for user_id in holders:
            self._invalidate(user_id)

    def _current_assignments(self, user_id: UUID) -> dict[UUID, UserRoleAssignment]:
        now = self._clock.now()
        assignments = self._session.execute(
            select(UserRoleAssignment).where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active.is_(True),
            )
        ).scalars().all()
        return {a.role_id: a for a in assignments if a.is_effective(now)}

    def _load_roles_by_id(self, role_ids: frozenset[UUID]) -> dict[UUID, Role]:
        if not role_ids:
            return {}
        roles = self._session.execute(
            select(Role).where(Role.id.in_(list(role_ids)))
        ).scalars().all()
        found = {role.id: role for role in roles}
        missing = sorted(str(role_id) for role_id in role_ids if role_id not in found)
        if missing:
            raise RoleNotFoundError(missing)
        return found

    def _load_role_by_name(self, role_name: str) -> Role:
        role = self._session.execute(
            select(Role).where(Role.name == role_name)
        ).scalar_one_or_none()
        if role is None:
            raise RoleNotFoundError([role_name])
        return role
