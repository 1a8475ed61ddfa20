"""
RBAC domain types (``funding_kernel.domain.rbac``).

Responsibility
--------------
Role and permission vocabulary, the role-delta computation used when a
user's role set is replaced, and the privilege-escalation rule that
guards every role mutation.

Architecture position
---------------------
**Kernel domain layer** -- pure functions and value objects.  ZERO I/O.
The persistence-aware evaluator lives in
``funding_kernel.services.permission_service``.

Invariants enforced
-------------------
* Only a ``super_admin`` may grant or revoke ``super_admin``.
* Only a ``super_admin`` may modify their own role assignments.
* Permission names have the form ``resource:action``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

# =========================================================================
# Role vocabulary
# =========================================================================

SUPER_ADMIN = "super_admin"
ADMIN = "admin"
MODERATOR = "moderator"
SPONSOR = "sponsor"
VOLUNTEER = "volunteer"
DONOR = "donor"

SYSTEM_ROLES: frozenset[str] = frozenset({
    SUPER_ADMIN, ADMIN, MODERATOR, SPONSOR, VOLUNTEER, DONOR,
})

# Roles that may originate a case and submit it for review.
CREATOR_ROLES: frozenset[str] = frozenset({DONOR, SPONSOR})

# Role implications: holding the key satisfies every role in the value.
ROLE_IMPLICATIONS: dict[str, frozenset[str]] = {
    SUPER_ADMIN: frozenset({ADMIN}),
}


# =========================================================================
# Permission vocabulary
# =========================================================================


class Permissions:
    """Well-known permission names used by the engines."""

    CASES_CREATE = "cases:create"
    CASES_READ = "cases:read"
    CASES_UPDATE = "cases:update"
    CASES_PUBLISH = "cases:publish"
    CONTRIBUTIONS_CREATE = "contributions:create"
    CONTRIBUTIONS_READ = "contributions:read"
    CONTRIBUTIONS_APPROVE = "contributions:approve"
    CONTRIBUTIONS_REJECT = "contributions:reject"
    PROJECTS_CREATE = "projects:create"
    PROJECTS_READ = "projects:read"
    PROJECTS_UPDATE = "projects:update"
    RBAC_MANAGE = "rbac:manage"


def split_permission(name: str) -> tuple[str, str]:
    """Split ``resource:action`` into its parts.

    Raises:
        ValueError: If the name is not of the form ``resource:action``.
    """
    resource, sep, action = name.partition(":")
    if not sep or not resource or not action:
        raise ValueError(f"Permission must be 'resource:action', got {name!r}")
    return resource, action


def expand_roles(roles: frozenset[str] | set[str]) -> frozenset[str]:
    """Return the role set plus every role it implies."""
    expanded = set(roles)
    for role in roles:
        expanded |= ROLE_IMPLICATIONS.get(role, frozenset())
    return frozenset(expanded)


# =========================================================================
# Role delta
# =========================================================================


@dataclass(frozen=True)
class RoleDelta:
    """Difference between a user's current and requested role sets."""

    to_add: frozenset[UUID]
    to_remove: frozenset[UUID]

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def compute_role_delta(
    current_role_ids: frozenset[UUID] | set[UUID],
    requested_role_ids: frozenset[UUID] | set[UUID],
) -> RoleDelta:
    """Diff two role-id sets; the requested set replaces the current one."""
    current = frozenset(current_role_ids)
    requested = frozenset(requested_role_ids)
    return RoleDelta(to_add=requested - current, to_remove=current - requested)


# =========================================================================
# Privilege-escalation rule
# =========================================================================


def check_role_change(
    actor_id: UUID,
    actor_roles: frozenset[str],
    target_user_id: UUID,
    touched_role_names: frozenset[str],
) -> tuple[bool, str | None]:
    """Evaluate the privilege-escalation rule for one role mutation.

    Args:
        actor_id: Principal performing the mutation.
        actor_roles: Actor's effective role names.
        target_user_id: User whose assignments change.
        touched_role_names: Names of every role being granted or revoked.

    Returns:
        (allowed, reason).  ``reason`` is set when not allowed.
    """
    if SUPER_ADMIN in actor_roles:
        return True, None
    if actor_id == target_user_id:
        return False, "only a super_admin may modify their own roles"
    if SUPER_ADMIN in touched_role_names:
        return False, "only a super_admin may grant or revoke super_admin"
    return True, None


@dataclass(frozen=True)
class RoleChangeFailure:
    """One role grant or revoke that could not be applied."""

    role_id: UUID
    role_name: str
    error: str


@dataclass(frozen=True)
class RoleAssignmentResult:
    """Outcome of replacing a user's role set.

    Partial success is reported, never swallowed: ``is_partial`` is True
    when some items applied and others failed.
    """

    user_id: UUID
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    failed_adds: tuple[RoleChangeFailure, ...] = field(default_factory=tuple)
    failed_removes: tuple[RoleChangeFailure, ...] = field(default_factory=tuple)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_adds or self.failed_removes)

    @property
    def is_partial(self) -> bool:
        return self.has_failures and bool(self.added or self.removed)

    @property
    def unchanged(self) -> bool:
        return not (self.added or self.removed or self.has_failures)
