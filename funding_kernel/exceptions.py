"""
Typed Exception Hierarchy for the Funding Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Workflow errors cross several boundaries: the kernel services raise them,
the outer facade translates persistence failures, and API layers render
them for clients.  Callers must never parse message strings to decide
what happened.

Every exception therefore carries:
  1. A TYPED class (catch by type, not message)
  2. A fine-grained CODE attribute (machine-readable, API-safe)
  3. A stable KIND from ``ErrorKind`` (the category outer layers map to
     HTTP status codes or CLI exit codes)
  4. Structured DATA as attributes (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.change_status(case_id, CaseStatus.PUBLISHED, actor)
    except Exception as e:
        if "not allowed" in str(e):  # FRAGILE - message might change
            return 403

Example - RIGHT way (what this module enables):
    try:
        engine.change_status(case_id, CaseStatus.PUBLISHED, actor)
    except FundingKernelError as e:
        return error_payload(e)  # {"kind": "FORBIDDEN", "code": ..., ...}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from FundingKernelError:

    FundingKernelError (base)
    |
    +-- NotFoundError                       kind NOT_FOUND
    |   +-- CaseNotFoundError
    |   +-- ContributionNotFoundError
    |   +-- ProjectNotFoundError
    |   +-- RoleNotFoundError
    |   +-- PermissionNotFoundError
    |
    +-- InvalidTransitionError              kind INVALID_TRANSITION
    |   +-- InvalidCaseTransitionError
    |   +-- InvalidApprovalTransitionError
    |   +-- InvalidProjectTransitionError
    |
    +-- AuthorizationError                  kind FORBIDDEN
    |   +-- PermissionDeniedError
    |   +-- TransitionNotPermittedError
    |   +-- NotContributionOwnerError
    |   +-- NotCaseOwnerError
    |   +-- PrivilegeEscalationError
    |
    +-- WorkflowValidationError             kind VALIDATION_ERROR
    |   +-- ReasonRequiredError
    |   +-- MissingFieldError
    |   +-- InvalidAmountError
    |   +-- NotFullyFundedError
    |   +-- InvalidParentStateError
    |   +-- NotRevisableError
    |   +-- ProjectPausedError
    |
    +-- ConflictError                       kind CONFLICT
    |   +-- StaleCycleError
    |
    +-- InternalError                       kind INTERNAL_ERROR
        +-- ImmutabilityViolationError
        +-- AuditChainBrokenError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Validation and authorization errors are raised BEFORE any write, so
   catching them never requires compensating work.

2. CONFLICT outcomes on idempotent operations (re-approving, re-advancing
   a cycle) are returned as no-op results, not raised.

3. Persistence failures (SQLAlchemyError) are translated to InternalError
   by the outer facade after rollback; the original exception is chained.

===============================================================================
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error categories exposed to outer layers."""

    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class FundingKernelError(Exception):
    """
    Base exception for all funding kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification and a `kind` class attribute naming the category.
    """

    code: str = "FUNDING_KERNEL_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR


# Not-found exceptions


class NotFoundError(FundingKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    kind: ErrorKind = ErrorKind.NOT_FOUND


class CaseNotFoundError(NotFoundError):
    """Case with given ID was not found."""

    code: str = "CASE_NOT_FOUND"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case not found: {case_id}")


class ContributionNotFoundError(NotFoundError):
    """Contribution with given ID was not found."""

    code: str = "CONTRIBUTION_NOT_FOUND"

    def __init__(self, contribution_id: str):
        self.contribution_id = contribution_id
        super().__init__(f"Contribution not found: {contribution_id}")


class ProjectNotFoundError(NotFoundError):
    """Project with given ID was not found."""

    code: str = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class RoleNotFoundError(NotFoundError):
    """One or more role IDs or names do not exist."""

    code: str = "ROLE_NOT_FOUND"

    def __init__(self, role_refs: list[str]):
        self.role_refs = role_refs
        super().__init__(f"Role(s) not found: {', '.join(role_refs)}")


class PermissionNotFoundError(NotFoundError):
    """Permission name is not registered."""

    code: str = "PERMISSION_NOT_FOUND"

    def __init__(self, permission_name: str):
        self.permission_name = permission_name
        super().__init__(f"Permission not found: {permission_name}")


# Transition exceptions


class InvalidTransitionError(FundingKernelError):
    """Base exception for state changes that the state machine forbids."""

    code: str = "INVALID_TRANSITION"
    kind: ErrorKind = ErrorKind.INVALID_TRANSITION


class InvalidCaseTransitionError(InvalidTransitionError):
    """No rule exists for the requested case status change."""

    code: str = "INVALID_CASE_TRANSITION"

    def __init__(self, case_id: str, from_status: str, to_status: str):
        self.case_id = case_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Case {case_id} cannot move from {from_status} to {to_status}"
        )


class InvalidApprovalTransitionError(InvalidTransitionError):
    """Contribution approval status cannot make the requested move."""

    code: str = "INVALID_APPROVAL_TRANSITION"

    def __init__(self, contribution_id: str, from_status: str, to_status: str):
        self.contribution_id = contribution_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Contribution {contribution_id} cannot move from "
            f"{from_status} to {to_status}"
        )


class InvalidProjectTransitionError(InvalidTransitionError):
    """Project status cannot make the requested move."""

    code: str = "INVALID_PROJECT_TRANSITION"

    def __init__(self, project_id: str, from_status: str, to_status: str):
        self.project_id = project_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Project {project_id} cannot move from {from_status} to {to_status}"
        )


# Authorization exceptions


class AuthorizationError(FundingKernelError):
    """Base exception for actors lacking the authority to act."""

    code: str = "FORBIDDEN"
    kind: ErrorKind = ErrorKind.FORBIDDEN


class PermissionDeniedError(AuthorizationError):
    """Actor does not hold the required permission."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, actor_id: str, permission: str):
        self.actor_id = actor_id
        self.permission = permission
        super().__init__(f"Actor {actor_id} lacks permission {permission}")


class TransitionNotPermittedError(AuthorizationError):
    """Actor's roles do not intersect the transition's allowed roles."""

    code: str = "TRANSITION_NOT_PERMITTED"

    def __init__(
        self,
        actor_id: str,
        from_status: str,
        to_status: str,
        allowed_roles: list[str],
    ):
        self.actor_id = actor_id
        self.from_status = from_status
        self.to_status = to_status
        self.allowed_roles = allowed_roles
        super().__init__(
            f"Actor {actor_id} may not move a case from {from_status} to "
            f"{to_status} (requires one of: {', '.join(allowed_roles)})"
        )


class NotContributionOwnerError(AuthorizationError):
    """Only the original donor may resubmit or revise a contribution."""

    code: str = "NOT_CONTRIBUTION_OWNER"

    def __init__(self, contribution_id: str, actor_id: str):
        self.contribution_id = contribution_id
        self.actor_id = actor_id
        super().__init__(
            f"Actor {actor_id} is not the donor of contribution {contribution_id}"
        )


class NotCaseOwnerError(AuthorizationError):
    """A creator-role actor may only act on cases they created."""

    code: str = "NOT_CASE_OWNER"

    def __init__(self, case_id: str, actor_id: str):
        self.case_id = case_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} did not create case {case_id}")


class PrivilegeEscalationError(AuthorizationError):
    """Role mutation would violate the privilege-escalation rule."""

    code: str = "PRIVILEGE_ESCALATION"

    def __init__(self, actor_id: str, target_user_id: str, reason: str):
        self.actor_id = actor_id
        self.target_user_id = target_user_id
        self.reason = reason
        super().__init__(
            f"Actor {actor_id} may not change roles of {target_user_id}: {reason}"
        )


# Validation exceptions


class WorkflowValidationError(FundingKernelError):
    """Base exception for business-rule violations on well-formed requests."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR


class ReasonRequiredError(WorkflowValidationError):
    """Transition requires a non-empty reason."""

    code: str = "REASON_REQUIRED"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"A reason is required to move from {from_status} to {to_status}"
        )


class MissingFieldError(WorkflowValidationError):
    """A required field was missing or blank."""

    code: str = "MISSING_FIELD"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Field is required: {field_name}")


class InvalidAmountError(WorkflowValidationError):
    """Amount is not a positive two-place decimal."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class NotFullyFundedError(WorkflowValidationError):
    """System-triggered closure requested for a case that is not funded."""

    code: str = "NOT_FULLY_FUNDED"

    def __init__(self, case_id: str, current_amount: str, target_amount: str):
        self.case_id = case_id
        self.current_amount = current_amount
        self.target_amount = target_amount
        super().__init__(
            f"Case {case_id} is not fully funded "
            f"({current_amount} of {target_amount})"
        )


class InvalidParentStateError(WorkflowValidationError):
    """The owning case or project is not in a state that accepts the action."""

    code: str = "INVALID_PARENT_STATE"

    def __init__(self, entity_type: str, entity_id: str, status: str, action: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action}: {entity_type} {entity_id} is {status}"
        )


class NotRevisableError(WorkflowValidationError):
    """Only rejected contributions can be revised."""

    code: str = "NOT_REVISABLE"

    def __init__(self, contribution_id: str, status: str):
        self.contribution_id = contribution_id
        self.status = status
        super().__init__(
            f"Contribution {contribution_id} is {status}; only rejected "
            f"contributions can be revised"
        )


class ProjectPausedError(WorkflowValidationError):
    """Paused projects cannot advance cycles."""

    code: str = "PROJECT_PAUSED"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} is paused")


# Conflict exceptions


class ConflictError(FundingKernelError):
    """Base exception for requests racing against a newer state."""

    code: str = "CONFLICT"
    kind: ErrorKind = ErrorKind.CONFLICT


class StaleCycleError(ConflictError):
    """Requested cycle number does not match any cycle of the project."""

    code: str = "STALE_CYCLE"

    def __init__(self, project_id: str, expected_cycle: int, current_cycle: int):
        self.project_id = project_id
        self.expected_cycle = expected_cycle
        self.current_cycle = current_cycle
        super().__init__(
            f"Project {project_id} is at cycle {current_cycle}, "
            f"cannot advance cycle {expected_cycle}"
        )


# Internal exceptions


class InternalError(FundingKernelError):
    """Unexpected failure; details are only in the logs."""

    code: str = "INTERNAL_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, operation: str, message: str = "Internal error"):
        self.operation = operation
        super().__init__(f"{message} during {operation}")


class ImmutabilityViolationError(InternalError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        FundingKernelError.__init__(
            self,
            f"Immutability violation on {entity_type} {entity_id}: {reason}",
        )


class AuditChainBrokenError(InternalError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        FundingKernelError.__init__(
            self,
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}",
        )


def error_payload(exc: FundingKernelError) -> dict[str, str]:
    """Render an exception as the stable payload outer layers return.

    InternalError messages are replaced with a generic text; the detail
    stays in the logs.
    """
    message = str(exc)
    if exc.kind == ErrorKind.INTERNAL_ERROR:
        message = "Internal error"
    return {
        "kind": exc.kind.value,
        "code": exc.code,
        "message": message,
    }
