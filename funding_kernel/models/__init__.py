"""ORM models for the funding kernel."""

from funding_kernel.models.audit_event import AuditAction, AuditEvent
from funding_kernel.models.case import Case, CaseStatusHistory, CaseUpdate
from funding_kernel.models.contribution import (
    Contribution,
    ContributionApprovalStatus,
)
from funding_kernel.models.project import Project, ProjectCycle
from funding_kernel.models.rbac import (
    Permission,
    Role,
    UserRoleAssignment,
    role_permissions,
)
from funding_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Case",
    "CaseStatusHistory",
    "CaseUpdate",
    "Contribution",
    "ContributionApprovalStatus",
    "Permission",
    "Project",
    "ProjectCycle",
    "Role",
    "SequenceCounter",
    "UserRoleAssignment",
    "role_permissions",
]
