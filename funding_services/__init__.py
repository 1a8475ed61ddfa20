"""
funding_services -- Package init and public API.

Responsibility:
    Transaction boundaries and outer wiring over the funding kernel: the
    workflow facade, notification dispatchers and RBAC seeding from
    configuration.  This is the layer callers import.

Architecture position:
    Services -- stateful orchestration over the kernel.

    Dependency direction:
        funding_services/ -> funding_kernel/  (allowed)
        funding_services/ -> funding_config/  (allowed)
        funding_kernel/   -> funding_services/ (FORBIDDEN)

Invariants enforced:
    - The kernel never imports from this package.
    - Notifications leave the process only after commit.
"""

from funding_kernel.logging_config import get_logger

logger = get_logger("services")

from funding_services.notifications import (  # noqa: E402
    LoggingNotificationDispatcher,
    RecordingNotificationDispatcher,
    dispatch_notifications,
)
from funding_services.rbac_seed import seed_rbac  # noqa: E402
from funding_services.workflow_service import (  # noqa: E402
    FundingWorkflowService,
    WorkflowContext,
)

__all__ = [
    "FundingWorkflowService",
    "LoggingNotificationDispatcher",
    "RecordingNotificationDispatcher",
    "WorkflowContext",
    "dispatch_notifications",
    "seed_rbac",
]
