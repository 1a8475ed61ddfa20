"""
funding_services.rbac_seed -- installs configured roles and permissions.

Responsibility:
    Translates ``funding_config.RbacConfig`` into kernel role and permission
    rows.  Seeding is idempotent: existing roles keep their ids and only
    gain missing permissions.

Architecture position:
    Services layer.  Bridges config to the kernel; the kernel never imports
    ``funding_config``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from funding_config.schema import RbacConfig
from funding_kernel.domain.actor import SystemActor
from funding_kernel.logging_config import get_logger
from funding_kernel.models.rbac import Role
from funding_kernel.services.permission_service import PermissionEvaluator

logger = get_logger("services.rbac_seed")

SEED_ACTOR = SystemActor(job_name="rbac_seed")


def seed_rbac(
    session: Session,
    evaluator: PermissionEvaluator,
    rbac_config: RbacConfig,
) -> dict[str, UUID]:
    """Create configured permissions and roles.  Returns role name -> id.

    Flushes only; the caller commits.
    """
    for name in rbac_config.permissions:
        evaluator.ensure_permission(name)

    role_ids: dict[str, UUID] = {}
    created = 0
    for definition in rbac_config.roles:
        role = session.execute(
            select(Role).where(Role.name == definition.name)
        ).scalar_one_or_none()
        if role is None:
            role = evaluator.create_role(
                definition.name,
                definition.display_name,
                SEED_ACTOR,
                permission_names=definition.permissions,
                description=definition.description,
                is_system=definition.is_system,
            )
            created += 1
        else:
            for permission in sorted(set(definition.permissions) - role.permission_names):
                evaluator.grant_permission_to_role(definition.name, permission, SEED_ACTOR)
        role_ids[definition.name] = role.id

    logger.info(
        "rbac_seeded",
        extra={"roles": len(role_ids), "roles_created": created},
    )
    return role_ids
