"""
Actor identity for workflow operations.

Every mutation is performed either by an authenticated user or by the
system itself (scheduled jobs, automatic closure).  The two are distinct
variants rather than a nullable id so that engines branch on intent,
not on the absence of a value.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

# Recorded as actor_id on audit events produced by system-triggered work.
SYSTEM_ACTOR_ID = UUID(int=0)


@dataclass(frozen=True)
class SystemActor:
    """The system acting on its own schedule."""

    job_name: str = "system"

    @property
    def is_system(self) -> bool:
        return True

    @property
    def actor_id(self) -> UUID:
        return SYSTEM_ACTOR_ID

    @property
    def user_id(self) -> None:
        return None


@dataclass(frozen=True)
class UserActor:
    """An authenticated user."""

    user_id: UUID

    @property
    def is_system(self) -> bool:
        return False

    @property
    def actor_id(self) -> UUID:
        return self.user_id


Actor = SystemActor | UserActor


def actor_for(user_id: UUID | None, job_name: str = "system") -> Actor:
    """Build the actor variant for an optional user id."""
    if user_id is None:
        return SystemActor(job_name=job_name)
    return UserActor(user_id=user_id)
