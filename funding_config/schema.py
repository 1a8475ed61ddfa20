"""
FundingConfig schema.

Frozen dataclasses describing the runtime configuration of the funding
workflow: database connection, workflow timings, RBAC seed and cache,
and the job scheduler.  YAML is parsed into these types by the loader;
nothing else in the system reads configuration files.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings passed to ``init_engine_from_url``."""

    url: str = "sqlite://"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class SchedulerConfig:
    """Polling scheduler settings; intervals are in seconds."""

    enabled: bool = True
    tick_interval_seconds: float = 60.0
    cycle_advancement_interval_seconds: int = 3600
    auto_closure_interval_seconds: int = 3600
    reconciliation_interval_seconds: int = 86400


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowConfig:
    """Timings of the case and project workflows."""

    default_cycle_duration_days: int = 30
    # Funded one-time cases stay published this long before auto-closure
    auto_closure_grace_hours: int = 24


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleDefinition:
    """A role and the permissions it is seeded with."""

    name: str
    display_name: str
    permissions: tuple[str, ...] = ()
    description: str | None = None
    is_system: bool = True


@dataclass(frozen=True)
class RbacConfig:
    """Permission vocabulary, seeded roles and cache lifetime."""

    permission_cache_ttl_seconds: int = 300
    permissions: tuple[str, ...] = ()
    roles: tuple[RoleDefinition, ...] = ()

    def role(self, name: str) -> RoleDefinition | None:
        return next((r for r in self.roles if r.name == name), None)

    @property
    def role_names(self) -> tuple[str, ...]:
        return tuple(r.name for r in self.roles)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FundingConfig:
    """Complete runtime configuration.

    ``checksum`` is the SHA-256 of the parsed source data, recorded in the
    configuration trace log entry.
    """

    config_id: str
    version: int
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    rbac: RbacConfig = field(default_factory=RbacConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    checksum: str = ""
