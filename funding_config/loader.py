"""
Configuration Loader (``funding_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen
``funding_config.schema`` dataclasses, validating values on the way.
Runtime code obtains configuration through
``funding_config.get_active_config()``, which calls into this module.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on the kernel,
services or batch packages.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required keys have no silent defaults.
* A role permission of ``"*"`` expands to every declared permission.
* Every role permission must be declared in ``rbac.permissions``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values or undeclared permissions  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from funding_config.schema import (
    DatabaseConfig,
    FundingConfig,
    RbacConfig,
    RoleDefinition,
    SchedulerConfig,
    WorkflowConfig,
)

ALL_PERMISSIONS = "*"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive(value: Any, name: str) -> Any:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse a DatabaseConfig from a dict."""
    return DatabaseConfig(
        url=data.get("url", DatabaseConfig.url),
        echo=bool(data.get("echo", False)),
        pool_size=_positive(int(data.get("pool_size", DatabaseConfig.pool_size)), "pool_size"),
        max_overflow=int(data.get("max_overflow", DatabaseConfig.max_overflow)),
    )


def parse_workflow(data: dict[str, Any]) -> WorkflowConfig:
    """Parse a WorkflowConfig from a dict."""
    grace = int(data.get("auto_closure_grace_hours", WorkflowConfig.auto_closure_grace_hours))
    if grace < 0:
        raise ValueError(f"auto_closure_grace_hours must be >= 0, got {grace}")
    return WorkflowConfig(
        default_cycle_duration_days=_positive(
            int(data.get("default_cycle_duration_days", WorkflowConfig.default_cycle_duration_days)),
            "default_cycle_duration_days",
        ),
        auto_closure_grace_hours=grace,
    )


def parse_role(data: dict[str, Any], declared: tuple[str, ...]) -> RoleDefinition:
    """
    Parse a RoleDefinition from a dict.

    Raises:
        KeyError: if ``name`` is missing.
        ValueError: if a permission is not declared.
    """
    name = data["name"]
    raw = data.get("permissions", []) or []
    if raw == ALL_PERMISSIONS or ALL_PERMISSIONS in raw:
        permissions = declared
    else:
        undeclared = sorted(set(raw) - set(declared))
        if undeclared:
            raise ValueError(
                f"Role {name!r} references undeclared permissions: {', '.join(undeclared)}"
            )
        permissions = tuple(sorted(set(raw)))
    return RoleDefinition(
        name=name,
        display_name=data.get("display_name", name.replace("_", " ").title()),
        permissions=permissions,
        description=data.get("description"),
        is_system=bool(data.get("is_system", True)),
    )


def parse_rbac(data: dict[str, Any]) -> RbacConfig:
    """Parse an RbacConfig from a dict."""
    ttl = int(data.get("permission_cache_ttl_seconds", RbacConfig.permission_cache_ttl_seconds))
    if ttl < 0:
        raise ValueError(f"permission_cache_ttl_seconds must be >= 0, got {ttl}")

    declared = tuple(sorted(set(data.get("permissions", []) or [])))
    for name in declared:
        resource, sep, action = name.partition(":")
        if not sep or not resource or not action:
            raise ValueError(f"Permission must be 'resource:action', got {name!r}")

    roles = tuple(parse_role(r, declared) for r in data.get("roles", []) or [])
    names = [r.name for r in roles]
    if len(names) != len(set(names)):
        raise ValueError(f"Duplicate role names in configuration: {names}")

    return RbacConfig(permission_cache_ttl_seconds=ttl, permissions=declared, roles=roles)


def parse_scheduler(data: dict[str, Any]) -> SchedulerConfig:
    """Parse a SchedulerConfig from a dict."""
    return SchedulerConfig(
        enabled=bool(data.get("enabled", True)),
        tick_interval_seconds=_positive(
            float(data.get("tick_interval_seconds", SchedulerConfig.tick_interval_seconds)),
            "tick_interval_seconds",
        ),
        cycle_advancement_interval_seconds=_positive(
            int(data.get(
                "cycle_advancement_interval_seconds",
                SchedulerConfig.cycle_advancement_interval_seconds,
            )),
            "cycle_advancement_interval_seconds",
        ),
        auto_closure_interval_seconds=_positive(
            int(data.get(
                "auto_closure_interval_seconds",
                SchedulerConfig.auto_closure_interval_seconds,
            )),
            "auto_closure_interval_seconds",
        ),
        reconciliation_interval_seconds=_positive(
            int(data.get(
                "reconciliation_interval_seconds",
                SchedulerConfig.reconciliation_interval_seconds,
            )),
            "reconciliation_interval_seconds",
        ),
    )


def parse_config(data: dict[str, Any]) -> FundingConfig:
    """
    Parse a complete FundingConfig from a dict.

    Raises:
        KeyError: if ``config_id`` or ``version`` is missing.
        ValueError: on invalid values in any section.
    """
    return FundingConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        database=parse_database(data.get("database", {}) or {}),
        workflow=parse_workflow(data.get("workflow", {}) or {}),
        rbac=parse_rbac(data.get("rbac", {}) or {}),
        scheduler=parse_scheduler(data.get("scheduler", {}) or {}),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Postconditions:
        - Returns a hex-encoded SHA-256 hash string.
        - Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
