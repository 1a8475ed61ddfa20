"""
funding_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- sits beside ``funding_kernel`` and below
    ``funding_services`` / ``funding_batch``.  The kernel MUST NEVER
    import from ``funding_config``; the outer layers translate config
    values into kernel constructor arguments.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - ``FUNDING_CONFIG_PATH`` selects the YAML file; the packaged
      ``defaults.yaml`` is used otherwise.
    - ``DATABASE_URL`` overrides ``database.url``.
    - Deterministic parsing: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``ValueError`` / ``KeyError`` -- validation failures in the loader.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``FUNDING_CONFIG_TRACE`` log entry with the config id, version and
    checksum.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Mapping

from funding_config.loader import compute_checksum, load_yaml_file, parse_config
from funding_config.schema import (
    DatabaseConfig,
    FundingConfig,
    RbacConfig,
    RoleDefinition,
    SchedulerConfig,
    WorkflowConfig,
)

_logger = logging.getLogger("funding_kernel.config")

CONFIG_PATH_ENV = "FUNDING_CONFIG_PATH"
DATABASE_URL_ENV = "DATABASE_URL"

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FundingConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Explicit YAML file.  Takes precedence over
            ``FUNDING_CONFIG_PATH``.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        The parsed, validated FundingConfig.

    Raises:
        FileNotFoundError: If the selected file does not exist.
        ValueError: If configuration validation fails.
    """
    env = os.environ if environ is None else environ
    path = config_path or Path(env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)

    config = parse_config(load_yaml_file(path))

    database_url = env.get(DATABASE_URL_ENV)
    if database_url:
        config = replace(config, database=replace(config.database, url=database_url))

    _logger.info(
        "FUNDING_CONFIG_TRACE",
        extra={
            "trace_type": "FUNDING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(path),
            "role_count": len(config.rbac.roles),
            "permission_count": len(config.rbac.permissions),
        },
    )
    return config


__all__ = [
    "CONFIG_PATH_ENV",
    "DATABASE_URL_ENV",
    "DEFAULT_CONFIG_PATH",
    "DatabaseConfig",
    "FundingConfig",
    "RbacConfig",
    "RoleDefinition",
    "SchedulerConfig",
    "WorkflowConfig",
    "compute_checksum",
    "get_active_config",
]
