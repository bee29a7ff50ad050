"""
membership_config -- single public entrypoint for runtime configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``MembershipConfig``.

Architecture position:
    Configuration -- sits above ``membership_kernel``.  The kernel never
    imports from ``membership_config``; callers (scripts, the scheduler
    wiring) pass plain values such as the system actor id or sequence
    defaults into kernel constructors.

Sources, lowest precedence first:
    1. ``membership_config/defaults.yaml`` (packaged)
    2. A deployment YAML file (explicit path or ``MEMBERSHIP_CONFIG``)
    3. ``MEMBERSHIP_DATABASE_URL`` / ``MEMBERSHIP_LOG_LEVEL``

Audit relevance:
    Every call emits a ``membership_config_loaded`` log entry with the
    checksum of the merged source.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from membership_config.loader import load_config
from membership_config.schema import MembershipConfig, SchedulerConfig, SequenceDefaults

_logger = logging.getLogger("membership_kernel.config")

__all__ = [
    "MembershipConfig",
    "SchedulerConfig",
    "SequenceDefaults",
    "get_active_config",
    "load_config",
]


def get_active_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> MembershipConfig:
    """
    Load and validate the active configuration.

    Non-goals:
        - Does NOT cache; callers hold the returned config for the life of
          the process.

    Args:
        config_path: Deployment YAML file.  Defaults to ``MEMBERSHIP_CONFIG``.
        env: Environment mapping.  Defaults to ``os.environ``.

    Raises:
        FileNotFoundError: The deployment file does not exist.
        ValueError: Validation failed.
    """
    config = load_config(config_path, env if env is not None else os.environ)
    _logger.info(
        "membership_config_loaded",
        extra={
            "checksum": config.checksum,
            "log_level": config.log_level,
            "scheduler_enabled": config.scheduler.enabled,
        },
    )
    return config
