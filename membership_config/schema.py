"""
MembershipConfig schema.

Frozen dataclasses describing the runtime configuration.  The loader parses
YAML into these types; nothing else constructs them from raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from membership_kernel.domain.actors import SYSTEM_ACTOR_ID


@dataclass(frozen=True)
class SchedulerConfig:
    """Cancellation scheduler settings."""

    enabled: bool = True
    interval_seconds: int = 6 * 60 * 60
    item_timeout_seconds: float = 60.0


@dataclass(frozen=True)
class SequenceDefaults:
    """Formatting of lazily created sequence counters."""

    prefix: str = ""
    pad_length: int = 4
    year_reset: bool = False


@dataclass(frozen=True)
class MembershipConfig:
    """The runtime configuration returned by ``get_active_config()``."""

    database_url: str
    log_level: str = "INFO"
    system_actor_id: UUID = SYSTEM_ACTOR_ID
    conflict_retry_attempts: int = 3
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sequence_defaults: SequenceDefaults = field(default_factory=SequenceDefaults)
    checksum: str = ""
