"""
Configuration Loader (``membership_config.loader``).

Responsibility
--------------
Reads YAML files, layers them (packaged defaults, then an optional
deployment file, then environment overrides) and parses the result into
the frozen ``membership_config.schema`` dataclasses.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Invalid values raise ``ValueError`` naming the offending key; unknown
  keys are rejected rather than ignored.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  source for configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from membership_config.schema import MembershipConfig, SchedulerConfig, SequenceDefaults

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

ENV_CONFIG_PATH = "MEMBERSHIP_CONFIG"
ENV_DATABASE_URL = "MEMBERSHIP_DATABASE_URL"
ENV_LOG_LEVEL = "MEMBERSHIP_LOG_LEVEL"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_TOP_LEVEL_KEYS = frozenset({
    "database_url",
    "log_level",
    "system_actor_id",
    "conflict_retry_attempts",
    "scheduler",
    "sequence_defaults",
})
_SCHEDULER_KEYS = frozenset({"enabled", "interval_seconds", "item_timeout_seconds"})
_SEQUENCE_KEYS = frozenset({"prefix", "pad_length", "year_reset"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML document must be a mapping")
    return data


def merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursive merge; ``override`` wins, nested mappings merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(data: Mapping[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    result = dict(data)
    if env.get(ENV_DATABASE_URL):
        result["database_url"] = env[ENV_DATABASE_URL]
    if env.get(ENV_LOG_LEVEL):
        result["log_level"] = env[ENV_LOG_LEVEL]
    return result


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _check_keys(section: str, data: Mapping[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown {section} key(s): {', '.join(sorted(unknown))}")


def _positive_number(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{key} must be a positive number, got {value!r}")
    return value


def parse_scheduler(data: Mapping[str, Any]) -> SchedulerConfig:
    _check_keys("scheduler", data, _SCHEDULER_KEYS)
    defaults = SchedulerConfig()
    return SchedulerConfig(
        enabled=bool(data.get("enabled", defaults.enabled)),
        interval_seconds=int(
            _positive_number(
                "scheduler.interval_seconds",
                data.get("interval_seconds", defaults.interval_seconds),
            )
        ),
        item_timeout_seconds=float(
            _positive_number(
                "scheduler.item_timeout_seconds",
                data.get("item_timeout_seconds", defaults.item_timeout_seconds),
            )
        ),
    )


def parse_sequence_defaults(data: Mapping[str, Any]) -> SequenceDefaults:
    _check_keys("sequence_defaults", data, _SEQUENCE_KEYS)
    defaults = SequenceDefaults()
    pad_length = data.get("pad_length", defaults.pad_length)
    if isinstance(pad_length, bool) or not isinstance(pad_length, int) or pad_length < 0:
        raise ValueError(f"sequence_defaults.pad_length must be a non-negative int, got {pad_length!r}")
    return SequenceDefaults(
        prefix=str(data.get("prefix", defaults.prefix) or ""),
        pad_length=pad_length,
        year_reset=bool(data.get("year_reset", defaults.year_reset)),
    )


def parse_config(data: Mapping[str, Any]) -> MembershipConfig:
    """Parse a merged configuration dict into a MembershipConfig."""
    _check_keys("configuration", data, _TOP_LEVEL_KEYS)

    database_url = data.get("database_url")
    if not database_url:
        raise ValueError("database_url is required")

    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")

    attempts = data.get("conflict_retry_attempts", 3)
    if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
        raise ValueError(f"conflict_retry_attempts must be an int >= 1, got {attempts!r}")

    kwargs: dict[str, Any] = {}
    if data.get("system_actor_id"):
        kwargs["system_actor_id"] = UUID(str(data["system_actor_id"]))

    return MembershipConfig(
        database_url=str(database_url),
        log_level=log_level,
        conflict_retry_attempts=attempts,
        scheduler=parse_scheduler(data.get("scheduler") or {}),
        sequence_defaults=parse_sequence_defaults(data.get("sequence_defaults") or {}),
        checksum=compute_checksum(dict(data)),
        **kwargs,
    )


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> MembershipConfig:
    """
    Layer defaults, the optional file and the environment, then parse.

    ``config_path`` takes precedence over the ``MEMBERSHIP_CONFIG``
    environment variable.
    """
    env = env if env is not None else {}
    data = load_yaml_file(DEFAULTS_PATH)

    path = config_path or (Path(env[ENV_CONFIG_PATH]) if env.get(ENV_CONFIG_PATH) else None)
    if path is not None:
        data = merge_dicts(data, load_yaml_file(Path(path)))

    data = apply_env_overrides(data, env)
    return parse_config(data)
