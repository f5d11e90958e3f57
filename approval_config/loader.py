"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen dataclasses of
``approval_config.schema``.  Callers use the package-level entry points
``get_engine_settings()`` and ``load_template_seeds()``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling with no dependency on the
kernel.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Wrong value types or out-of-range numbers  -> ``ValueError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from approval_config.schema import EngineSettings, StepSeed, TemplateSeed

_APPROVER_KINDS = frozenset({"role", "specific_person", "requestor_manager"})
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def parse_uuid(value: Any, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValueError(f"{field_name}: {value!r} is not a valid UUID") from None


def parse_positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{field_name}: expected a positive integer, got {value!r}")
    return value


def parse_engine_settings(data: dict[str, Any]) -> EngineSettings:
    """Parse ``EngineSettings`` from the ``engine`` section of a settings file."""
    section = data["engine"]
    log_level = str(section.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"engine.log_level: unknown level {log_level!r}")

    return EngineSettings(
        database_url=str(section["database_url"]),
        sweep_interval_seconds=parse_positive_int(
            section["sweep_interval_seconds"], "engine.sweep_interval_seconds",
        ),
        system_actor_id=parse_uuid(section["system_actor_id"], "engine.system_actor_id"),
        echo_sql=bool(section.get("echo_sql", False)),
        log_level=log_level,
    )


def parse_step_seed(data: dict[str, Any]) -> StepSeed:
    """Parse a ``StepSeed`` from a dict."""
    name = data["name"]
    kind = data["approver_kind"]
    if kind not in _APPROVER_KINDS:
        raise ValueError(f"step {name!r}: unknown approver_kind {kind!r}")

    person_id = data.get("approver_person_id")
    auto_days = data.get("auto_approve_after_days")

    return StepSeed(
        name=name,
        approver_kind=kind,
        approver_role=data.get("approver_role"),
        approver_person_id=(
            parse_uuid(person_id, f"step {name!r} approver_person_id")
            if person_id is not None else None
        ),
        is_required=bool(data.get("is_required", True)),
        can_skip=bool(data.get("can_skip", False)),
        auto_approve_after_days=(
            parse_positive_int(auto_days, f"step {name!r} auto_approve_after_days")
            if auto_days is not None else None
        ),
        condition=data.get("condition"),
    )


def parse_template_seed(data: dict[str, Any]) -> TemplateSeed:
    """Parse a ``TemplateSeed`` from a dict."""
    steps = data.get("steps") or []
    if not steps:
        raise ValueError(f"template {data.get('name')!r}: at least one step is required")

    return TemplateSeed(
        activity_type=data["activity_type"],
        name=data["name"],
        description=data.get("description"),
        steps=tuple(parse_step_seed(s) for s in steps),
    )


def parse_template_seeds(data: dict[str, Any]) -> tuple[TemplateSeed, ...]:
    """Parse every entry of the ``templates`` list."""
    seeds = tuple(parse_template_seed(t) for t in data["templates"])
    activity_types = [s.activity_type for s in seeds]
    duplicates = sorted({a for a in activity_types if activity_types.count(a) > 1})
    if duplicates:
        raise ValueError(f"duplicate default templates for activity types: {duplicates}")
    return seeds
