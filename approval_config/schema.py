"""
Configuration schema (``approval_config.schema``).

Frozen dataclasses produced by the loader.  No I/O, no kernel imports: the
kernel consumes these objects by shape (``seed_default_templates`` reads
``TemplateSeed``/``StepSeed`` attributes) and never imports this package.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for one approval engine deployment."""

    database_url: str
    sweep_interval_seconds: int
    system_actor_id: UUID
    echo_sql: bool = False
    log_level: str = "INFO"


@dataclass(frozen=True)
class StepSeed:
    """One step of a shipped default template."""

    name: str
    approver_kind: str
    approver_role: str | None = None
    approver_person_id: UUID | None = None
    is_required: bool = True
    can_skip: bool = False
    auto_approve_after_days: int | None = None
    condition: str | None = None


@dataclass(frozen=True)
class TemplateSeed:
    """A shipped default template for one activity type."""

    activity_type: str
    name: str
    description: str | None = None
    steps: tuple[StepSeed, ...] = ()
