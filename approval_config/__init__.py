"""
approval_config -- YAML-backed settings for the approval workflow engine.

Responsibility:
    Provides the public configuration entry points:

    * ``get_engine_settings()`` -- database URL, sweep interval, system
      actor and logging settings.
    * ``load_template_seeds()`` -- the default workflow templates installed
      for a new company.

Architecture position:
    Configuration.  Sits beside ``approval_kernel``; the kernel MUST NEVER
    import from ``approval_config``.  Embedders read settings here and pass
    plain values into kernel constructors.

Failure modes:
    - ``FileNotFoundError`` -- the requested YAML file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.
"""

from __future__ import annotations

import logging
from pathlib import Path

from approval_config.loader import (
    load_yaml_file,
    parse_engine_settings,
    parse_template_seeds,
)
from approval_config.schema import EngineSettings, StepSeed, TemplateSeed

_logger = logging.getLogger("approval_kernel.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_engine_settings(config_path: Path | None = None) -> EngineSettings:
    """Load engine settings, from the shipped ``sets/engine.yaml`` by default."""
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_DIR / "engine.yaml"
    settings = parse_engine_settings(load_yaml_file(path))
    _logger.info(
        "engine_settings_loaded",
        extra={
            "config_path": str(path),
            "sweep_interval_seconds": settings.sweep_interval_seconds,
            "log_level": settings.log_level,
        },
    )
    return settings


def load_template_seeds(path: Path | None = None) -> tuple[TemplateSeed, ...]:
    """Load default template seeds, from ``sets/default_templates.yaml`` by default."""
    path = Path(path) if path is not None else _DEFAULT_CONFIG_DIR / "default_templates.yaml"
    return parse_template_seeds(load_yaml_file(path))


__all__ = [
    "EngineSettings",
    "StepSeed",
    "TemplateSeed",
    "get_engine_settings",
    "load_template_seeds",
]
