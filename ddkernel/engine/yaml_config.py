"""YAML configuration loader.

Layers a YAML file on top of a KernelConfig (usually the one built
from DDK_* env vars). Keys that are absent keep their base value.

Example YAML:
    kernel:
      python_executable: /opt/conda/bin/python
      output_dir: /tmp/design-diary-python/outputs
      ready_timeout_seconds: 5
      execution_timeout_seconds: 30
      shutdown_grace_seconds: 2

    sweeper:
      result_ttl_seconds: 3600
      artifact_ttl_seconds: 3600
      sweep_interval_seconds: 600
      purge_outputs_on_shutdown: true

    server:
      host: 127.0.0.1
      port: 3001
      log_level: INFO
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import KernelConfig

logger = logging.getLogger(__name__)

_SECTION_KEYS: dict[str, set[str]] = {
    "kernel": {
        "python_executable",
        "interpreter_module",
        "working_dir",
        "output_dir",
        "stderr_tail_lines",
        "ready_timeout_seconds",
        "execution_timeout_seconds",
        "shutdown_grace_seconds",
        "kill_timeout_seconds",
        "slot_gap",
    },
    "sweeper": {
        "result_ttl_seconds",
        "artifact_ttl_seconds",
        "sweep_interval_seconds",
        "purge_outputs_on_shutdown",
    },
    "server": {
        "host",
        "port",
        "log_level",
    },
}


def _coerce(name: str, value: Any, template: KernelConfig) -> Any:
    """Coerce a YAML scalar to the type of the matching default."""
    current = getattr(template, name)
    if value is None:
        return None
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def load_yaml_config(
    path: str | Path,
    base: KernelConfig | None = None,
) -> KernelConfig:
    """Load a YAML config file and apply it over ``base``."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")

    base = base or KernelConfig()
    known = {f.name for f in fields(KernelConfig)}
    overrides: dict[str, Any] = {}

    for section, keys in _SECTION_KEYS.items():
        section_raw = raw.get(section) or {}
        if not isinstance(section_raw, dict):
            logger.warning(
                "load_yaml_config: section %r in %s is not a mapping; ignored",
                section, path,
            )
            continue
        for key, value in section_raw.items():
            if key not in keys or key not in known:
                logger.warning(
                    "load_yaml_config: unknown key %s.%s in %s; ignored",
                    section, key, path,
                )
                continue
            overrides[key] = _coerce(key, value, base)

    unknown_sections = sorted(set(raw) - set(_SECTION_KEYS))
    if unknown_sections:
        logger.warning(
            "load_yaml_config: unknown sections in %s: %s",
            path, ", ".join(unknown_sections),
        )

    logger.info(
        "Parsed YAML config %s; overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return replace(base, **overrides)
