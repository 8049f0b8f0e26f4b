"""YAML configuration loader.

Loads a single companion.yaml that overrides the env-derived defaults.
When no YAML is provided, COMPANION_* env vars work exactly as before.

Example YAML:
    connection:
      server_url: http://127.0.0.1:3456
      connect_attempts: 5
      connect_timeout_seconds: 10
      auto_reconnect: true

    liveness:
      probe_interval_seconds: 5
      probe_attempts: 3

    ingestion:
      event_queue_size: 5000

    feed:
      task_tool_name: Task

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path

import yaml

from .config import CompanionConfig

logger = logging.getLogger(__name__)

# section → {yaml key: CompanionConfig field}
_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "connection": {
        "server_url": "server_url",
        "ws_path_template": "ws_path_template",
        "connect_attempts": "connect_attempts",
        "connect_timeout_seconds": "connect_timeout_seconds",
        "connect_backoff_initial": "connect_backoff_initial",
        "connect_backoff_max": "connect_backoff_max",
        "auto_reconnect": "auto_reconnect",
    },
    "liveness": {
        "probe_path_template": "probe_path_template",
        "probe_interval_seconds": "probe_interval_seconds",
        "probe_attempts": "probe_attempts",
        "probe_timeout_seconds": "probe_timeout_seconds",
    },
    "ingestion": {
        "event_queue_size": "event_queue_size",
    },
    "feed": {
        "task_tool_name": "task_tool_name",
    },
    "logging": {
        "level": "log_level",
    },
}


def discover_config_path(cwd: Path | None = None) -> Path | None:
    """Find .companion/companion.yaml or companion.yaml under *cwd*."""
    root = cwd or Path.cwd()
    for candidate in (root / ".companion" / "companion.yaml", root / "companion.yaml"):
        if candidate.is_file():
            logger.debug("discover_config_path: found %s", candidate)
            return candidate
    return None


def load_yaml_config(
    path: str | Path,
    base: CompanionConfig | None = None,
) -> CompanionConfig:
    """Load and parse a YAML config file.

    Values from the file override *base* (defaults to
    ``CompanionConfig.from_env()``). Unknown sections and keys are
    logged and ignored.
    """
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
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = base if base is not None else CompanionConfig.from_env()
    types = {f.name: f.type for f in fields(CompanionConfig)}

    for section, values in raw.items():
        mapping = _SECTION_FIELDS.get(section)
        if mapping is None:
            logger.warning("load_yaml_config: ignoring unknown section %r in %s", section, path)
            continue
        if not isinstance(values, dict):
            logger.warning("load_yaml_config: section %r in %s is not a mapping", section, path)
            continue
        for key, value in values.items():
            field_name = mapping.get(key)
            if field_name is None:
                logger.warning("load_yaml_config: ignoring unknown key %s.%s", section, key)
                continue
            setattr(config, field_name, _coerce(value, types[field_name]))

    logger.info(
        "Parsed YAML config %s — sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return config


def _coerce(value: object, annotation: object) -> object:
    # Annotations are strings under `from __future__ import annotations`.
    kind = str(annotation)
    if kind == "int":
        return int(value)
    if kind == "float":
        return float(value)
    if kind == "bool":
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes"}
        return bool(value)
    if kind == "str":
        return str(value)
    return value
