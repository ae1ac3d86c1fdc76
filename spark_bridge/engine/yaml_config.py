"""YAML configuration loader.

Optional file layered between env vars and CLI flags.

Example YAML:
    bridge:
      port: 3700
      project_root: /path/to/app
      model: gpt-5.3-codex-spark
      concurrency: 1
      require_project_root: true
      image_model: gemini-3-pro-image-preview
      first_call_idle_seconds: 180
      follow_up_idle_seconds: 90
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

import yaml

from .config import BridgeConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_FIELD_TYPES = {f.name: str(f.type) for f in dataclasses.fields(BridgeConfig)}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def _coerce(key: str, value: object) -> object:
    """Convert a YAML scalar to the type of BridgeConfig.<key>."""
    kind = _FIELD_TYPES[key]
    if value is None:
        if "None" in kind:
            return None
        raise ConfigError(f"bridge.{key} must not be empty")
    try:
        if kind == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUTHY:
                return True
            if text in _FALSY:
                return False
            raise ValueError(value)
        if kind == "int":
            if isinstance(value, bool):
                raise ValueError(value)
            return int(value)
        if kind == "float":
            if isinstance(value, bool):
                raise ValueError(value)
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"bridge.{key} must be {kind}, got {value!r}"
        ) from exc
    return str(value)


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load a YAML config file and apply its ``bridge`` section.

    Values are applied on top of *base* (or a default BridgeConfig).
    Unknown keys are logged and ignored. ``${VAR}`` references in
    string values are expanded from the environment.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    section = raw.get("bridge", {}) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: 'bridge' section must be a mapping")

    overrides: dict[str, object] = {}
    for key, value in section.items():
        if key not in _FIELD_TYPES:
            logger.warning("load_yaml_config: ignoring unknown key bridge.%s", key)
            continue
        if isinstance(value, str):
            value = os.path.expandvars(value)
        overrides[key] = _coerce(key, value)

    config = dataclasses.replace(base or BridgeConfig(), **overrides)
    logger.info(
        "load_yaml_config: applied %d setting(s) from %s: %s",
        len(overrides), path.name, ", ".join(sorted(overrides)) or "(none)",
    )
    return config
