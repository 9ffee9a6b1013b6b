from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from floorwatch.config.models import ProgramConfig, parse_program_config

_config_logger = logging.getLogger("floorwatch.config")

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "FLOORWATCH_POLL_INTERVAL_SECONDS": ("poller", "loop_interval_seconds"),
    "FLOORWATCH_MAX_BATCH_HEIGHTS": ("poller", "max_batch_heights"),
    "FLOORWATCH_FLOOR_TTL_SECONDS": ("pricing", "floor_ttl_seconds"),
    "FLOORWATCH_VERIFY_INTERVAL_SECONDS": ("verification", "interval_seconds"),
    "FLOORWATCH_VERIFY_LOOKBACK_SECONDS": ("verification", "lookback_seconds"),
    "FLOORWATCH_RETENTION_SECONDS": ("retention", "retention_seconds"),
}


def _env_int(name: str, default: int | None, minimum: int = 0) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _config_logger.warning("env_override_ignored name=%s value=%s", name, raw)
        return default
    return max(minimum, value)


def load_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML file must parse to a mapping: {path}")
    return data


def apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    merged = dict(raw)
    for env_name, (section_name, key) in _ENV_OVERRIDES.items():
        value = _env_int(env_name, None, minimum=1)
        if value is None:
            continue
        section = merged.get(section_name)
        section = dict(section) if isinstance(section, dict) else {}
        section[key] = value
        merged[section_name] = section
        _config_logger.info("env_override_applied name=%s %s.%s=%s", env_name, section_name, key, value)
    return merged


def load_program_config(path: Path) -> ProgramConfig:
    return parse_program_config(apply_env_overrides(load_yaml(path)))
