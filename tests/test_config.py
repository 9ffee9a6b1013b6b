from __future__ import annotations

import copy
from pathlib import Path

import pytest

from floorwatch.config.io import apply_env_overrides, load_program_config, load_yaml
from floorwatch.config.models import parse_program_config
from floorwatch.core.types import EventKind

_MINIMAL = {
    "app": {"home_dir": "~/.floorwatch"},
    "ledger": {
        "available_event_type": "A.1.Storefront.ListingAvailable",
        "completed_event_type": "A.1.Storefront.ListingCompleted",
    },
}


def _raw(**sections) -> dict:
    raw = copy.deepcopy(_MINIMAL)
    for name, values in sections.items():
        raw.setdefault(name, {}).update(values)
    return raw


def test_load_program_config_example() -> None:
    cfg = load_program_config(Path("config/program.yaml"))
    assert cfg.app_log_level == "INFO"
    assert cfg.poller_loop_interval_seconds == 3
    assert cfg.poller_max_batch_heights == 50
    assert cfg.pricing_floor_ttl_seconds == 300
    assert cfg.reconcile_max_working_set == 1500
    assert cfg.ledger_request_timeout_seconds < cfg.poller_loop_interval_seconds
    kinds = cfg.event_kinds()
    assert kinds[cfg.ledger_available_event_type] == EventKind.AVAILABLE
    assert EventKind.DEPOSIT in kinds.values()
    assert EventKind.REMOVED not in kinds.values()


def test_defaults_fill_optional_sections() -> None:
    cfg = parse_program_config(_raw())
    assert cfg.app_log_level == "INFO"
    assert cfg.pricing_floor_cache_capacity == 300
    assert cfg.verification_enabled is True
    assert cfg.verification_lookback_seconds == 3 * 24 * 3600
    assert cfg.reconcile_completion_tolerance_seconds == 120
    assert cfg.retention_interval_seconds == 3600
    assert cfg.ledger_removed_event_type is None


def test_missing_required_sections() -> None:
    with pytest.raises(ValueError, match="Missing required field: ledger"):
        parse_program_config({"app": {"home_dir": "/tmp/x"}})
    with pytest.raises(ValueError, match="Missing required field: home_dir"):
        parse_program_config({**_raw(), "app": {"log_level": "INFO"}})


def test_request_timeout_must_be_shorter_than_poll_interval() -> None:
    with pytest.raises(ValueError, match="request_timeout_seconds must be <"):
        parse_program_config(_raw(ledger={"request_timeout_seconds": 5}, poller={"loop_interval_seconds": 5}))


@pytest.mark.parametrize(
    ("section", "key", "value", "message"),
    [
        ("poller", "max_batch_heights", 0, "poller.max_batch_heights must be positive"),
        ("poller", "max_batch_heights", "many", "poller.max_batch_heights must be an integer"),
        ("poller", "max_batch_heights", 251, "poller.max_batch_heights must be <= 250"),
        ("pricing", "floor_url_template", "https://x/floor", "must contain {group_id}"),
        ("pricing", "floor_hard_ttl_seconds", 10, "floor_hard_ttl_seconds must be >="),
        ("app", "log_level", "LOUD", "app.log_level is not a valid level"),
        ("ledger", "removed_event_type", "A.1.Storefront.ListingAvailable", "must be distinct"),
    ],
)
def test_invalid_values_are_rejected(section: str, key: str, value, message: str) -> None:
    with pytest.raises(ValueError, match=message.replace("{", r"\{").replace("}", r"\}")):
        parse_program_config(_raw(**{section: {key: value}}))


def test_env_overrides_apply(monkeypatch) -> None:
    monkeypatch.setenv("FLOORWATCH_POLL_INTERVAL_SECONDS", "9")
    monkeypatch.setenv("FLOORWATCH_MAX_BATCH_HEIGHTS", "25")
    monkeypatch.setenv("FLOORWATCH_RETENTION_SECONDS", "not-a-number")
    cfg = parse_program_config(apply_env_overrides(_raw()))
    assert cfg.poller_loop_interval_seconds == 9
    assert cfg.poller_max_batch_heights == 25
    assert cfg.retention_seconds == 3 * 24 * 3600


def test_env_override_does_not_mutate_input(monkeypatch) -> None:
    monkeypatch.setenv("FLOORWATCH_FLOOR_TTL_SECONDS", "60")
    raw = _raw(pricing={"floor_ttl_seconds": 300})
    merged = apply_env_overrides(raw)
    assert merged["pricing"]["floor_ttl_seconds"] == 60
    assert raw["pricing"]["floor_ttl_seconds"] == 300


def test_load_yaml_requires_mapping(tmp_path: Path) -> None:
    path = tmp_path / "program.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError, match="must parse to a mapping"):
        load_yaml(path)
