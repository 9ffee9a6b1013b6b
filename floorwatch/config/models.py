from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from floorwatch.adapters.ledger import LedgerAdapter
from floorwatch.adapters.price import EditionFloorAdapter
from floorwatch.core.types import EventKind
from floorwatch.logging_setup import is_valid_level_name, normalize_log_level_name

_DEFAULT_STOREFRONT = "A.4eb8a10cb9f87357.NFTStorefront"


@dataclass(slots=True)
class ProgramConfig:
    home_dir: str
    app_log_level: str
    ledger_api_base: str
    ledger_available_event_type: str
    ledger_completed_event_type: str
    ledger_removed_event_type: str | None
    ledger_deposit_event_type: str | None
    ledger_item_type_filter: str | None
    ledger_request_timeout_seconds: float
    ledger_seconds_per_block: float
    pricing_floor_url_template: str
    pricing_floor_ttl_seconds: int
    pricing_floor_hard_ttl_seconds: int
    pricing_floor_cache_capacity: int
    pricing_warmup_batch_size: int
    poller_loop_interval_seconds: int
    poller_max_batch_heights: int
    poller_start_lookback_heights: int
    poller_heartbeat_every_ticks: int
    poller_backoff_base_seconds: float
    poller_backoff_max_seconds: float
    poller_backoff_widened_max_seconds: float
    poller_backoff_widen_after_failures: int
    verification_enabled: bool
    verification_interval_seconds: int
    verification_min_age_seconds: int
    verification_lookback_seconds: int
    verification_batch_size: int
    verification_concurrency: int
    verification_batch_delay_seconds: float
    reconcile_completion_tolerance_seconds: int
    reconcile_max_working_set: int
    reconcile_max_seen: int
    reconcile_max_terminal_markers: int
    reconcile_persistence_retry_attempts: int
    reconcile_backfill_height_window: int
    retention_seconds: int
    retention_interval_seconds: int

    def event_kinds(self) -> dict[str, EventKind]:
        kinds = {
            self.ledger_available_event_type: EventKind.AVAILABLE,
            self.ledger_completed_event_type: EventKind.COMPLETED,
        }
        if self.ledger_removed_event_type:
            kinds[self.ledger_removed_event_type] = EventKind.REMOVED
        if self.ledger_deposit_event_type:
            kinds[self.ledger_deposit_event_type] = EventKind.DEPOSIT
        return kinds


def _req(mapping: dict[str, Any], key: str) -> Any:
    if key not in mapping:
        raise ValueError(f"Missing required field: {key}")
    return mapping[key]


def _section(raw: dict[str, Any], key: str, *, required: bool = False) -> dict[str, Any]:
    value = _req(raw, key) if required else raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be a mapping")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{where}.{key} must be positive")
    return value


def _non_negative_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key} must be an integer") from exc
    if value < 0:
        raise ValueError(f"{where}.{key} must be >= 0")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, *, where: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key} must be numeric") from exc
    if value <= 0:
        raise ValueError(f"{where}.{key} must be > 0")
    return value


def _optional_text(section: dict[str, Any], key: str, default: str | None = None) -> str | None:
    raw = section.get(key, default)
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def parse_program_config(raw: dict[str, Any]) -> ProgramConfig:
    app = _section(raw, "app", required=True)
    ledger = _section(raw, "ledger", required=True)
    pricing = _section(raw, "pricing")
    poller = _section(raw, "poller")
    verification = _section(raw, "verification")
    reconcile = _section(raw, "reconcile")
    retention = _section(raw, "retention")

    raw_log_level = app.get("log_level")
    if raw_log_level is not None and not is_valid_level_name(raw_log_level):
        raise ValueError(f"app.log_level is not a valid level: {raw_log_level}")
    log_level = normalize_log_level_name(raw_log_level)

    available_type = str(
        ledger.get("available_event_type", f"{_DEFAULT_STOREFRONT}.ListingAvailable")
    ).strip()
    completed_type = str(
        ledger.get("completed_event_type", f"{_DEFAULT_STOREFRONT}.ListingCompleted")
    ).strip()
    removed_type = _optional_text(ledger, "removed_event_type")
    deposit_type = _optional_text(ledger, "deposit_event_type")
    declared = [t for t in (available_type, completed_type, removed_type, deposit_type) if t]
    if not available_type or not completed_type:
        raise ValueError("ledger.available_event_type and ledger.completed_event_type are required")
    if len(set(declared)) != len(declared):
        raise ValueError("ledger event types must be distinct")

    floor_url_template = str(
        pricing.get("floor_url_template", EditionFloorAdapter.DEFAULT_URL_TEMPLATE)
    ).strip()
    if "{group_id}" not in floor_url_template:
        raise ValueError("pricing.floor_url_template must contain {group_id}")

    floor_ttl = _positive_int(pricing, "floor_ttl_seconds", 300, where="pricing")
    floor_hard_ttl = _positive_int(pricing, "floor_hard_ttl_seconds", 900, where="pricing")
    if floor_hard_ttl < floor_ttl:
        raise ValueError("pricing.floor_hard_ttl_seconds must be >= pricing.floor_ttl_seconds")

    request_timeout = _positive_float(ledger, "request_timeout_seconds", 4.0, where="ledger")
    loop_interval = _positive_int(poller, "loop_interval_seconds", 5, where="poller")
    if request_timeout >= loop_interval:
        raise ValueError(
            "ledger.request_timeout_seconds must be < poller.loop_interval_seconds"
        )

    max_batch_heights = _positive_int(poller, "max_batch_heights", 50, where="poller")
    if max_batch_heights > LedgerAdapter.MAX_EVENT_RANGE_HEIGHTS:
        raise ValueError(
            f"poller.max_batch_heights must be <= {LedgerAdapter.MAX_EVENT_RANGE_HEIGHTS}"
        )

    backoff_base = _positive_float(poller, "backoff_base_seconds", 1.0, where="poller")
    backoff_max = _positive_float(poller, "backoff_max_seconds", 30.0, where="poller")
    backoff_widened = _positive_float(poller, "backoff_widened_max_seconds", 300.0, where="poller")
    if backoff_max < backoff_base:
        raise ValueError("poller.backoff_max_seconds must be >= poller.backoff_base_seconds")

    return ProgramConfig(
        home_dir=str(_req(app, "home_dir")),
        app_log_level=log_level,
        ledger_api_base=str(ledger.get("api_base", LedgerAdapter.MAINNET_BASE_URL)).strip(),
        ledger_available_event_type=available_type,
        ledger_completed_event_type=completed_type,
        ledger_removed_event_type=removed_type,
        ledger_deposit_event_type=deposit_type,
        ledger_item_type_filter=_optional_text(ledger, "item_type_filter"),
        ledger_request_timeout_seconds=request_timeout,
        ledger_seconds_per_block=_positive_float(ledger, "seconds_per_block", 1.0, where="ledger"),
        pricing_floor_url_template=floor_url_template,
        pricing_floor_ttl_seconds=floor_ttl,
        pricing_floor_hard_ttl_seconds=floor_hard_ttl,
        pricing_floor_cache_capacity=_positive_int(
            pricing, "floor_cache_capacity", 300, where="pricing"
        ),
        pricing_warmup_batch_size=_positive_int(pricing, "warmup_batch_size", 10, where="pricing"),
        poller_loop_interval_seconds=loop_interval,
        poller_max_batch_heights=max_batch_heights,
        poller_start_lookback_heights=_non_negative_int(
            poller, "start_lookback_heights", 100, where="poller"
        ),
        poller_heartbeat_every_ticks=_positive_int(
            poller, "heartbeat_every_ticks", 20, where="poller"
        ),
        poller_backoff_base_seconds=backoff_base,
        poller_backoff_max_seconds=backoff_max,
        poller_backoff_widened_max_seconds=max(backoff_max, backoff_widened),
        poller_backoff_widen_after_failures=_positive_int(
            poller, "backoff_widen_after_failures", 10, where="poller"
        ),
        verification_enabled=bool(verification.get("enabled", True)),
        verification_interval_seconds=_positive_int(
            verification, "interval_seconds", 600, where="verification"
        ),
        verification_min_age_seconds=_non_negative_int(
            verification, "min_age_seconds", 600, where="verification"
        ),
        verification_lookback_seconds=_positive_int(
            verification, "lookback_seconds", 3 * 24 * 3600, where="verification"
        ),
        verification_batch_size=_positive_int(verification, "batch_size", 10, where="verification"),
        verification_concurrency=_positive_int(
            verification, "concurrency", 3, where="verification"
        ),
        verification_batch_delay_seconds=float(verification.get("batch_delay_seconds", 1.0)),
        reconcile_completion_tolerance_seconds=_non_negative_int(
            reconcile, "completion_tolerance_seconds", 120, where="reconcile"
        ),
        reconcile_max_working_set=_positive_int(
            reconcile, "max_working_set", 1500, where="reconcile"
        ),
        reconcile_max_seen=_positive_int(reconcile, "max_seen", 500, where="reconcile"),
        reconcile_max_terminal_markers=_positive_int(
            reconcile, "max_terminal_markers", 500, where="reconcile"
        ),
        reconcile_persistence_retry_attempts=_positive_int(
            reconcile, "persistence_retry_attempts", 3, where="reconcile"
        ),
        reconcile_backfill_height_window=_non_negative_int(
            reconcile, "backfill_height_window", 0, where="reconcile"
        ),
        retention_seconds=_positive_int(retention, "retention_seconds", 3 * 24 * 3600, where="retention"),
        retention_interval_seconds=_positive_int(
            retention, "interval_seconds", 3600, where="retention"
        ),
    )
