from __future__ import annotations

import argparse
import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from concurrent_log_handler import ConcurrentRotatingFileHandler

from floorwatch.adapters.ledger import EventSource, LedgerAdapter
from floorwatch.adapters.price import EditionFloorAdapter
from floorwatch.config.io import load_program_config
from floorwatch.config.models import ProgramConfig
from floorwatch.core.caches import BoundedRecencyCache
from floorwatch.core.decode import EventDecoder
from floorwatch.core.engine import ListingSink, ReconciliationEngine
from floorwatch.core.floor_cache import FloorPriceCache, FloorPriceSource
from floorwatch.daemon.poller import ListingPoller
from floorwatch.daemon.scheduler import BackoffPolicy, PeriodicTask
from floorwatch.daemon.verify import VerificationSweep
from floorwatch.errors import PersistenceError, TransientError
from floorwatch.logging_setup import (
    build_console_handler,
    build_file_handler,
    effective_level,
    set_levels,
)
from floorwatch.storage.sqlite import ListingStore

_DAEMON_SERVICE_NAME = "daemon"
_WORKING_SET_LOAD_WINDOW = timedelta(days=3)
_daemon_file_logger_initialized = False
_daemon_file_log_handler: ConcurrentRotatingFileHandler | None = None
_daemon_console_handler: logging.Handler | None = None
_daemon_logger = logging.getLogger("floorwatch.daemon")


def _initialize_daemon_file_logging(home_dir: str, *, log_level: str | None, console: bool = False) -> None:
    global _daemon_file_logger_initialized, _daemon_file_log_handler, _daemon_console_handler
    root_logger = logging.getLogger()
    if not _daemon_file_logger_initialized:
        handler = build_file_handler(home_dir, service_name=_DAEMON_SERVICE_NAME)
        root_logger.addHandler(handler)
        _daemon_file_log_handler = handler
        _daemon_file_logger_initialized = True
    if console and _daemon_console_handler is None:
        _daemon_console_handler = build_console_handler(_DAEMON_SERVICE_NAME)
        root_logger.addHandler(_daemon_console_handler)
    set_levels(
        effective_level(log_level),
        handlers=[_daemon_file_log_handler, _daemon_console_handler],
        loggers=[_daemon_logger],
    )


def _resolve_db_path(program_home_dir: str, explicit_db_path: str | None) -> Path:
    if explicit_db_path:
        return Path(explicit_db_path).expanduser()
    return (Path(program_home_dir).expanduser() / "db" / "floorwatch.sqlite").resolve()


@dataclass(slots=True)
class DaemonRuntime:
    program: ProgramConfig
    store: ListingStore
    floor_cache: FloorPriceCache
    engine: ReconciliationEngine
    poller: ListingPoller
    sweep: VerificationSweep
    tasks: list[PeriodicTask] = field(default_factory=list)

    async def purge_expired(self) -> int:
        removed = self.store.purge_older_than(timedelta(seconds=self.program.retention_seconds))
        if removed:
            _daemon_logger.info("retention_purged removed=%s", removed)
            self.store.add_audit_event("retention_purge", {"removed": removed})
        return removed

    def stop(self) -> None:
        for task in self.tasks:
            task.stop()
        self.engine.cancel_backfills()


def build_runtime(
    program: ProgramConfig,
    *,
    db_path: Path,
    event_source: EventSource | None = None,
    floor_source: FloorPriceSource | None = None,
    on_listing: ListingSink | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> DaemonRuntime:
    store = ListingStore(db_path)
    source = event_source or LedgerAdapter(
        program.ledger_api_base, timeout_seconds=program.ledger_request_timeout_seconds
    )
    floors = floor_source or EditionFloorAdapter(
        url_template=program.pricing_floor_url_template,
        timeout_seconds=program.ledger_request_timeout_seconds,
    )
    decoder = EventDecoder(program.event_kinds(), item_type_filter=program.ledger_item_type_filter)
    floor_cache = FloorPriceCache(
        floors,
        ttl_seconds=program.pricing_floor_ttl_seconds,
        hard_ttl_seconds=program.pricing_floor_hard_ttl_seconds,
        capacity=program.pricing_floor_cache_capacity,
        refresh_timeout_seconds=program.ledger_request_timeout_seconds,
    )
    engine = ReconciliationEngine(
        store=store,
        floor_cache=floor_cache,
        event_source=source,
        decoder=decoder,
        on_listing=on_listing,
        completion_tolerance_seconds=program.reconcile_completion_tolerance_seconds,
        working_set=BoundedRecencyCache(program.reconcile_max_working_set),
        seen=BoundedRecencyCache(program.reconcile_max_seen),
        sold_markers=BoundedRecencyCache(program.reconcile_max_terminal_markers),
        unlisted_markers=BoundedRecencyCache(program.reconcile_max_terminal_markers),
        persistence_retry_attempts=program.reconcile_persistence_retry_attempts,
        backfill_height_window=program.reconcile_backfill_height_window,
        request_timeout_seconds=program.ledger_request_timeout_seconds,
        now_fn=now_fn,
    )
    poller = ListingPoller(
        source=source,
        decoder=decoder,
        engine=engine,
        store=store,
        max_batch_heights=program.poller_max_batch_heights,
        start_lookback_heights=program.poller_start_lookback_heights,
        heartbeat_every_ticks=program.poller_heartbeat_every_ticks,
        request_timeout_seconds=program.ledger_request_timeout_seconds,
        now_fn=now_fn,
    )
    sweep = VerificationSweep(
        source=source,
        engine=engine,
        store=store,
        min_age_seconds=program.verification_min_age_seconds,
        lookback_seconds=program.verification_lookback_seconds,
        seconds_per_block=program.ledger_seconds_per_block,
        batch_size=program.verification_batch_size,
        concurrency=program.verification_concurrency,
        batch_delay_seconds=program.verification_batch_delay_seconds,
        request_timeout_seconds=program.ledger_request_timeout_seconds,
        now_fn=now_fn,
    )
    return DaemonRuntime(
        program=program,
        store=store,
        floor_cache=floor_cache,
        engine=engine,
        poller=poller,
        sweep=sweep,
    )


def _schedule_tasks(runtime: DaemonRuntime) -> list[PeriodicTask]:
    program = runtime.program
    poll_backoff = BackoffPolicy(
        base_seconds=program.poller_backoff_base_seconds,
        max_seconds=program.poller_backoff_max_seconds,
        widened_max_seconds=program.poller_backoff_widened_max_seconds,
        widen_after_failures=program.poller_backoff_widen_after_failures,
        jitter_ratio=0.1,
    )
    tasks = [
        PeriodicTask(
            name="poller",
            interval_seconds=program.poller_loop_interval_seconds,
            tick=runtime.poller.tick,
            backoff=poll_backoff,
        ),
        PeriodicTask(
            name="retention",
            interval_seconds=program.retention_interval_seconds,
            tick=runtime.purge_expired,
        ),
    ]
    if program.verification_enabled:
        tasks.append(
            PeriodicTask(
                name="verification",
                interval_seconds=program.verification_interval_seconds,
                tick=runtime.sweep.tick,
                run_immediately=False,
            )
        )
    runtime.tasks = tasks
    return tasks


async def _warm_start(runtime: DaemonRuntime, *, now: datetime | None = None) -> None:
    since = (now or datetime.now(UTC)) - _WORKING_SET_LOAD_WINDOW
    runtime.engine.load_recent(since, limit=runtime.program.reconcile_max_working_set)
    group_ids = list(
        dict.fromkeys(
            listing.group_id
            for listing in runtime.engine.feed(status="active", limit=None)
            if listing.group_id
        )
    )
    if not group_ids:
        return
    cached = await runtime.floor_cache.warmup(
        group_ids[: runtime.program.pricing_floor_cache_capacity],
        batch_size=runtime.program.pricing_warmup_batch_size,
    )
    _daemon_logger.info("floor_cache_warmed groups=%s cached=%s", len(group_ids), cached)


async def run_once_async(runtime: DaemonRuntime, *, verify: bool = False) -> int:
    await _warm_start(runtime)
    try:
        stats = await runtime.poller.tick()
        if verify and runtime.program.verification_enabled:
            await runtime.sweep.tick()
    except TransientError as exc:
        _daemon_logger.warning("run_once_transient_failure error=%s", exc)
        return 2
    finally:
        await runtime.engine.drain_backfills()
    try:
        await runtime.purge_expired()
    except PersistenceError as exc:
        _daemon_logger.warning("retention_purge_failed error=%s", exc)
    if stats is not None:
        _daemon_logger.info(
            "run_once_cycle from=%s to=%s applied=%s", stats.from_height, stats.to_height, stats.applied
        )
    return 0


async def serve(runtime: DaemonRuntime) -> None:
    await _warm_start(runtime)
    tasks = _schedule_tasks(runtime)
    try:
        await asyncio.gather(*(task.run_forever() for task in tasks))
    finally:
        runtime.stop()


def run_once(program_path: Path, db_path_override: str | None, *, verify: bool = False) -> int:
    program = load_program_config(program_path)
    db_path = _resolve_db_path(program.home_dir, db_path_override)
    runtime = build_runtime(program, db_path=db_path)
    try:
        return asyncio.run(run_once_async(runtime, verify=verify))
    finally:
        runtime.store.close()


def _run_loop(*, program_path: Path, db_path_override: str | None) -> int:
    program = load_program_config(program_path)
    _initialize_daemon_file_logging(program.home_dir, log_level=program.app_log_level)
    db_path = _resolve_db_path(program.home_dir, db_path_override)
    _daemon_logger.info(
        "daemon_starting mode=loop program_config=%s state_db=%s",
        os.fspath(program_path),
        os.fspath(db_path),
    )
    runtime = build_runtime(program, db_path=db_path)
    try:
        asyncio.run(serve(runtime))
    except KeyboardInterrupt:
        return 0
    finally:
        runtime.store.close()
        _daemon_logger.info("daemon_stopped mode=loop")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the floorwatch listing daemon")
    parser.add_argument(
        "--program-config",
        default="config/program.yaml",
        help="Path to program.yaml",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one poll cycle and exit",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="With --once, also run one verification sweep",
    )
    parser.add_argument("--state-db", default="", help="Optional explicit SQLite state DB path")
    args = parser.parse_args()

    if args.once:
        program = load_program_config(Path(args.program_config))
        _initialize_daemon_file_logging(program.home_dir, log_level=program.app_log_level, console=True)
        _daemon_logger.info("daemon_starting mode=once program_config=%s", args.program_config)
        exit_code = run_once(Path(args.program_config), args.state_db or None, verify=args.verify)
        _daemon_logger.info("daemon_stopped mode=once exit_code=%s", exit_code)
    else:
        exit_code = _run_loop(
            program_path=Path(args.program_config),
            db_path_override=args.state_db or None,
        )
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
