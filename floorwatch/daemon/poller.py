from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from floorwatch.adapters.ledger import EventSource
from floorwatch.core.decode import EventDecoder
from floorwatch.core.engine import ReconciliationEngine
from floorwatch.core.types import (
    CycleStats,
    DecodedEvent,
    EventKind,
    ListingAvailable,
    ListingCompleted,
    ListingRemoved,
    RawEvent,
    Unrecognized,
)
from floorwatch.errors import PersistenceError, TransientError
from floorwatch.storage.sqlite import ListingStore

_poller_logger = logging.getLogger("floorwatch.poller")

# Relist-then-complete inside one batch must see the new listing first.
_APPLY_ORDER = (EventKind.AVAILABLE, EventKind.COMPLETED, EventKind.REMOVED)


def plan_height_range(
    *, checkpoint: int, current_height: int, max_batch_heights: int
) -> tuple[int, int] | None:
    if current_height <= checkpoint:
        return None
    start = checkpoint + 1
    end = min(current_height, checkpoint + max(1, int(max_batch_heights)))
    return start, end


def _kind_of(event: DecodedEvent) -> EventKind | None:
    if isinstance(event, ListingAvailable):
        return EventKind.AVAILABLE
    if isinstance(event, ListingCompleted):
        return EventKind.COMPLETED
    if isinstance(event, ListingRemoved):
        return EventKind.REMOVED
    return None


class ListingPoller:
    def __init__(
        self,
        *,
        source: EventSource,
        decoder: EventDecoder,
        engine: ReconciliationEngine,
        store: ListingStore,
        max_batch_heights: int = 50,
        start_lookback_heights: int = 100,
        heartbeat_every_ticks: int = 20,
        request_timeout_seconds: float = 4.0,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.source = source
        self.decoder = decoder
        self.engine = engine
        self.store = store
        self.max_batch_heights = max(1, int(max_batch_heights))
        self.start_lookback_heights = max(0, int(start_lookback_heights))
        self.heartbeat_every_ticks = max(1, int(heartbeat_every_ticks))
        self.request_timeout_seconds = max(0.1, float(request_timeout_seconds))
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._idle_ticks = 0
        self.last_stats: CycleStats | None = None

    async def _call(self, awaitable, *, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"poller_timeout:{what}") from exc

    def tracked_event_types(self) -> list[tuple[EventKind, str]]:
        tracked: list[tuple[EventKind, str]] = []
        for kind in _APPLY_ORDER:
            event_type = self.decoder.event_type_for(kind)
            if event_type is not None:
                tracked.append((kind, event_type))
        return tracked

    def _load_checkpoint(self, current_height: int) -> int:
        checkpoint = self.store.get_checkpoint()
        if checkpoint is not None:
            return checkpoint
        initial = max(0, current_height - self.start_lookback_heights)
        stored = self.store.set_checkpoint(initial)
        _poller_logger.info("checkpoint_initialized height=%s current_height=%s", stored, current_height)
        return stored

    async def tick(self) -> CycleStats | None:
        current_height = await self._call(self.source.get_current_height(), what="current_height")
        checkpoint = self._load_checkpoint(current_height)
        height_range = plan_height_range(
            checkpoint=checkpoint,
            current_height=current_height,
            max_batch_heights=self.max_batch_heights,
        )
        if height_range is None:
            self._idle_ticks += 1
            if self._idle_ticks % self.heartbeat_every_ticks == 0:
                _poller_logger.info(
                    "poller_heartbeat checkpoint=%s current_height=%s idle_ticks=%s",
                    checkpoint,
                    current_height,
                    self._idle_ticks,
                )
            return None
        self._idle_ticks = 0
        start, end = height_range
        stats = CycleStats(from_height=start, to_height=end)

        # Fetch everything first: a transient failure leaves the checkpoint untouched.
        raw_by_kind: dict[EventKind, list[RawEvent]] = {}
        for kind, event_type in self.tracked_event_types():
            raw_by_kind[kind] = await self._call(
                self.source.fetch_events(event_type, start, end), what=event_type
            )
            stats.fetched += len(raw_by_kind[kind])

        decoded_by_kind: dict[EventKind, list[tuple[RawEvent, DecodedEvent]]] = {
            kind: [] for kind in _APPLY_ORDER
        }
        now = self._now_fn()
        for kind, raws in raw_by_kind.items():
            for raw in sorted(raws, key=lambda e: (e.height, e.event_index)):
                decoded = self.decoder.decode(raw, kind=kind, now=now)
                if isinstance(decoded, Unrecognized):
                    stats.decode_failures += 1
                    if decoded.reason != "foreign_item_type":
                        _poller_logger.debug(
                            "event_unrecognized type=%s height=%s reason=%s",
                            raw.event_type,
                            raw.height,
                            decoded.reason,
                        )
                    continue
                decoded_kind = _kind_of(decoded)
                if decoded_kind is None:
                    continue
                stats.decoded += 1
                decoded_by_kind[decoded_kind].append((raw, decoded))

        for kind in _APPLY_ORDER:
            for raw, decoded in decoded_by_kind[kind]:
                try:
                    update = await self.engine.apply(decoded)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    stats.discarded += 1
                    _poller_logger.exception(
                        "event_apply_failed type=%s height=%s", raw.event_type, raw.height
                    )
                    continue
                if update is None:
                    stats.discarded += 1
                    continue
                stats.applied += 1
                stats.bump(update.kind)

        self.store.set_checkpoint(end)
        self.last_stats = stats
        _poller_logger.info(
            "poll_cycle from=%s to=%s current_height=%s fetched=%s decoded=%s "
            "decode_failures=%s applied=%s discarded=%s",
            start,
            end,
            current_height,
            stats.fetched,
            stats.decoded,
            stats.decode_failures,
            stats.applied,
            stats.discarded,
        )
        if stats.applied:
            try:
                self.store.add_audit_event(
                    "poll_cycle_summary",
                    {
                        "from_height": start,
                        "to_height": end,
                        "current_height": current_height,
                        "fetched": stats.fetched,
                        "decoded": stats.decoded,
                        "decode_failures": stats.decode_failures,
                        "applied": stats.applied,
                        "discarded": stats.discarded,
                        "counts_by_kind": stats.counts_by_kind,
                    },
                )
            except PersistenceError as exc:
                _poller_logger.warning("audit_write_failed event=poll_cycle_summary error=%s", exc)
        return stats
