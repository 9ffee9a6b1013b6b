from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta

from floorwatch.adapters.ledger import EventSource, LedgerAdapter
from floorwatch.core.decode import EventDecoder
from floorwatch.core.engine import ReconciliationEngine
from floorwatch.core.types import EventKind, Listing, ListingCompleted, ListingRemoved, RawEvent
from floorwatch.errors import PersistenceError, TransientError
from floorwatch.storage.sqlite import ListingStore

_verify_logger = logging.getLogger("floorwatch.verify")

Closure = ListingCompleted | ListingRemoved


def estimate_height_at(
    *,
    at: datetime,
    now: datetime,
    current_height: int,
    seconds_per_block: float,
    margin_blocks: int = 10,
) -> int:
    """Approximate the ledger height at ``at`` by walking back from the tip."""
    elapsed = max(0.0, (now - at).total_seconds())
    blocks_back = math.ceil(elapsed / max(0.01, float(seconds_per_block)))
    return max(0, current_height - blocks_back - max(0, int(margin_blocks)))


def merge_windows(windows: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(windows):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def chunk_ranges(windows: Iterable[tuple[int, int]], chunk_heights: int) -> list[tuple[int, int]]:
    """Split the union of ``windows`` into contiguous ranges of at most ``chunk_heights``."""
    step = max(1, int(chunk_heights))
    ranges: list[tuple[int, int]] = []
    for start, end in merge_windows(windows):
        for chunk_start in range(start, end + 1, step):
            ranges.append((chunk_start, min(end, chunk_start + step - 1)))
    return ranges


def _overlaps(window: tuple[int, int], ranges: Iterable[tuple[int, int]]) -> bool:
    return any(start <= window[1] and window[0] <= end for start, end in ranges)


class VerificationSweep:
    """Consistency backstop for Active listings the poller may have missed closing.

    One tick fetches every closing event type once per height chunk over the
    union of all candidate windows, then hands each candidate the closures that
    carry its listing ref.
    """

    def __init__(
        self,
        *,
        source: EventSource,
        engine: ReconciliationEngine,
        store: ListingStore,
        decoder: EventDecoder | None = None,
        min_age_seconds: float = 600,
        lookback_seconds: float = 3 * 24 * 3600,
        seconds_per_block: float = 1.0,
        batch_size: int = 10,
        concurrency: int = 3,
        batch_delay_seconds: float = 1.0,
        chunk_heights: int = LedgerAdapter.MAX_EVENT_RANGE_HEIGHTS,
        max_listings: int = 200,
        request_timeout_seconds: float = 4.0,
        now_fn: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        resolved_decoder = decoder or engine.decoder
        if resolved_decoder is None:
            raise ValueError("verification sweep needs an event decoder")
        self.source = source
        self.engine = engine
        self.store = store
        self.decoder = resolved_decoder
        self.min_age = timedelta(seconds=max(0.0, float(min_age_seconds)))
        self.lookback_seconds = max(1.0, float(lookback_seconds))
        self.seconds_per_block = max(0.01, float(seconds_per_block))
        self.batch_size = max(1, int(batch_size))
        self.concurrency = max(1, int(concurrency))
        self.batch_delay_seconds = max(0.0, float(batch_delay_seconds))
        self.chunk_heights = max(1, int(chunk_heights))
        self.max_listings = max(1, int(max_listings))
        self.request_timeout_seconds = max(0.1, float(request_timeout_seconds))
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._sleep = sleep or asyncio.sleep

    def tracked_event_types(self) -> list[tuple[EventKind, str]]:
        tracked: list[tuple[EventKind, str]] = []
        for kind in (EventKind.COMPLETED, EventKind.REMOVED):
            event_type = self.decoder.event_type_for(kind)
            if event_type is not None:
                tracked.append((kind, event_type))
        return tracked

    def window_for(self, listing: Listing, *, now: datetime, current_height: int) -> tuple[int, int]:
        lookback_floor = max(
            0, current_height - math.ceil(self.lookback_seconds / self.seconds_per_block)
        )
        if listing.listed_height is not None:
            start = listing.listed_height
        else:
            # Rows written before heights were recorded.
            start = estimate_height_at(
                at=listing.listed_at,
                now=now,
                current_height=current_height,
                seconds_per_block=self.seconds_per_block,
            )
        return min(max(start, lookback_floor), current_height), current_height

    async def _fetch(
        self, event_type: str, start: int, end: int, semaphore: asyncio.Semaphore
    ) -> list[RawEvent]:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self.source.fetch_events(event_type, start, end),
                    timeout=self.request_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise TransientError(f"verify_timeout:{event_type}") from exc

    async def collect_closures(
        self, ranges: list[tuple[int, int]]
    ) -> tuple[dict[str, list[Closure]], list[tuple[int, int]]]:
        """Fetch each (event type, range) once.

        Returns decoded closures keyed by listing ref in ledger order, plus the
        ranges that could not be fetched.
        """
        requests = [
            (kind, event_type, start, end)
            for start, end in ranges
            for kind, event_type in self.tracked_event_types()
        ]
        fetched: list[tuple[EventKind, RawEvent]] = []
        failed: list[tuple[int, int]] = []
        semaphore = asyncio.Semaphore(self.concurrency)
        for index in range(0, len(requests), self.batch_size):
            if index > 0 and self.batch_delay_seconds > 0:
                await self._sleep(self.batch_delay_seconds)
            batch = requests[index : index + self.batch_size]
            results = await asyncio.gather(
                *(self._fetch(event_type, start, end, semaphore) for _, event_type, start, end in batch),
                return_exceptions=True,
            )
            for (kind, event_type, start, end), result in zip(batch, results, strict=True):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    failed.append((start, end))
                    _verify_logger.warning(
                        "verify_fetch_failed event_type=%s from=%s to=%s error=%s",
                        event_type,
                        start,
                        end,
                        result,
                    )
                    continue
                fetched.extend((kind, raw) for raw in result)

        closures: dict[str, list[Closure]] = {}
        now = self._now_fn()
        for kind, raw in sorted(fetched, key=lambda item: (item[1].height, item[1].event_index)):
            decoded = self.decoder.decode(raw, kind=kind, now=now)
            if isinstance(decoded, Closure) and decoded.listing_ref:
                closures.setdefault(decoded.listing_ref, []).append(decoded)
        return closures, failed

    async def tick(self) -> dict[str, int]:
        try:
            current_height = await asyncio.wait_for(
                self.source.get_current_height(), timeout=self.request_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise TransientError("verify_timeout:current_height") from exc
        now = self._now_fn()
        candidates = self.store.query_active(
            older_than=self.min_age, limit=self.max_listings, now=now
        )
        summary = {"checked": 0, "changed": 0, "errors": 0, "still_active": 0, "requests": 0}
        if not candidates:
            return summary

        windows = {
            listing.item_id: self.window_for(listing, now=now, current_height=current_height)
            for listing in candidates
            if listing.listing_ref
        }
        ranges = chunk_ranges(windows.values(), self.chunk_heights)
        summary["requests"] = len(ranges) * len(self.tracked_event_types())
        closures, failed = await self.collect_closures(ranges)

        for listing in candidates:
            summary["checked"] += 1
            window = windows.get(listing.item_id)
            matches: list[Closure] = []
            if window is not None and listing.listing_ref:
                matches = [
                    event
                    for event in closures.get(listing.listing_ref, [])
                    if window[0] <= event.height <= window[1]
                ]
            try:
                result = await self.engine.verify_listing(listing, matches)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                summary["errors"] += 1
                _verify_logger.warning(
                    "verify_listing_failed item_id=%s error=%s", listing.item_id, exc
                )
                continue
            if result.changed:
                summary["changed"] += 1
                _verify_logger.info(
                    "verify_listing_corrected item_id=%s status=%s reason=%s",
                    result.item_id,
                    result.status,
                    result.reason,
                )
            elif window is not None and _overlaps(window, failed):
                summary["errors"] += 1
            else:
                summary["still_active"] += 1

        _verify_logger.info(
            "verification_sweep checked=%s changed=%s errors=%s requests=%s current_height=%s",
            summary["checked"],
            summary["changed"],
            summary["errors"],
            summary["requests"],
            current_height,
        )
        try:
            self.store.add_audit_event(
                "verification_sweep_summary", {**summary, "current_height": current_height}
            )
        except PersistenceError as exc:
            _verify_logger.warning("audit_write_failed event=verification_sweep_summary error=%s", exc)
        return summary
