from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from floorwatch.adapters.ledger import EventSource
from floorwatch.core.caches import BoundedRecencyCache
from floorwatch.core.deals import compute_deal_percent, is_acceptable_listing_price
from floorwatch.core.decode import EventDecoder, decode_deposit
from floorwatch.core.feed import filter_listings
from floorwatch.core.floor_cache import FloorPriceCache
from floorwatch.core.listing_lifecycle import ListingSignal, apply_listing_signal
from floorwatch.core.types import (
    DecodedEvent,
    EventKind,
    Listing,
    ListingAvailable,
    ListingCompleted,
    ListingRemoved,
    ListingStatus,
    ListingUpdate,
    Unrecognized,
    VerificationResult,
)
from floorwatch.errors import MatchError, PersistenceError
from floorwatch.storage.sqlite import ListingStore

_engine_logger = logging.getLogger("floorwatch.engine")

GroupResolver = Callable[[str], Awaitable[str | None]]
ListingSink = Callable[[ListingUpdate], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconciliationEngine:
    """Single writer of listing state.

    Consumes decoded marketplace events, keeps a bounded in-memory working set and
    the dedup/terminal marker caches, persists through ``ListingStore`` and emits
    ``ListingUpdate`` records to an optional sink.
    """

    def __init__(
        self,
        *,
        store: ListingStore,
        floor_cache: FloorPriceCache,
        event_source: EventSource | None = None,
        decoder: EventDecoder | None = None,
        group_resolver: GroupResolver | None = None,
        on_listing: ListingSink | None = None,
        completion_tolerance_seconds: float = 120,
        working_set: BoundedRecencyCache[str, Listing] | None = None,
        seen: BoundedRecencyCache[str, str | None] | None = None,
        sold_markers: BoundedRecencyCache[str, float] | None = None,
        unlisted_markers: BoundedRecencyCache[str, float] | None = None,
        persistence_retry_attempts: int = 3,
        persistence_retry_delay_seconds: float = 0.05,
        backfill_height_window: int = 0,
        request_timeout_seconds: float = 4.0,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.floor_cache = floor_cache
        self.event_source = event_source
        self.decoder = decoder
        self.group_resolver = group_resolver
        self.on_listing = on_listing
        self.completion_tolerance = timedelta(seconds=max(0.0, float(completion_tolerance_seconds)))
        self.persistence_retry_attempts = max(1, int(persistence_retry_attempts))
        self.persistence_retry_delay_seconds = max(0.0, float(persistence_retry_delay_seconds))
        self.backfill_height_window = max(0, int(backfill_height_window))
        self.request_timeout_seconds = max(0.1, float(request_timeout_seconds))
        self._now_fn = now_fn or _utcnow
        self._working = working_set if working_set is not None else BoundedRecencyCache(1500)
        self._ref_index: BoundedRecencyCache[str, str] = BoundedRecencyCache(self._working.capacity)
        self._seen = seen if seen is not None else BoundedRecencyCache(500)
        self._sold = sold_markers if sold_markers is not None else BoundedRecencyCache(500)
        self._unlisted = (
            unlisted_markers if unlisted_markers is not None else BoundedRecencyCache(500)
        )
        self._backfills: set[asyncio.Task[Any]] = set()
        self.counters: dict[str, int] = {}

    # -- bookkeeping -------------------------------------------------------

    def _count(self, name: str) -> None:
        self.counters[name] = self.counters.get(name, 0) + 1

    def is_marked_sold(self, item_id: str) -> bool:
        return item_id in self._sold

    def is_marked_unlisted(self, item_id: str) -> bool:
        return item_id in self._unlisted

    def working_listing(self, item_id: str) -> Listing | None:
        return self._working.get(item_id)

    def _remember(self, listing: Listing) -> None:
        self._working.put(listing.item_id, listing)
        if listing.listing_ref:
            self._ref_index.put(listing.listing_ref, listing.item_id)

    def _emit(self, kind: str, listing: Listing, reason: str = "") -> ListingUpdate:
        update = ListingUpdate(kind=kind, listing=listing, reason=reason)
        if self.on_listing is not None:
            try:
                self.on_listing(update)
            except Exception:
                _engine_logger.exception("listing_sink_failed item_id=%s", listing.item_id)
        return update

    async def _persist(self, operation: str, fn: Callable[[], Any]) -> tuple[bool, Any]:
        last_error: PersistenceError | None = None
        for attempt in range(1, self.persistence_retry_attempts + 1):
            try:
                return True, fn()
            except PersistenceError as exc:
                last_error = exc
                if attempt < self.persistence_retry_attempts and self.persistence_retry_delay_seconds > 0:
                    await asyncio.sleep(self.persistence_retry_delay_seconds * (2 ** (attempt - 1)))
        self._count("persistence_dropped")
        _engine_logger.error(
            "persistence_dropped operation=%s attempts=%s error=%s",
            operation,
            self.persistence_retry_attempts,
            last_error,
        )
        return False, None

    # -- dispatch ----------------------------------------------------------

    async def apply(self, event: DecodedEvent) -> ListingUpdate | None:
        if isinstance(event, ListingAvailable):
            return await self.handle_available(event)
        if isinstance(event, ListingCompleted):
            return await self.handle_completed(event)
        if isinstance(event, ListingRemoved):
            return await self.handle_removed(event)
        if isinstance(event, Unrecognized):
            self._count("unrecognized")
            return None
        raise TypeError(f"unsupported event: {type(event).__name__}")

    # -- availability ------------------------------------------------------

    async def _resolve_group(self, item_id: str) -> str | None:
        known = self._working.get(item_id)
        if known is not None:
            return known.group_id
        ok, stored = await self._persist("get", lambda: self.store.get(item_id))
        if ok and stored is not None:
            return stored.group_id
        if self.group_resolver is None:
            return None
        try:
            return await asyncio.wait_for(
                self.group_resolver(item_id), timeout=self.request_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _engine_logger.warning("group_resolve_failed item_id=%s error=%s", item_id, exc)
            return None

    async def handle_available(self, event: ListingAvailable) -> ListingUpdate | None:
        if not is_acceptable_listing_price(event.price):
            self._count("rejected_price")
            _engine_logger.debug(
                "listing_rejected_price item_id=%s price=%s", event.item_id, event.price
            )
            return None
        group_id = event.group_id or await self._resolve_group(event.item_id)
        if not group_id:
            self._count("dropped_no_group")
            return None
        floor = await self.floor_cache.get(group_id)
        if floor is None:
            self._count("dropped_no_floor")
            _engine_logger.debug("listing_dropped_no_floor item_id=%s group_id=%s", event.item_id, group_id)
            return None
        deal_percent = compute_deal_percent(floor=floor, price=event.price)

        self._sold.pop(event.item_id)
        self._unlisted.pop(event.item_id)

        previous = self._working.get(event.item_id)
        repeat = (
            event.listing_ref is not None
            and previous is not None
            and previous.status == ListingStatus.ACTIVE
            and previous.listing_ref == event.listing_ref
            and self._seen.get(event.item_id) == event.listing_ref
        )
        transition = apply_listing_signal(
            previous.status if previous is not None else None, ListingSignal.AVAILABLE
        )
        listed_height = event.height or None
        if repeat and previous is not None and previous.listed_height is not None:
            listed_height = previous.listed_height
        listing = Listing(
            item_id=event.item_id,
            listing_ref=event.listing_ref,
            group_id=group_id,
            price=event.price,
            status=ListingStatus.ACTIVE,
            seller_ref=event.seller_ref,
            buyer_ref=None,
            floor_price=floor,
            deal_percent=deal_percent,
            listed_at=previous.listed_at if repeat and previous is not None else event.at,
            updated_at=self._now_fn(),
            listed_height=listed_height,
        )
        ok, _ = await self._persist(
            "upsert", lambda: self.store.upsert(listing, replace_cycle=not repeat)
        )
        if not ok:
            return None
        self._remember(listing)
        self._seen.put(event.item_id, event.listing_ref)

        if event.price < floor:
            self.floor_cache.update(group_id, event.price)

        if repeat:
            self._count("available_repeat")
            return self._emit("updated", listing, reason="repeat_delivery")
        self._count("available_new")
        if deal_percent is not None and deal_percent > 0:
            _engine_logger.info(
                "deal_found item_id=%s group_id=%s price=%s floor=%s deal_percent=%.1f",
                event.item_id,
                group_id,
                event.price,
                floor,
                deal_percent,
            )
        return self._emit("new", listing, reason=transition.action)

    # -- completion / removal ---------------------------------------------

    async def _resolve_active_by_ref(self, listing_ref: str) -> Listing | None:
        item_id = self._ref_index.get(listing_ref)
        if item_id is not None:
            known = self._working.get(item_id)
            if known is not None and known.listing_ref == listing_ref:
                return known if known.status == ListingStatus.ACTIVE else None
        ok, stored = await self._persist(
            "find_active_by_listing_ref",
            lambda: self.store.find_active_by_listing_ref(listing_ref),
        )
        if not ok:
            return None
        return stored

    async def _match(self, event: ListingCompleted | ListingRemoved) -> Listing:
        if not event.listing_ref:
            # Identity-only matching is unsafe once an item has been relisted.
            raise MatchError("listing_ref_missing")
        listing = await self._resolve_active_by_ref(event.listing_ref)
        if listing is None:
            raise MatchError("listing_ref_unmatched")
        if event.item_id and event.item_id != listing.item_id:
            raise MatchError("item_id_mismatch")
        return listing

    async def handle_completed(self, event: ListingCompleted) -> ListingUpdate | None:
        try:
            listing = await self._match(event)
        except MatchError as exc:
            self._count(str(exc))
            return None
        if event.at < listing.listed_at - self.completion_tolerance:
            self._count("discarded_previous_cycle")
            _engine_logger.debug(
                "completion_before_listing item_id=%s listing_ref=%s at=%s listed_at=%s",
                listing.item_id,
                listing.listing_ref,
                event.at.isoformat(),
                listing.listed_at.isoformat(),
            )
            return None
        signal = ListingSignal.PURCHASED if event.purchased else ListingSignal.CANCELLED
        transition = apply_listing_signal(listing.status, signal)
        if not transition.changed:
            return None
        if transition.new_state == ListingStatus.SOLD:
            update = await self._mark_sold(listing, event.buyer_ref, reason=transition.reason)
            if update is not None and event.buyer_ref is None:
                self._schedule_backfill(update.listing, event.height)
            return update
        return await self._mark_unlisted(listing, reason=transition.reason)

    async def handle_removed(self, event: ListingRemoved) -> ListingUpdate | None:
        try:
            listing = await self._match(event)
        except MatchError as exc:
            self._count(str(exc))
            return None
        transition = apply_listing_signal(listing.status, ListingSignal.REMOVED)
        if not transition.changed:
            return None
        return await self._mark_unlisted(listing, reason=transition.reason)

    async def _mark_sold(
        self, listing: Listing, buyer_ref: str | None, *, reason: str
    ) -> ListingUpdate | None:
        ok, changed = await self._persist(
            "mark_sold",
            lambda: self.store.mark_sold(
                listing.item_id, buyer_ref, listing_ref=listing.listing_ref
            ),
        )
        if not ok:
            return None
        if not changed:
            self._count("stale_cycle")
            return None
        sold = listing.copy(
            status=ListingStatus.SOLD,
            buyer_ref=buyer_ref or listing.buyer_ref,
            updated_at=self._now_fn(),
        )
        self._remember(sold)
        self._unlisted.pop(listing.item_id)
        self._sold.put(listing.item_id, time.time())
        self._count("marked_sold")
        _engine_logger.info(
            "listing_sold item_id=%s listing_ref=%s buyer=%s",
            sold.item_id,
            sold.listing_ref,
            sold.buyer_ref or "unknown",
        )
        return self._emit("sold", sold, reason=reason)

    async def _mark_unlisted(self, listing: Listing, *, reason: str) -> ListingUpdate | None:
        ok, changed = await self._persist(
            "mark_unlisted",
            lambda: self.store.mark_unlisted(listing.item_id, listing_ref=listing.listing_ref),
        )
        if not ok:
            return None
        if not changed:
            self._count("stale_cycle")
            return None
        unlisted = listing.copy(status=ListingStatus.UNLISTED, updated_at=self._now_fn())
        self._remember(unlisted)
        self._sold.pop(listing.item_id)
        self._unlisted.put(listing.item_id, time.time())
        self._count("marked_unlisted")
        _engine_logger.info(
            "listing_unlisted item_id=%s listing_ref=%s reason=%s",
            unlisted.item_id,
            unlisted.listing_ref,
            reason,
        )
        return self._emit("unlisted", unlisted, reason=reason)

    # -- buyer backfill ----------------------------------------------------

    def _schedule_backfill(self, listing: Listing, height: int) -> None:
        if self.event_source is None or self.decoder is None or height <= 0:
            return
        if self.decoder.event_type_for(EventKind.DEPOSIT) is None:
            return
        task = asyncio.get_running_loop().create_task(self.backfill_buyer(listing, height))
        self._backfills.add(task)
        task.add_done_callback(self._backfills.discard)

    async def backfill_buyer(self, listing: Listing, height: int) -> str | None:
        """Best effort: find the deposit of the sold item near the completion height."""
        if self.event_source is None or self.decoder is None:
            return None
        deposit_type = self.decoder.event_type_for(EventKind.DEPOSIT)
        if deposit_type is None:
            return None
        try:
            events = await asyncio.wait_for(
                self.event_source.fetch_events(
                    deposit_type, height, height + self.backfill_height_window
                ),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._count("backfill_failed")
            _engine_logger.debug("buyer_backfill_failed item_id=%s error=%s", listing.item_id, exc)
            return None
        for raw in sorted(events, key=lambda e: (e.height, e.event_index)):
            deposit = decode_deposit(raw)
            if deposit is None:
                continue
            item_id, recipient = deposit
            if item_id != listing.item_id or recipient == listing.seller_ref:
                continue
            ok, changed = await self._persist(
                "set_buyer",
                lambda: self.store.set_buyer(
                    listing.item_id, recipient, listing_ref=listing.listing_ref
                ),
            )
            if ok and changed:
                current = self._working.get(listing.item_id)
                if current is not None and current.listing_ref == listing.listing_ref:
                    self._remember(current.copy(buyer_ref=recipient, updated_at=self._now_fn()))
                self._count("backfill_resolved")
                _engine_logger.info(
                    "buyer_backfilled item_id=%s buyer=%s", listing.item_id, recipient
                )
                return recipient
            return None
        self._count("backfill_unresolved")
        return None

    async def drain_backfills(self) -> None:
        if self._backfills:
            await asyncio.gather(*list(self._backfills), return_exceptions=True)

    def cancel_backfills(self) -> None:
        for task in list(self._backfills):
            task.cancel()

    # -- verification ------------------------------------------------------

    async def verify_listing(
        self,
        listing: Listing,
        closures: Iterable[ListingCompleted | ListingRemoved],
    ) -> VerificationResult:
        """Re-derive one listing's status from closing events observed for its ref.

        ``closures`` must be in ledger order; the first one that changes the
        listing wins.
        """
        if not listing.listing_ref:
            return VerificationResult(listing.item_id, listing.status, False, "no_listing_ref")
        for event in closures:
            if event.listing_ref != listing.listing_ref:
                continue
            update = await self.apply(event)
            if update is not None:
                return VerificationResult(
                    listing.item_id, update.listing.status, True, f"verified_{update.kind}"
                )
        return VerificationResult(listing.item_id, listing.status, False, "still_active")

    # -- working set -------------------------------------------------------

    def load_recent(self, since: datetime, *, limit: int | None = None) -> int:
        rows = self.store.list_recent(since, limit=limit or self._working.capacity)
        # Oldest first so the newest listings end up most recent in the caches.
        for listing in reversed(rows):
            self._remember(listing)
            if listing.status == ListingStatus.SOLD:
                self._sold.put(listing.item_id, time.time())
            elif listing.status == ListingStatus.UNLISTED:
                self._unlisted.put(listing.item_id, time.time())
        _engine_logger.info("working_set_loaded count=%s", len(rows))
        return len(rows)

    def feed(
        self,
        *,
        status: str = "active",
        group_id: str | None = None,
        max_price: Decimal | None = None,
        min_discount: float | None = None,
        deals_only: bool = False,
        limit: int | None = 50,
    ) -> list[Listing]:
        return filter_listings(
            self._working.values(),
            status=status,
            group_id=group_id,
            max_price=max_price,
            min_discount=min_discount,
            deals_only=deals_only,
            limit=limit,
        )

    def reset_sold(self) -> dict[str, int]:
        """Operator action: undo every Sold verdict in the store and in memory."""
        database_reset = self.store.reset_sold()
        memory_reset = 0
        for item_id in self._working:
            listing = self._working.get(item_id)
            if listing is not None and listing.status == ListingStatus.SOLD:
                self._working.put(
                    item_id,
                    listing.copy(status=ListingStatus.ACTIVE, buyer_ref=None, updated_at=self._now_fn()),
                )
                memory_reset += 1
        self._sold.clear()
        _engine_logger.warning(
            "sold_state_reset database=%s memory=%s", database_reset, memory_reset
        )
        return {"database_reset": database_reset, "memory_reset": memory_reset}
