from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from floorwatch.core.caches import BoundedRecencyCache
from floorwatch.core.decode import EventDecoder
from floorwatch.core.engine import ReconciliationEngine
from floorwatch.core.floor_cache import FloorPriceCache
from floorwatch.core.types import (
    EventKind,
    ListingAvailable,
    ListingCompleted,
    ListingRemoved,
    ListingStatus,
    ListingUpdate,
    RawEvent,
    Unrecognized,
)
from floorwatch.errors import PersistenceError
from floorwatch.storage.sqlite import ListingStore

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
_AVAILABLE = "A.x.NFTStorefront.ListingAvailable"
_COMPLETED = "A.x.NFTStorefront.ListingCompleted"
_REMOVED = "A.x.NFTStorefront.ListingRemoved"
_DEPOSIT = "A.y.Game.Deposit"


class _FakeFloorSource:
    def __init__(self, prices: dict[str, Decimal]) -> None:
        self.prices = prices

    async def get_floor_price(self, group_id: str) -> Decimal | None:
        return self.prices.get(group_id)


class _FakeLedger:
    def __init__(self, events: list[RawEvent] | None = None, height: int = 0) -> None:
        self.events = list(events or [])
        self.height = height
        self.calls: list[tuple[str, int, int]] = []

    async def get_current_height(self) -> int:
        return self.height

    async def fetch_events(self, event_type: str, from_height: int, to_height: int) -> list[RawEvent]:
        self.calls.append((event_type, from_height, to_height))
        return [
            e for e in self.events if e.event_type == event_type and from_height <= e.height <= to_height
        ]


class _FlakyStore(ListingStore):
    def __init__(self, db_path: Path, *, upsert_failures: int) -> None:
        super().__init__(db_path)
        self.upsert_failures = upsert_failures
        self.upsert_attempts = 0

    def upsert(self, listing, *, replace_cycle: bool = False) -> None:
        self.upsert_attempts += 1
        if self.upsert_failures > 0:
            self.upsert_failures -= 1
            raise PersistenceError("listing_store_upsert_failed:database is locked")
        super().upsert(listing, replace_cycle=replace_cycle)


def _decoder() -> EventDecoder:
    return EventDecoder(
        {
            _AVAILABLE: EventKind.AVAILABLE,
            _COMPLETED: EventKind.COMPLETED,
            _REMOVED: EventKind.REMOVED,
            _DEPOSIT: EventKind.DEPOSIT,
        }
    )


def _engine(
    store: ListingStore,
    *,
    floors: dict[str, Decimal] | None = None,
    ledger: _FakeLedger | None = None,
    sink: list[ListingUpdate] | None = None,
    **kwargs,
) -> ReconciliationEngine:
    floor_cache = FloorPriceCache(_FakeFloorSource(floors if floors is not None else {"G1": Decimal("40")}))
    return ReconciliationEngine(
        store=store,
        floor_cache=floor_cache,
        event_source=ledger,
        decoder=_decoder(),
        on_listing=sink.append if sink is not None else None,
        persistence_retry_delay_seconds=0,
        now_fn=lambda: _NOW,
        **kwargs,
    )


def _available(item_id: str = "A1", ref: str | None = "L1", price: str = "30", *, at=_NOW, group="G1"):
    return ListingAvailable(
        item_id=item_id,
        listing_ref=ref,
        group_id=group,
        price=Decimal(price),
        seller_ref="0xseller",
        at=at,
        height=101,
    )


def _completed(ref: str | None = "L1", *, purchased: bool = True, at=_NOW, buyer=None, height=103):
    return ListingCompleted(
        item_id=None, listing_ref=ref, purchased=purchased, at=at, buyer_ref=buyer, height=height
    )


def test_available_creates_active_listing_with_deal(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    sink: list[ListingUpdate] = []
    try:
        engine = _engine(store, sink=sink)
        update = asyncio.run(engine.apply(_available(price="35")))
        assert update is not None
        assert update.kind == "new"
        got = store.get("A1")
        assert got.status == ListingStatus.ACTIVE
        assert got.deal_percent == 12.5
        assert got.floor_price == Decimal("40")
        assert [u.kind for u in sink] == ["new"]
        assert engine.floor_cache.peek("G1") == Decimal("35")
    finally:
        store.close()


def test_non_integral_or_zero_price_never_mutates(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> list:
            return [
                await engine.apply(_available(price="34.99")),
                await engine.apply(_available(price="0")),
            ]

        assert asyncio.run(_run()) == [None, None]
        assert store.get("A1") is None
        assert engine.counters["rejected_price"] == 2
        assert engine.floor_cache.peek("G1") is None
    finally:
        store.close()


def test_available_without_floor_or_group_is_dropped(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store, floors={})

        async def _run() -> None:
            await engine.apply(_available())
            await engine.apply(_available("A2", "L2", group=None))

        asyncio.run(_run())
        assert store.get("A1") is None
        assert store.get("A2") is None
        assert engine.counters["dropped_no_floor"] == 1
        assert engine.counters["dropped_no_group"] == 1
    finally:
        store.close()


def test_group_resolver_fills_missing_group(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")

    async def _resolver(item_id: str) -> str | None:
        return "G1" if item_id == "A1" else None

    try:
        engine = _engine(store, group_resolver=_resolver)
        asyncio.run(engine.apply(_available(group=None)))
        assert store.get("A1").group_id == "G1"
    finally:
        store.close()


def test_last_processed_ref_wins(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> None:
            for ref, price in (("L1", "30"), ("L2", "32"), ("L3", "31")):
                await engine.apply(_available(ref=ref, price=price))
            # Closing an older cycle must not touch the current one.
            await engine.apply(_completed("L2"))

        asyncio.run(_run())
        got = store.get("A1")
        assert got.listing_ref == "L3"
        assert got.price == Decimal("31")
        assert got.status == ListingStatus.ACTIVE
    finally:
        store.close()


def test_unmatched_completion_and_removal_alter_nothing(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> list:
            await engine.apply(_available())
            return [
                await engine.apply(_completed("L-unknown")),
                await engine.apply(ListingRemoved(item_id="A1", listing_ref="L-unknown", at=_NOW)),
                await engine.apply(_completed(None)),
            ]

        assert asyncio.run(_run()) == [None, None, None]
        assert store.get("A1").status == ListingStatus.ACTIVE
        assert engine.counters["listing_ref_unmatched"] == 2
        assert engine.counters["listing_ref_missing"] == 1
    finally:
        store.close()


def test_completion_with_mismatched_item_id_is_discarded(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> None:
            await engine.apply(_available())
            await engine.apply(
                ListingCompleted(item_id="B9", listing_ref="L1", purchased=True, at=_NOW)
            )

        asyncio.run(_run())
        assert store.get("A1").status == ListingStatus.ACTIVE
        assert engine.counters["item_id_mismatch"] == 1
    finally:
        store.close()


def test_purchase_marks_sold_and_cancel_marks_unlisted(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    sink: list[ListingUpdate] = []
    try:
        engine = _engine(store, sink=sink)

        async def _run() -> None:
            await engine.apply(_available("A1", "L1"))
            await engine.apply(_available("A2", "L2"))
            await engine.apply(_completed("L1", buyer="0xbuyer"))
            await engine.apply(_completed("L2", purchased=False))

        asyncio.run(_run())
        sold = store.get("A1")
        assert sold.status == ListingStatus.SOLD
        assert sold.buyer_ref == "0xbuyer"
        assert store.get("A2").status == ListingStatus.UNLISTED
        assert engine.is_marked_sold("A1")
        assert engine.is_marked_unlisted("A2")
        assert [u.kind for u in sink] == ["new", "new", "sold", "unlisted"]
    finally:
        store.close()


def test_removed_event_unlists_active_listing(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> ListingUpdate | None:
            await engine.apply(_available())
            return await engine.apply(ListingRemoved(item_id=None, listing_ref="L1", at=_NOW))

        update = asyncio.run(_run())
        assert update is not None
        assert update.reason == "listing_removed"
        assert store.get("A1").status == ListingStatus.UNLISTED
    finally:
        store.close()


def test_relisting_clears_terminal_state(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> None:
            await engine.apply(_available(ref="L1"))
            await engine.apply(_completed("L1", buyer="0xbuyer"))
            await engine.apply(_available(ref="L2", price="33", at=_NOW + timedelta(minutes=5)))

        asyncio.run(_run())
        got = store.get("A1")
        assert got.status == ListingStatus.ACTIVE
        assert got.listing_ref == "L2"
        assert got.buyer_ref is None
        assert got.listed_at == _NOW + timedelta(minutes=5)
        assert not engine.is_marked_sold("A1")
    finally:
        store.close()


def test_repeat_delivery_is_an_update_not_a_new_listing(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    sink: list[ListingUpdate] = []
    try:
        engine = _engine(store, sink=sink)

        async def _run() -> None:
            await engine.apply(_available())
            await engine.apply(_available(at=_NOW + timedelta(seconds=30)))

        asyncio.run(_run())
        assert [u.kind for u in sink] == ["new", "updated"]
        assert store.get("A1").listed_at == _NOW
    finally:
        store.close()


def test_completion_before_listing_beyond_tolerance_is_discarded(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store, completion_tolerance_seconds=120)

        async def _run() -> list:
            await engine.apply(_available())
            early = await engine.apply(_completed("L1", at=_NOW - timedelta(seconds=300)))
            within = await engine.apply(_completed("L1", at=_NOW - timedelta(seconds=60)))
            return [early, within]

        early, within = asyncio.run(_run())
        assert early is None
        assert engine.counters["discarded_previous_cycle"] == 1
        assert within is not None
        assert store.get("A1").status == ListingStatus.SOLD
    finally:
        store.close()


def test_unrecognized_events_are_counted(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)
        assert asyncio.run(engine.apply(Unrecognized("item_id_missing"))) is None
        assert engine.counters["unrecognized"] == 1
    finally:
        store.close()


def test_persistence_failure_retries_then_succeeds(tmp_path: Path) -> None:
    store = _FlakyStore(tmp_path / "floorwatch.sqlite", upsert_failures=2)
    try:
        engine = _engine(store, persistence_retry_attempts=3)
        assert asyncio.run(engine.apply(_available())) is not None
        assert store.upsert_attempts == 3
        assert store.get("A1") is not None
    finally:
        store.close()


def test_persistence_failure_drops_after_bounded_retries(tmp_path: Path) -> None:
    store = _FlakyStore(tmp_path / "floorwatch.sqlite", upsert_failures=10)
    try:
        engine = _engine(store, persistence_retry_attempts=2)
        assert asyncio.run(engine.apply(_available())) is None
        assert store.upsert_attempts == 2
        assert engine.counters["persistence_dropped"] == 1
        assert engine.working_listing("A1") is None
    finally:
        store.close()


def test_sink_failure_does_not_break_processing(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")

    def _broken_sink(update: ListingUpdate) -> None:
        raise RuntimeError("consumer gone")

    try:
        engine = ReconciliationEngine(
            store=store,
            floor_cache=FloorPriceCache(_FakeFloorSource({"G1": Decimal("40")})),
            on_listing=_broken_sink,
            now_fn=lambda: _NOW,
        )
        assert asyncio.run(engine.apply(_available())) is not None
        assert store.get("A1") is not None
    finally:
        store.close()


def test_working_set_and_markers_are_bounded(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(
            store,
            floors={"G1": Decimal("1000")},
            working_set=BoundedRecencyCache(10),
            sold_markers=BoundedRecencyCache(5),
        )

        async def _run() -> None:
            for i in range(30):
                await engine.apply(_available(f"A{i}", f"L{i}", price=str(100 + i)))
                await engine.apply(_completed(f"L{i}"))

        asyncio.run(_run())
        assert len(engine._working) <= 10
        assert len(engine._sold) <= 5
        assert store.count_by_status()["sold"] == 30
    finally:
        store.close()


def test_buyer_backfill_resolves_from_deposit(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    ledger = _FakeLedger(
        [
            RawEvent(_DEPOSIT, 103, {"id": "A1", "to": "0xseller"}, block_timestamp=_NOW),
            RawEvent(_DEPOSIT, 103, {"id": "A1", "to": "0xBUYER"}, block_timestamp=_NOW, event_index=1),
        ]
    )
    try:
        engine = _engine(store, ledger=ledger)

        async def _run() -> None:
            await engine.apply(_available())
            await engine.apply(_completed("L1", height=103))
            await engine.drain_backfills()

        asyncio.run(_run())
        got = store.get("A1")
        assert got.status == ListingStatus.SOLD
        assert got.buyer_ref == "0xbuyer"
        assert engine.counters["backfill_resolved"] == 1
        assert ledger.calls == [(_DEPOSIT, 103, 103)]
    finally:
        store.close()


def test_buyer_backfill_leaves_buyer_unknown_without_deposit(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store, ledger=_FakeLedger([]))

        async def _run() -> None:
            await engine.apply(_available())
            await engine.apply(_completed("L1"))
            await engine.drain_backfills()

        asyncio.run(_run())
        assert store.get("A1").buyer_ref is None
        assert engine.counters["backfill_unresolved"] == 1
    finally:
        store.close()


def test_available_records_listing_height(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)
        asyncio.run(engine.apply(_available()))
        assert store.get("A1").listed_height == 101
        asyncio.run(engine.apply(_available(ref="L2")))
        relisted = ListingAvailable(
            item_id="A1",
            listing_ref="L3",
            group_id="G1",
            price=Decimal("31"),
            seller_ref="0xseller",
            at=_NOW,
            height=140,
        )
        asyncio.run(engine.apply(relisted))
        assert store.get("A1").listed_height == 140
        assert engine.working_listing("A1").listed_height == 140
    finally:
        store.close()


def test_verify_listing_applies_first_matching_closure(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)
        asyncio.run(engine.apply(_available()))
        listing = store.get("A1")
        closures = [
            _completed("L-other", height=180),
            _completed("L1", purchased=False, at=_NOW + timedelta(minutes=1), height=190),
            _completed("L1", purchased=True, at=_NOW + timedelta(minutes=2), height=195),
        ]
        result = asyncio.run(engine.verify_listing(listing, closures))
        assert result.changed is True
        assert result.status == ListingStatus.UNLISTED
        assert result.reason == "verified_unlisted"
        assert store.get("A1").status == ListingStatus.UNLISTED
    finally:
        store.close()


def test_verify_listing_without_closures_stays_active(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)
        asyncio.run(engine.apply(_available()))
        listing = store.get("A1")
        result = asyncio.run(engine.verify_listing(listing, []))
        assert result.changed is False
        assert result.reason == "still_active"
        unreferenced = listing.copy(listing_ref=None)
        assert asyncio.run(engine.verify_listing(unreferenced, [_completed("L1")])).reason == (
            "no_listing_ref"
        )
        assert store.get("A1").status == ListingStatus.ACTIVE
    finally:
        store.close()


def test_load_recent_and_feed(tmp_path: Path) -> None:
    db = tmp_path / "floorwatch.sqlite"
    store = ListingStore(db)
    try:
        first = _engine(store)

        async def _seed() -> None:
            await first.apply(_available("A1", "L1", price="30"))
            await first.apply(_available("A2", "L2", price="45", at=_NOW + timedelta(minutes=1)))
            await first.apply(_completed("L2"))

        asyncio.run(_seed())
        restarted = _engine(store)
        assert restarted.load_recent(_NOW - timedelta(days=3)) == 2
        assert restarted.is_marked_sold("A2")
        assert [l.item_id for l in restarted.feed()] == ["A1"]
        assert [l.item_id for l in restarted.feed(status="sold")] == ["A2"]
        assert [l.item_id for l in restarted.feed(status="all", deals_only=True)] == ["A1"]
    finally:
        store.close()


def test_reset_sold_restores_active(tmp_path: Path) -> None:
    store = ListingStore(tmp_path / "floorwatch.sqlite")
    try:
        engine = _engine(store)

        async def _run() -> None:
            await engine.apply(_available())
            await engine.apply(_completed("L1", buyer="0xbuyer"))

        asyncio.run(_run())
        assert engine.reset_sold() == {"database_reset": 1, "memory_reset": 1}
        assert store.get("A1").status == ListingStatus.ACTIVE
        assert engine.working_listing("A1").status == ListingStatus.ACTIVE
        assert not engine.is_marked_sold("A1")
    finally:
        store.close()
