from __future__ import annotations

from floorwatch.core.listing_lifecycle import ListingSignal, apply_listing_signal
from floorwatch.core.types import ListingStatus


def test_available_on_untracked_item_upserts_active() -> None:
    t = apply_listing_signal(None, ListingSignal.AVAILABLE)
    assert t.new_state == ListingStatus.ACTIVE
    assert t.action == "upsert_active"
    assert t.changed is True


def test_available_relists_terminal_item() -> None:
    for state in (ListingStatus.SOLD, ListingStatus.UNLISTED, ListingStatus.ACTIVE):
        t = apply_listing_signal(state, ListingSignal.AVAILABLE)
        assert t.new_state == ListingStatus.ACTIVE
        assert t.action == "relist"


def test_purchase_marks_active_listing_sold() -> None:
    t = apply_listing_signal(ListingStatus.ACTIVE, ListingSignal.PURCHASED)
    assert t.new_state == ListingStatus.SOLD
    assert t.reason == "listing_purchased"


def test_cancel_and_remove_mark_active_listing_unlisted() -> None:
    cancelled = apply_listing_signal(ListingStatus.ACTIVE, ListingSignal.CANCELLED)
    removed = apply_listing_signal(ListingStatus.ACTIVE, ListingSignal.REMOVED)
    assert cancelled.new_state == ListingStatus.UNLISTED
    assert cancelled.reason == "seller_cancelled"
    assert removed.new_state == ListingStatus.UNLISTED
    assert removed.reason == "listing_removed"


def test_terminal_states_ignore_close_signals() -> None:
    for state in (ListingStatus.SOLD, ListingStatus.UNLISTED, None):
        for signal in (ListingSignal.PURCHASED, ListingSignal.CANCELLED, ListingSignal.REMOVED):
            t = apply_listing_signal(state, signal)
            assert t.action == "noop"
            assert t.new_state == state
            assert t.changed is False
