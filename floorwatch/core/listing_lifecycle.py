from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from floorwatch.core.types import ListingStatus


class ListingSignal(StrEnum):
    AVAILABLE = "available"
    PURCHASED = "purchased"
    CANCELLED = "cancelled"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class ListingTransition:
    old_state: ListingStatus | None
    new_state: ListingStatus | None
    signal: ListingSignal
    action: str
    reason: str

    @property
    def changed(self) -> bool:
        return self.action != "noop"


def apply_listing_signal(
    state: ListingStatus | None,
    signal: ListingSignal,
) -> ListingTransition:
    """Transition table for one item. ``None`` means the item is not tracked."""
    if signal == ListingSignal.AVAILABLE:
        # A fresh availability always opens a new cycle, whatever came before.
        return ListingTransition(
            old_state=state,
            new_state=ListingStatus.ACTIVE,
            signal=signal,
            action="upsert_active" if state is None else "relist",
            reason="listing_available",
        )
    if signal == ListingSignal.PURCHASED and state == ListingStatus.ACTIVE:
        return ListingTransition(
            old_state=state,
            new_state=ListingStatus.SOLD,
            signal=signal,
            action="mark_sold",
            reason="listing_purchased",
        )
    if signal in {ListingSignal.CANCELLED, ListingSignal.REMOVED} and state == ListingStatus.ACTIVE:
        return ListingTransition(
            old_state=state,
            new_state=ListingStatus.UNLISTED,
            signal=signal,
            action="mark_unlisted",
            reason="seller_cancelled" if signal == ListingSignal.CANCELLED else "listing_removed",
        )

    return ListingTransition(
        old_state=state,
        new_state=state,
        signal=signal,
        action="noop",
        reason="signal_ignored_for_state",
    )
