from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from floorwatch.core.types import Listing, ListingStatus

FEED_STATUSES = frozenset({"active", "sold", "unlisted", "sold-unlisted", "all"})


def _status_matches(listing: Listing, status: str) -> bool:
    if status == "all":
        return True
    if status == "sold-unlisted":
        return listing.status in {ListingStatus.SOLD, ListingStatus.UNLISTED}
    return listing.status == ListingStatus(status)


def filter_listings(
    listings: Iterable[Listing],
    *,
    status: str = "active",
    group_id: str | None = None,
    max_price: Decimal | None = None,
    min_discount: float | None = None,
    deals_only: bool = False,
    limit: int | None = None,
) -> list[Listing]:
    """Select listings for the listing feed, newest first."""
    normalized_status = str(status or "active").strip().lower()
    if normalized_status not in FEED_STATUSES:
        raise ValueError(f"unsupported feed status: {status}")
    selected: list[Listing] = []
    for listing in listings:
        if not _status_matches(listing, normalized_status):
            continue
        if group_id and listing.group_id != group_id:
            continue
        if max_price is not None and listing.price > max_price:
            continue
        deal = listing.deal_percent
        if deals_only and (deal is None or deal <= 0):
            continue
        if min_discount is not None and (deal is None or deal < min_discount):
            continue
        selected.append(listing)
    selected.sort(key=lambda l: l.listed_at, reverse=True)
    if limit is not None:
        return selected[: max(0, int(limit))]
    return selected
