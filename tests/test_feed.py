from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from floorwatch.core.feed import filter_listings
from floorwatch.core.types import Listing, ListingStatus

_BASE = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _listing(item_id: str, *, status=ListingStatus.ACTIVE, price="30", deal=None, minutes=0, group="G1"):
    at = _BASE + timedelta(minutes=minutes)
    return Listing(
        item_id=item_id,
        group_id=group,
        price=Decimal(price),
        status=status,
        listed_at=at,
        updated_at=at,
        listing_ref=f"L-{item_id}",
        deal_percent=deal,
    )


def _rows() -> list[Listing]:
    return [
        _listing("a", deal=25.0, minutes=1),
        _listing("b", price="50", deal=-10.0, minutes=2),
        _listing("c", status=ListingStatus.SOLD, deal=5.0, minutes=3),
        _listing("d", status=ListingStatus.UNLISTED, minutes=4, group="G2"),
        _listing("e", deal=8.0, minutes=5, group="G2"),
    ]


def test_default_feed_is_active_newest_first() -> None:
    assert [l.item_id for l in filter_listings(_rows())] == ["e", "b", "a"]


def test_sold_unlisted_status_combines_terminal_rows() -> None:
    got = filter_listings(_rows(), status="sold-unlisted")
    assert [l.item_id for l in got] == ["d", "c"]


def test_deal_filters() -> None:
    assert [l.item_id for l in filter_listings(_rows(), deals_only=True)] == ["e", "a"]
    assert [l.item_id for l in filter_listings(_rows(), min_discount=10)] == ["a"]
    assert [l.item_id for l in filter_listings(_rows(), max_price=Decimal("40"))] == ["e", "a"]


def test_group_and_limit() -> None:
    assert [l.item_id for l in filter_listings(_rows(), status="all", group_id="G2")] == ["e", "d"]
    assert len(filter_listings(_rows(), status="all", limit=2)) == 2


def test_unknown_status_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported feed status"):
        filter_listings(_rows(), status="pending")
