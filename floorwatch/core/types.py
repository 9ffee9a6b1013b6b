from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any


class ListingStatus(StrEnum):
    ACTIVE = "active"
    SOLD = "sold"
    UNLISTED = "unlisted"


class EventKind(StrEnum):
    AVAILABLE = "available"
    COMPLETED = "completed"
    REMOVED = "removed"
    DEPOSIT = "deposit"


@dataclass(slots=True)
class Listing:
    item_id: str
    group_id: str
    price: Decimal
    status: ListingStatus
    listed_at: datetime
    updated_at: datetime
    listing_ref: str | None = None
    seller_ref: str | None = None
    buyer_ref: str | None = None
    floor_price: Decimal | None = None
    deal_percent: float | None = None
    listed_height: int | None = None

    def copy(self, **changes: Any) -> Listing:
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class RawEvent:
    event_type: str
    height: int
    payload: Any
    block_timestamp: datetime | None = None
    transaction_id: str | None = None
    event_index: int = 0


@dataclass(frozen=True, slots=True)
class ListingAvailable:
    item_id: str
    listing_ref: str | None
    group_id: str | None
    price: Decimal
    seller_ref: str | None
    at: datetime
    height: int = 0


@dataclass(frozen=True, slots=True)
class ListingCompleted:
    item_id: str | None
    listing_ref: str | None
    purchased: bool
    at: datetime
    buyer_ref: str | None = None
    height: int = 0


@dataclass(frozen=True, slots=True)
class ListingRemoved:
    item_id: str | None
    listing_ref: str | None
    at: datetime
    height: int = 0


@dataclass(frozen=True, slots=True)
class Unrecognized:
    reason: str
    event_type: str = ""
    height: int = 0


DecodedEvent = ListingAvailable | ListingCompleted | ListingRemoved | Unrecognized


@dataclass(frozen=True, slots=True)
class ListingUpdate:
    """Enriched listing record emitted to feed consumers."""

    kind: str
    listing: Listing
    reason: str = ""


@dataclass(frozen=True, slots=True)
class VerificationResult:
    item_id: str
    status: ListingStatus
    changed: bool
    reason: str


@dataclass(slots=True)
class CycleStats:
    from_height: int = 0
    to_height: int = 0
    fetched: int = 0
    decoded: int = 0
    decode_failures: int = 0
    applied: int = 0
    discarded: int = 0
    counts_by_kind: dict[str, int] = field(default_factory=dict)

    def bump(self, kind: str) -> None:
        self.counts_by_kind[kind] = self.counts_by_kind.get(kind, 0) + 1
