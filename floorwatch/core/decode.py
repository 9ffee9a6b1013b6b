"""Decoding of raw ledger events into listing domain events.

Payloads arrive either as a typed event envelope::

    {"type": "Event", "value": {"id": "...", "fields": [{"name": ..., "value": {...}}]}}

(optionally base64 encoded JSON), or as a flat JSON mapping of field name to value.
Field values in the envelope form are nested ``{"type": T, "value": v}`` wrappers,
with ``Optional`` wrappers around nullable values.

Decoding is total: anything that does not unambiguously match one of the listing
shapes comes back as ``Unrecognized`` with a reason string.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from floorwatch.core.deals import to_decimal
from floorwatch.core.types import (
    DecodedEvent,
    EventKind,
    ListingAvailable,
    ListingCompleted,
    ListingRemoved,
    RawEvent,
    Unrecognized,
)
from floorwatch.errors import DecodeError

_ITEM_ID_KEYS = ("nftID", "nftId", "nft_id", "itemId", "item_id")
_LISTING_REF_KEYS = ("listingResourceID", "listingResourceId", "listing_id", "listingRef", "listing_ref")
_PRICE_KEYS = ("price", "salePrice", "sale_price")
_SELLER_KEYS = ("storefrontAddress", "seller", "sellerAddress", "seller_ref")
_BUYER_KEYS = ("buyer", "buyerAddress", "buyer_ref")
_GROUP_KEYS = ("editionID", "editionId", "edition_id", "groupId", "group_id")
_ITEM_TYPE_KEYS = ("nftType", "nft_type", "itemType")
_PURCHASED_KEYS = ("purchased",)
_DEPOSIT_ID_KEYS = ("id", "nftID", "nft_id")
_DEPOSIT_TO_KEYS = ("to", "toAddress", "recipient")


def parse_payload(payload: Any) -> dict[str, Any]:
    """Return a flat ``name -> plain value`` mapping for a raw payload."""
    document = _load_document(payload)
    if not isinstance(document, dict):
        raise DecodeError(f"payload_not_mapping:{type(document).__name__}")
    value = document.get("value")
    if isinstance(value, dict) and isinstance(value.get("fields"), list):
        fields: dict[str, Any] = {}
        for field in value["fields"]:
            if not isinstance(field, dict) or not isinstance(field.get("name"), str):
                raise DecodeError("payload_field_malformed")
            fields[field["name"]] = _unwrap(field.get("value"))
        return fields
    if "fields" in document or document.get("type") == "Event":
        raise DecodeError("payload_envelope_malformed")
    return {str(k): _unwrap(v) for k, v in document.items()}


def _load_document(payload: Any) -> Any:
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, bytes | bytearray):
        payload = bytes(payload).decode("utf-8")
    if not isinstance(payload, str):
        raise DecodeError(f"payload_unsupported_type:{type(payload).__name__}")
    text = payload.strip()
    if not text:
        raise DecodeError("payload_empty")
    if text[0] not in "{[":
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise DecodeError("payload_base64_invalid") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError("payload_json_invalid") from exc


def _unwrap(node: Any) -> Any:
    # {"type": "Optional", "value": {"type": "UInt64", "value": "7"}} -> "7"
    while isinstance(node, dict):
        if "staticType" in node:
            static_type = node["staticType"]
            if isinstance(static_type, dict):
                return static_type.get("typeID")
            return static_type
        if "type" in node and "value" in node:
            node = node["value"]
            continue
        return node
    return node


def _first(fields: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in fields and fields[key] is not None:
            return fields[key]
    return None


def _optional_text(fields: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    value = _first(fields, keys)
    if value is None:
        return None
    if isinstance(value, dict | list | bool):
        raise DecodeError(f"field_not_scalar:{keys[0]}")
    text = str(value).strip()
    return text or None


def _address(fields: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    text = _optional_text(fields, keys)
    return text.lower() if text else None


def _price(fields: Mapping[str, Any]) -> Decimal:
    raw = _first(fields, _PRICE_KEYS)
    price = to_decimal(raw)
    if price is None:
        raise DecodeError("price_missing_or_invalid")
    return price


def _purchased(fields: Mapping[str, Any]) -> bool:
    raw = _first(fields, _PURCHASED_KEYS)
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in {"true", "false"}:
        return raw.strip().lower() == "true"
    raise DecodeError("purchased_flag_missing")


def _event_time(raw: RawEvent, now: datetime | None) -> datetime:
    if raw.block_timestamp is not None:
        return raw.block_timestamp
    if now is not None:
        return now
    raise DecodeError("timestamp_missing")


def _matches_item_type(fields: Mapping[str, Any], item_type_filter: str | None) -> bool:
    if not item_type_filter:
        return True
    item_type = _first(fields, _ITEM_TYPE_KEYS)
    if item_type is None:
        # Completion/removal events may omit the type; only reject a visible mismatch.
        return True
    return item_type_filter in str(item_type)


def decode_event(
    raw: RawEvent,
    kind: EventKind | None,
    *,
    item_type_filter: str | None = None,
    now: datetime | None = None,
) -> DecodedEvent:
    if kind is None:
        return Unrecognized("unknown_event_type", event_type=raw.event_type, height=raw.height)
    try:
        fields = parse_payload(raw.payload)
        if not _matches_item_type(fields, item_type_filter):
            return Unrecognized("foreign_item_type", event_type=raw.event_type, height=raw.height)
        at = _event_time(raw, now)
        if kind == EventKind.AVAILABLE:
            item_id = _optional_text(fields, _ITEM_ID_KEYS)
            if item_id is None:
                raise DecodeError("item_id_missing")
            if item_type_filter and _first(fields, _ITEM_TYPE_KEYS) is None:
                raise DecodeError("item_type_missing")
            return ListingAvailable(
                item_id=item_id,
                listing_ref=_optional_text(fields, _LISTING_REF_KEYS),
                group_id=_optional_text(fields, _GROUP_KEYS),
                price=_price(fields),
                seller_ref=_address(fields, _SELLER_KEYS),
                at=at,
                height=raw.height,
            )
        if kind == EventKind.COMPLETED:
            item_id = _optional_text(fields, _ITEM_ID_KEYS)
            listing_ref = _optional_text(fields, _LISTING_REF_KEYS)
            if item_id is None and listing_ref is None:
                raise DecodeError("completed_without_identity")
            return ListingCompleted(
                item_id=item_id,
                listing_ref=listing_ref,
                purchased=_purchased(fields),
                buyer_ref=_address(fields, _BUYER_KEYS),
                at=at,
                height=raw.height,
            )
        if kind == EventKind.REMOVED:
            item_id = _optional_text(fields, _ITEM_ID_KEYS)
            listing_ref = _optional_text(fields, _LISTING_REF_KEYS)
            if item_id is None and listing_ref is None:
                raise DecodeError("removed_without_identity")
            return ListingRemoved(item_id=item_id, listing_ref=listing_ref, at=at, height=raw.height)
        return Unrecognized(f"unsupported_kind:{kind}", event_type=raw.event_type, height=raw.height)
    except DecodeError as exc:
        return Unrecognized(str(exc), event_type=raw.event_type, height=raw.height)
    except (ValueError, TypeError, AttributeError) as exc:
        return Unrecognized(f"decode_error:{exc}", event_type=raw.event_type, height=raw.height)


def decode_deposit(raw: RawEvent) -> tuple[str, str] | None:
    """Return ``(item_id, recipient)`` for a deposit event, or None."""
    try:
        fields = parse_payload(raw.payload)
        item_id = _optional_text(fields, _DEPOSIT_ID_KEYS)
        recipient = _address(fields, _DEPOSIT_TO_KEYS)
    except (DecodeError, ValueError, TypeError, AttributeError):
        return None
    if not item_id or not recipient:
        return None
    return item_id, recipient


class EventDecoder:
    """Binds the configured event type names to listing event kinds."""

    def __init__(
        self,
        event_kinds: Mapping[str, EventKind],
        *,
        item_type_filter: str | None = None,
    ) -> None:
        self.event_kinds = dict(event_kinds)
        self.item_type_filter = item_type_filter or None

    def kind_of(self, event_type: str) -> EventKind | None:
        return self.event_kinds.get(event_type)

    def event_type_for(self, kind: EventKind) -> str | None:
        for event_type, mapped in self.event_kinds.items():
            if mapped == kind:
                return event_type
        return None

    def decode(
        self,
        raw: RawEvent,
        *,
        kind: EventKind | None = None,
        now: datetime | None = None,
    ) -> DecodedEvent:
        return decode_event(
            raw,
            kind or self.kind_of(raw.event_type),
            item_type_filter=self.item_type_filter,
            now=now,
        )
