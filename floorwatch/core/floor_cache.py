from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from floorwatch.core.caches import BoundedRecencyCache

_floor_logger = logging.getLogger("floorwatch.floor_cache")


class FloorPriceSource(Protocol):
    async def get_floor_price(self, group_id: str) -> Decimal | None: ...


@dataclass(frozen=True, slots=True)
class FloorEntry:
    group_id: str
    price: Decimal
    refreshed_at: float


class FloorPriceCache:
    def __init__(
        self,
        source: FloorPriceSource,
        *,
        ttl_seconds: float = 300,
        hard_ttl_seconds: float = 900,
        capacity: int = 300,
        refresh_timeout_seconds: float = 4.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.source = source
        self.ttl_seconds = max(1.0, float(ttl_seconds))
        self.hard_ttl_seconds = max(self.ttl_seconds, float(hard_ttl_seconds))
        self.refresh_timeout_seconds = max(0.1, float(refresh_timeout_seconds))
        self._now_fn = now_fn or time.time
        self._entries: BoundedRecencyCache[str, FloorEntry] = BoundedRecencyCache(
            capacity, now_fn=self._now_fn
        )
        self._inflight: dict[str, asyncio.Future[Decimal | None]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, group_id: str) -> Decimal | None:
        """Cached price regardless of age, without touching the source."""
        entry = self._entries.get(group_id)
        return entry.price if entry is not None else None

    def is_fresh(self, group_id: str) -> bool:
        entry = self._entries.get(group_id)
        if entry is None:
            return False
        return (float(self._now_fn()) - entry.refreshed_at) <= self.ttl_seconds

    async def get(self, group_id: str) -> Decimal | None:
        entry = self._entries.get(group_id)
        if entry is not None and self.is_fresh(group_id):
            return entry.price
        pending = self._inflight.get(group_id)
        if pending is not None:
            return await asyncio.shield(pending)
        future: asyncio.Future[Decimal | None] = asyncio.get_running_loop().create_future()
        self._inflight[group_id] = future
        try:
            price = await self.refresh(group_id)
            future.set_result(price)
            return price
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Waiters re-raise; mark retrieved so an unawaited future does not warn.
            future.exception()
            raise
        finally:
            self._inflight.pop(group_id, None)

    async def refresh(self, group_id: str) -> Decimal | None:
        try:
            price = await asyncio.wait_for(
                self.source.get_floor_price(group_id),
                timeout=self.refresh_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _floor_logger.warning("floor_refresh_failed group_id=%s error=%s", group_id, exc)
            price = None
        if price is None or price <= 0:
            return self._stale_or_evict(group_id)
        self._store(group_id, price)
        return price

    def update(self, group_id: str, observed_price: Decimal) -> bool:
        """Record an observed ask that undercuts the cached floor."""
        if observed_price <= 0:
            return False
        current = self._entries.get(group_id)
        if current is not None and observed_price >= current.price:
            return False
        self._store(group_id, observed_price)
        _floor_logger.debug(
            "floor_undercut group_id=%s old=%s new=%s",
            group_id,
            current.price if current is not None else None,
            observed_price,
        )
        return True

    async def warmup(self, group_ids: Iterable[str], *, batch_size: int = 10) -> int:
        unique_ids = list(dict.fromkeys(g for g in group_ids if g))
        size = max(1, int(batch_size))
        cached = 0
        for start in range(0, len(unique_ids), size):
            batch = unique_ids[start : start + size]
            results = await asyncio.gather(
                *(self.get(group_id) for group_id in batch),
                return_exceptions=True,
            )
            cached += sum(1 for r in results if isinstance(r, Decimal))
        _floor_logger.info(
            "floor_warmup_complete groups=%s cached=%s cache_size=%s",
            len(unique_ids),
            cached,
            len(self._entries),
        )
        return cached

    def _store(self, group_id: str, price: Decimal) -> None:
        evicted = self._entries.put(
            group_id,
            FloorEntry(group_id=group_id, price=price, refreshed_at=float(self._now_fn())),
        )
        if evicted:
            _floor_logger.debug("floor_cache_evicted count=%s", len(evicted))

    def _stale_or_evict(self, group_id: str) -> Decimal | None:
        entry = self._entries.get(group_id)
        if entry is None:
            return None
        if (float(self._now_fn()) - entry.refreshed_at) <= self.hard_ttl_seconds:
            return entry.price
        self._entries.pop(group_id)
        _floor_logger.info("floor_entry_expired group_id=%s", group_id)
        return None
