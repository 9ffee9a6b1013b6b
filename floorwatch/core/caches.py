from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class BoundedRecencyCache(Generic[K, V]):
    """Insertion-recency map with a hard capacity.

    Writing a key moves it to the newest position. When the capacity is exceeded the
    oldest ``evict_fraction`` of entries (at least one) is dropped in one pass.
    """

    def __init__(
        self,
        capacity: int,
        *,
        evict_fraction: float = 0.2,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self.evict_fraction = min(1.0, max(0.0, float(evict_fraction)))
        self._now_fn = now_fn or time.time
        self._entries: OrderedDict[K, tuple[V, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._entries))

    def get(self, key: K, default: V | None = None) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return default
        return entry[0]

    def touched_at(self, key: K) -> float | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry[1]

    def put(self, key: K, value: V) -> list[K]:
        self._entries[key] = (value, float(self._now_fn()))
        self._entries.move_to_end(key)
        return self._evict_overflow()

    def pop(self, key: K) -> V | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        return entry[0]

    def clear(self) -> None:
        self._entries.clear()

    def values(self) -> list[V]:
        return [value for value, _ in self._entries.values()]

    def _evict_overflow(self) -> list[K]:
        if len(self._entries) <= self.capacity:
            return []
        to_remove = max(1, int(len(self._entries) * self.evict_fraction))
        to_remove = max(to_remove, len(self._entries) - self.capacity)
        evicted: list[K] = []
        for _ in range(to_remove):
            key, _ = self._entries.popitem(last=False)
            evicted.append(key)
        return evicted
