from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class _Item:
    value: Any
    version: Hashable
    expires: float


class ResultCache:
    """Bounded TTL cache whose entries also carry a data version.

    A lookup with a different version than the stored one is a miss, so a
    cached result goes stale as soon as the underlying data is written again.
    """

    def __init__(
        self,
        ttl: float = 900.0,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._items: OrderedDict[Hashable, _Item] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, version: Hashable) -> Any | None:
        item = self._items.get(key)
        if item is None or item.version != version or self._clock() > item.expires:
            if item is not None:
                del self._items[key]
            self.misses += 1
            return None
        self._items.move_to_end(key)
        self.hits += 1
        return item.value

    def set(self, key: Hashable, value: Any, version: Hashable) -> None:
        if key in self._items:
            del self._items[key]
        while len(self._items) >= self.max_size:
            self._items.popitem(last=False)
        self._items[key] = _Item(value=value, version=version, expires=self._clock() + self.ttl)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
