"""
Stratum LRU cache -- fixed-capacity recency cache for memory entries.

OrderedDict keeps keys in recency order: ``move_to_end`` on access and
``popitem(last=False)`` to evict, both O(1).
"""

from collections import OrderedDict
from typing import Any, Hashable, Optional


class LRUCache:
    """Recency cache with hit/miss statistics.

    ``max_size == 0`` disables caching entirely. A negative ``max_size`` is
    treated as unbounded: entries are kept and never evicted.
    """

    def __init__(self, max_size: int = 500):
        self.max_size = int(max_size)
        self._data: OrderedDict = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.max_size != 0

    @property
    def bounded(self) -> bool:
        return self.max_size > 0

    def get(self, key: Hashable) -> Optional[Any]:
        if key not in self._data:
            self.misses += 1
            return None
        self.hits += 1
        self._data.move_to_end(key)
        return self._data[key]

    def peek(self, key: Hashable, default: Optional[Any] = None) -> Optional[Any]:
        """Read without counting a hit/miss or refreshing recency."""
        return self._data.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        if not self.enabled:
            return
        if key in self._data:
            self._data.move_to_end(key)
        elif self.bounded and len(self._data) >= self.max_size:
            self._data.popitem(last=False)
        self._data[key] = value

    def delete(self, key: Hashable) -> bool:
        if key in self._data:
            del self._data[key]
            return True
        return False

    def clear(self) -> None:
        self._data.clear()

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0

    def keys(self):
        """Keys from least to most recently used."""
        return list(self._data.keys())

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
