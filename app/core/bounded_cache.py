"""
Bounded in-memory cache with per-entry TTL.

Used for the per-tenant token cache and the remote price cache. Capacity is
enforced by evicting the least recently used entry; expiry is checked lazily
on read and eagerly through purge_expired().
"""
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Iterator, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class BoundedTTLCache(Generic[K, V]):
    """מפה מוגבלת בגודל עם תפוגה לכל רשומה (LRU בגלישה)"""

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # key -> (expires_at_monotonic, value)
        self._data: "OrderedDict[K, tuple[float, V]]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return self.get(key, _MISSING, count=False) is not _MISSING  # type: ignore[arg-type]

    def get(self, key: K, default: Any = None, *, count: bool = True) -> Any:
        entry = self._data.get(key)
        if entry is None:
            if count:
                self.misses += 1
            return default

        expires_at, value = entry
        if expires_at <= self._clock():
            del self._data[key]
            if count:
                self.misses += 1
            return default

        self._data.move_to_end(key)
        if count:
            self.hits += 1
        return value

    def set(self, key: K, value: V, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if key in self._data:
            del self._data[key]
        self._data[key] = (self._clock() + ttl, value)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)
            self.evictions += 1

    def pop(self, key: K, default: Any = None) -> Any:
        entry = self._data.pop(key, None)
        if entry is None:
            return default
        return entry[1]

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    def evict_where(self, predicate: Callable[[K, V], bool]) -> int:
        """מחיקת רשומות שעונות על תנאי (למשל טוקן שפג תוקפו לפני ה-TTL)"""
        doomed = [key for key, (_, value) in self._data.items() if predicate(key, value)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def keys(self) -> Iterator[K]:
        return iter(list(self._data.keys()))

    def clear(self) -> None:
        self._data.clear()

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._data),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }
