"""Ordered key-value storage capability used by collection indexes.

The index is written purely against `OrderedKVStore`: get/put/delete by key
plus ascending, inclusive range iteration. Any engine offering that
capability can back a collection; `InMemoryOrderedStore` is the default.
"""

from bisect import bisect_left, bisect_right, insort
from collections.abc import Iterator
from typing import Any, Protocol


class OrderedKVStore(Protocol):
    """Protocol for ordered key-value stores with string keys."""

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under `key`, or `default`."""
        ...

    def put(self, key: str, value: Any) -> None:
        """Insert or replace the value under `key`."""
        ...

    def delete(self, key: str) -> bool:
        """Remove `key`. Returns False if it was absent."""
        ...

    def range(self, low: str, high: str, limit: int | None = None) -> Iterator[tuple[str, Any]]:
        """Yield (key, value) pairs with low <= key <= high in ascending order."""
        ...

    def items(self) -> Iterator[tuple[str, Any]]:
        """Yield every (key, value) pair in ascending key order."""
        ...

    def clear(self) -> None:
        ...

    def __len__(self) -> int: ...

    def __contains__(self, key: object) -> bool: ...


class InMemoryOrderedStore:
    """Dict-backed store keeping a sorted key list for range scans.

    Point operations are O(1) lookups plus O(log n) bisection on writes;
    range scans are O(log n + m).
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._keys: list[str] = []

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        if key not in self._data:
            insort(self._keys, key)
        self._data[key] = value

    def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        i = bisect_left(self._keys, key)
        del self._keys[i]
        return True

    def range(self, low: str, high: str, limit: int | None = None) -> Iterator[tuple[str, Any]]:
        if low > high:
            return
        start = bisect_left(self._keys, low)
        stop = bisect_right(self._keys, high)
        keys = self._keys[start:stop]
        if limit is not None:
            keys = keys[:limit]
        # Pairs are captured up front; writes during iteration are not observed
        yield from [(key, self._data[key]) for key in keys]

    def items(self) -> Iterator[tuple[str, Any]]:
        yield from [(key, self._data[key]) for key in self._keys]

    def clear(self) -> None:
        self._data.clear()
        self._keys.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data
