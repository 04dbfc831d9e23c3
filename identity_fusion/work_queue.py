from __future__ import annotations

from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Set, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class WorkQueue(Generic[K, V]):
    """A depletable keyed pool.

    Membership means "not yet classified". A key leaves the queue through
    ``take``/``take_where``/``drain`` exactly once and can never be put back
    during the same run.
    """

    def __init__(self, items: Iterable[Tuple[K, V]] = (), *, name: str = "queue") -> None:
        self.name = name
        self._items: Dict[K, V] = {}
        self._taken: Dict[K, str] = {}
        for key, value in items:
            self.put(key, value)

    def put(self, key: K, value: V) -> None:
        if key in self._taken:
            raise KeyError(f"{key!r} already left {self.name} (taken by {self._taken[key]})")
        self._items[key] = value

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._items))

    def peek(self, key: K) -> Optional[V]:
        return self._items.get(key)

    def take(self, key: K, *, by: str = "") -> Optional[V]:
        value = self._items.pop(key, None)
        if value is not None:
            self._taken[key] = by or "unknown"
        return value

    def take_where(self, predicate: Callable[[K, V], bool], *, by: str = "") -> List[V]:
        keys = [key for key, value in self._items.items() if predicate(key, value)]
        return [self.take(key, by=by) for key in keys]  # type: ignore[misc]

    def drain(self, batch_size: int, *, by: str = "") -> Iterator[List[V]]:
        """Yield and remove batches of at most ``batch_size`` items."""
        while self._items:
            keys = list(self._items)[:batch_size]
            yield [self.take(key, by=by) for key in keys]  # type: ignore[misc]

    def remaining(self) -> List[V]:
        return list(self._items.values())

    def remaining_keys(self) -> Set[K]:
        return set(self._items)

    def taken_by(self, key: K) -> Optional[str]:
        return self._taken.get(key)

    def taken_count(self, by: Optional[str] = None) -> int:
        if by is None:
            return len(self._taken)
        return sum(1 for phase in self._taken.values() if phase == by)

    def clear(self) -> None:
        for key in list(self._items):
            self.take(key, by="cleared")
