from __future__ import annotations
from typing import Dict, Generic, Hashable, Iterator, List, Sequence, Tuple, TypeVar

from .errors import NotFound

T = TypeVar("T")
H = TypeVar("H", bound=Hashable)


def remove_at(items: List[T], index: int) -> T:
    """Remove ``items[index]`` keeping the order of the remaining elements."""
    if index < 0 or index >= len(items):
        raise IndexError(f"index {index} out of range for {len(items)} items")
    return items.pop(index)


def find_index(items: Sequence[T], element: T) -> int:
    for i, item in enumerate(items):
        if item == element:
            return i
    return -1


def index_of(items: Sequence[T], element: T) -> int:
    i = find_index(items, element)
    if i < 0:
        raise NotFound("element not found")
    return i


def total(values: Sequence[int]) -> int:
    acc = 0
    for v in values:
        acc += v
    return acc


def sort_by_descending_score(keys: Sequence[T], scores: Sequence[int]) -> Tuple[List[T], List[int]]:
    """Stable sort of parallel lists, highest score first."""
    if len(keys) != len(scores):
        raise ValueError("keys and scores differ in length")
    order = sorted(range(len(keys)), key=lambda i: -scores[i])
    return [keys[i] for i in order], [scores[i] for i in order]


def excluded_indices(current: Sequence[T], proposed: Sequence[T]) -> List[int]:
    """Indices into ``current`` of the elements missing from ``proposed``."""
    return [i for i, item in enumerate(current) if find_index(proposed, item) < 0]


class OrderedSet(Generic[H]):
    """Insertion-ordered set; removal keeps the order of the others."""

    def __init__(self) -> None:
        self._items: List[H] = []
        self._index: Dict[H, int] = {}

    def add(self, item: H) -> bool:
        if item in self._index:
            return False
        self._index[item] = len(self._items)
        self._items.append(item)
        return True

    def remove(self, item: H) -> bool:
        i = self._index.pop(item, None)
        if i is None:
            return False
        remove_at(self._items, i)
        for j in range(i, len(self._items)):
            self._index[self._items[j]] = j
        return True

    def __contains__(self, item: object) -> bool:
        return item in self._index

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[H]:
        return iter(list(self._items))

    def to_list(self) -> List[H]:
        return list(self._items)
