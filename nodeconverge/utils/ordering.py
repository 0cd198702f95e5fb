"""Order-preserving merges of phase sequences."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TypeVar

from nodeconverge.utils.exceptions import ConfigurationError

T = TypeVar("T")


def total_order_merge(*sequences: Sequence[T]) -> list[T]:
    """Merge sequences into one list that respects the order of each input.

    Every element appears once. When two elements are not ordered by any
    input they keep the order of their first appearance.

    Example:
        >>> total_order_merge(["settings", "configure"], ["bootstrap", "configure", "test"])
        ['settings', 'bootstrap', 'configure', 'test']

    Raises:
        ConfigurationError: if the inputs order two elements both ways.
    """
    first_seen: dict[T, int] = {}
    successors: dict[T, set[T]] = {}
    predecessors: dict[T, int] = {}

    for seq in sequences:
        for item in seq:
            if item not in first_seen:
                first_seen[item] = len(first_seen)
                successors[item] = set()
                predecessors[item] = 0
        for before, after in zip(seq, seq[1:]):
            if before != after and after not in successors[before]:
                successors[before].add(after)
                predecessors[after] += 1

    ready = sorted((i for i, n in predecessors.items() if n == 0), key=first_seen.__getitem__)
    merged: list[T] = []
    while ready:
        item = ready.pop(0)
        merged.append(item)
        for nxt in successors[item]:
            predecessors[nxt] -= 1
            if predecessors[nxt] == 0:
                ready.append(nxt)
        ready.sort(key=first_seen.__getitem__)

    if len(merged) != len(first_seen):
        conflicting = [i for i, n in predecessors.items() if n > 0]
        raise ConfigurationError(f"Conflicting phase orderings for: {conflicting}")
    return merged


def distinct(items: Iterable[T]) -> list[T]:
    """Return items without duplicates, keeping first occurrences."""
    seen: list[T] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
