"""Sweep-line interval index over edit target ranges.

Ranges are half-open ``[start, end)``; point inserts have ``start == end``.
``touching_pairs`` yields every pair of intervals whose closed extents meet
(``b.start <= a.end`` with ``a.start <= b.start``), which is a superset of the
pairs that can conflict.  Callers decide the exact relation with
``intersection`` and ``relation``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class Interval:
    start: int
    end: int
    key: str
    owner: str

    @property
    def is_point(self) -> bool:
        return self.start == self.end

    @property
    def length(self) -> int:
        return self.end - self.start


class Relation(str, Enum):
    DISJOINT = "disjoint"
    IDENTICAL = "identical"
    OVERLAPPING = "overlapping"


def intersection(a: Interval, b: Interval) -> int:
    return max(0, min(a.end, b.end) - max(a.start, b.start))


def relation(a: Interval, b: Interval, tolerance: int = 0) -> Relation:
    """Classify how two target ranges interact.

    Two point inserts at the same offset are OVERLAPPING (their order is
    ambiguous); a point strictly inside a range is OVERLAPPING; ranges that
    merely touch are DISJOINT.
    """
    if a.is_point and b.is_point:
        return Relation.OVERLAPPING if a.start == b.start else Relation.DISJOINT
    if a.start == b.start and a.end == b.end:
        return Relation.IDENTICAL
    if a.is_point or b.is_point:
        point, span = (a, b) if a.is_point else (b, a)
        return Relation.OVERLAPPING if span.start < point.start < span.end else Relation.DISJOINT
    return Relation.OVERLAPPING if intersection(a, b) > tolerance else Relation.DISJOINT


def touching_pairs(intervals: Iterable[Interval]) -> Iterator[tuple[Interval, Interval]]:
    """Yield candidate pairs in sweep order (by start, then end, then key)."""
    ordered = sorted(intervals, key=lambda iv: (iv.start, iv.end, iv.key))
    active: list[Interval] = []
    for current in ordered:
        active = [iv for iv in active if iv.end >= current.start]
        for other in active:
            yield other, current
        active.append(current)


def cross_owner_pairs(intervals: Iterable[Interval]) -> Iterator[tuple[Interval, Interval]]:
    for a, b in touching_pairs(intervals):
        if a.owner != b.owner:
            yield a, b
