"""Retention of near-optimal grouping candidates."""

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence

ABSOLUTE_FLUSH_GAP_TOLERANCE = 10


@dataclass
class MemoryedGroup:
    """A candidate labelling of the used filaments.

    ``prefer_level`` dominates ``cost``: a higher level always ranks first,
    and within a level the lower cost ranks first.
    """

    group: List[int]
    cost: float
    prefer_level: int = 0

    def rank_key(self):
        return (-self.prefer_level, self.cost)

    def outranks(self, other: "MemoryedGroup") -> bool:
        return self.rank_key() < other.rank_key()


def _within_tolerance(
    candidate: MemoryedGroup, best: MemoryedGroup, gap_threshold: float, absolute_tolerance: float
) -> bool:
    if best.cost == 0:
        return abs(candidate.cost - best.cost) <= absolute_tolerance
    return abs(candidate.cost - best.cost) / best.cost <= gap_threshold


@dataclass
class CandidatePool:
    """Best-first collection of candidates from the highest prefer level seen.

    Every retained cost stays within ``gap_threshold`` (relative) of the best
    cost, or within ``absolute_tolerance`` when the best cost is zero.
    """

    absolute_tolerance: float = ABSOLUTE_FLUSH_GAP_TOLERANCE
    _items: List[MemoryedGroup] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[MemoryedGroup]:
        return iter(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    @property
    def best(self) -> MemoryedGroup:
        if not self._items:
            raise IndexError("best of an empty candidate pool")
        return self._items[0]

    def clear(self) -> None:
        self._items = []

    def _insert(self, item: MemoryedGroup) -> None:
        # stable: equal keys keep insertion order
        pos = len(self._items)
        key = item.rank_key()
        while pos > 0 and key < self._items[pos - 1].rank_key():
            pos -= 1
        self._items.insert(pos, item)

    def update(self, item: MemoryedGroup, gap_threshold: float) -> None:
        """Offer a candidate to the pool.

        Args:
            item: Candidate to offer
            gap_threshold: Relative cost gap accepted around the best cost
        """
        if not self._items:
            self._items.append(item)
            return

        best = self._items[0]
        if item.prefer_level < best.prefer_level:
            return

        if item.prefer_level > best.prefer_level:
            self._items = [item]
            return

        if best.cost <= item.cost:
            if _within_tolerance(item, best, gap_threshold, self.absolute_tolerance):
                self._insert(item)
            return

        # new best within the tier: re-test the old members against it
        previous = self._items
        self._items = [item]
        for old in previous:
            if _within_tolerance(old, item, gap_threshold, self.absolute_tolerance):
                self._insert(old)

    def groups(self) -> List[List[int]]:
        """Retained label vectors, best first."""
        return [list(item.group) for item in self._items]

    def expand(
        self, used_filaments: Sequence[int], total_filament_num: int, fill: int = 0
    ) -> List[List[int]]:
        """Retained labels re-indexed to full filament vectors; unused filaments get ``fill``."""
        result = []
        for item in self._items:
            labels = [fill] * total_filament_num
            for idx, label in enumerate(item.group):
                labels[used_filaments[idx]] = label
            result.append(labels)
        return result


def update_memoryed_groups(item: MemoryedGroup, gap_threshold: float, pool: CandidatePool) -> None:
    pool.update(item, gap_threshold)
