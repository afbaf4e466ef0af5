"""
Position reindexing for a single column.

Every column keeps its tasks at positions 0..N-1. The planners here take the
column's current placements and return only the updates needed to keep that
true after an insert, a removal, or a move inside the column. They never
touch storage; callers apply the updates inside one transaction.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Placement:
    """A task's current slot in a column."""
    task_id: str
    position: int


@dataclass(frozen=True)
class PositionUpdate:
    task_id: str
    old: int
    new: int


def end_index(placements: Sequence[Placement]) -> int:
    """Next free slot: max(position) + 1, or 0 for an empty column."""
    if not placements:
        return 0
    return max(p.position for p in placements) + 1


def clamp_insert_index(placements: Sequence[Placement], index: Optional[int]) -> int:
    """Resolve an insertion index; None or past-the-end means append."""
    last = end_index(placements)
    if index is None or index > last:
        return last
    return index


def plan_insert(placements: Sequence[Placement], index: Optional[int] = None) -> Tuple[int, List[PositionUpdate]]:
    """
    Open a slot for a task entering the column.

    Returns (slot, updates): every task at position >= slot moves down by one.
    """
    slot = clamp_insert_index(placements, index)
    updates = [
        PositionUpdate(p.task_id, p.position, p.position + 1)
        for p in placements
        if p.position >= slot
    ]
    return slot, updates


def plan_remove(placements: Sequence[Placement], index: int) -> List[PositionUpdate]:
    """Close the gap left at `index`: every task after it moves up by one."""
    return [
        PositionUpdate(p.task_id, p.position, p.position - 1)
        for p in placements
        if p.position > index
    ]


def plan_move_within(placements: Sequence[Placement], task_id: str, old: int, new: int) -> Tuple[int, List[PositionUpdate]]:
    """
    Move one task inside its column from `old` to `new`.

    Returns (slot, sibling updates). The moved task itself is not in the
    updates; the caller writes `slot` for it. `new` is clamped to the last slot.
    """
    last = max(len(placements) - 1, 0)
    new = min(new, last)
    if old == new:
        return old, []

    updates: List[PositionUpdate] = []
    for p in placements:
        if p.task_id == task_id:
            continue
        if old < new and old < p.position <= new:
            updates.append(PositionUpdate(p.task_id, p.position, p.position - 1))
        elif new < old and new <= p.position < old:
            updates.append(PositionUpdate(p.task_id, p.position, p.position + 1))
    return new, updates


def is_dense(positions: Iterable[int]) -> bool:
    """True when positions are exactly 0..N-1 with no gaps or duplicates."""
    ordered = sorted(positions)
    return ordered == list(range(len(ordered)))


def plan_compact(placements: Sequence[Placement]) -> List[PositionUpdate]:
    """Renumber a drifted column to 0..N-1, keeping relative order (ties by id)."""
    ordered = sorted(placements, key=lambda p: (p.position, p.task_id))
    return [
        PositionUpdate(p.task_id, p.position, idx)
        for idx, p in enumerate(ordered)
        if p.position != idx
    ]
