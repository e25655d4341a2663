"""Dense integer ordering for sibling records.

Columns within a board and cards within a column each carry an ``order``
rank. Within one parent the ranks are always exactly ``0..n-1``. The
functions here take an in-memory snapshot of the siblings and return a
*shift set*: the ``{id: new_rank}`` mapping that must be written back to
keep the ranks dense. Nothing in this module touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence


ShiftSet = dict[str, int]


@dataclass(frozen=True)
class Sibling:
    id: str
    order: int


class OrderingError(Exception):
    code = "ordering_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RankOutOfRange(OrderingError):
    code = "rank_out_of_range"


class SiblingNotFound(OrderingError):
    code = "sibling_not_found"


# === Precondition checks ===


def check_rank(rank: int, upper: int) -> Optional[OrderingError]:
    """Return an error unless ``0 <= rank <= upper``."""
    if rank < 0 or rank > upper:
        return RankOutOfRange(f"order must be between 0 and {upper}, got {rank}")
    return None


def check_member(siblings: Sequence[Sibling], entity_id: str) -> Optional[OrderingError]:
    if any(s.id == entity_id for s in siblings):
        return None
    return SiblingNotFound(f"{entity_id} is not part of this scope")


def is_dense(siblings: Iterable[Sibling]) -> bool:
    orders = sorted(s.order for s in siblings)
    return orders == list(range(len(orders)))


# === Operations ===


def append(siblings: Sequence[Sibling]) -> int:
    return len(siblings)


def insert(siblings: Sequence[Sibling], rank: int) -> ShiftSet:
    """Make room for a new sibling at ``rank``.

    Every sibling at or above ``rank`` moves up by one. ``rank`` may equal
    the sibling count, which is the same as appending.
    """
    error = check_rank(rank, len(siblings))
    if error is not None:
        raise error
    return {s.id: s.order + 1 for s in siblings if s.order >= rank}


def reposition(
    siblings: Sequence[Sibling],
    entity_id: str,
    current_rank: int,
    target_rank: int,
) -> ShiftSet:
    """Move ``entity_id`` from ``current_rank`` to ``target_rank``.

    Siblings between the two ranks shift one slot the opposite way. The
    result holds the moved entity and every displaced sibling; it is empty
    when the rank does not change.
    """
    error = check_member(siblings, entity_id) or check_rank(target_rank, len(siblings) - 1)
    if error is not None:
        raise error
    if target_rank == current_rank:
        return {}

    shifts: ShiftSet = {}
    if target_rank > current_rank:
        for s in siblings:
            if s.id != entity_id and current_rank <= s.order <= target_rank:
                shifts[s.id] = s.order - 1
    else:
        for s in siblings:
            if s.id != entity_id and target_rank <= s.order <= current_rank:
                shifts[s.id] = s.order + 1
    shifts[entity_id] = target_rank
    return shifts


def remove(siblings: Sequence[Sibling], removed_rank: int) -> ShiftSet:
    return {s.id: s.order - 1 for s in siblings if s.order > removed_rank}


def transfer(
    old_siblings: Sequence[Sibling],
    new_siblings_count: int,
    entity_id: str,
    old_rank: int,
) -> tuple[ShiftSet, int]:
    """Compact the old scope and append the entity to the new one."""
    error = check_member(old_siblings, entity_id)
    if error is not None:
        raise error
    remaining = [s for s in old_siblings if s.id != entity_id]
    return remove(remaining, old_rank), new_siblings_count


def compact(siblings: Sequence[Sibling]) -> ShiftSet:
    """Renumber a damaged scope to ``0..n-1``, keeping the current order.

    Only siblings whose rank actually changes are returned.
    """
    ranked = sorted(enumerate(siblings), key=lambda pair: (pair[1].order, pair[0]))
    return {s.id: rank for rank, (_, s) in enumerate(ranked) if s.order != rank}
