"""Winner selection for competing trigger results.

All confidence/priority tie-breaking goes through ``compare_candidates`` so the
ordering rule lives in one place.
"""

from typing import Callable, Iterable, Optional, Tuple, TypeVar, Union

from src.models.question_logic import TriggerPriority

T = TypeVar("T")

PRIORITY_RANKS = {
    TriggerPriority.HIGH: 3,
    TriggerPriority.MEDIUM: 2,
    TriggerPriority.LOW: 1,
}
DEFAULT_PRIORITY_RANK = PRIORITY_RANKS[TriggerPriority.MEDIUM]

# (confidence, priority rank)
Candidate = Tuple[float, int]


def priority_rank(priority: Union[TriggerPriority, str, None]) -> int:
    """Map a priority tag to its rank; unknown or missing tags rank as medium."""
    if priority is None:
        return DEFAULT_PRIORITY_RANK
    try:
        return PRIORITY_RANKS[TriggerPriority(priority)]
    except ValueError:
        return DEFAULT_PRIORITY_RANK


def compare_candidates(a: Candidate, b: Candidate) -> int:
    """Order two candidates: positive when ``a`` beats ``b``, negative when
    ``b`` beats ``a``, 0 on a full tie.

    Higher confidence wins; equal confidence falls back to priority rank.
    """
    if a[0] != b[0]:
        return 1 if a[0] > b[0] else -1
    if a[1] != b[1]:
        return 1 if a[1] > b[1] else -1
    return 0


def select_best(items: Iterable[T], candidate: Callable[[T], Candidate]) -> Optional[T]:
    """Return the winning item, or None for an empty input.

    Full ties keep the earliest item, so the result only depends on the
    input order when confidence and priority are both equal.
    """
    best: Optional[T] = None
    best_candidate: Optional[Candidate] = None
    for item in items:
        current = candidate(item)
        if best_candidate is None or compare_candidates(current, best_candidate) > 0:
            best, best_candidate = item, current
    return best
