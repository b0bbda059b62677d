"""
Item processing state machine.

    raw -------> processing ---> processed
                     ^      \
                     |       --> error
                     |
    processed / error  (only with an explicit rerun)

Entering `processing` is done with a compare-and-swap on the stored status,
so a second concurrent run for the same item fails with
AlreadyProcessingError instead of racing the first one.
"""
from __future__ import annotations

from mosaic.errors import AlreadyProcessingError, InvalidTransitionError
from mosaic.schemas import ItemStatus

TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.RAW: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.PROCESSED, ItemStatus.ERROR}),
    ItemStatus.PROCESSED: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.ERROR: frozenset({ItemStatus.PROCESSING}),
}

RERUN_ONLY = frozenset({ItemStatus.PROCESSED, ItemStatus.ERROR})


def can_transition(current: ItemStatus, target: ItemStatus, rerun: bool = False) -> bool:
    current, target = ItemStatus(current), ItemStatus(target)
    if target not in TRANSITIONS[current]:
        return False
    if target == ItemStatus.PROCESSING and current in RERUN_ONLY:
        return rerun
    return True


def start_states(rerun: bool) -> frozenset[ItemStatus]:
    """Statuses from which a run may enter `processing`."""
    return frozenset(s for s in ItemStatus if can_transition(s, ItemStatus.PROCESSING, rerun))


def check_start(item_id: str, current: ItemStatus, rerun: bool) -> None:
    """Raise unless a run may start from `current`."""
    current = ItemStatus(current)
    if current == ItemStatus.PROCESSING:
        raise AlreadyProcessingError(item_id)
    if not can_transition(current, ItemStatus.PROCESSING, rerun):
        raise InvalidTransitionError(item_id, current.value, ItemStatus.PROCESSING.value)
