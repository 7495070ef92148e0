from __future__ import annotations

import logging
from typing import Callable, List, Sequence

from sqlalchemy.orm import Session

from raceboard.errors import InvalidArgument, NotFound
from raceboard.ordering import (
    ACTIVE_RACES,
    RACE_ROSTER,
    RUN_LIST,
    CollectionKind,
    apply_positions,
    check_dense,
    load_entries,
    lock_collection,
    run_mutation,
)

logger = logging.getLogger(__name__)


def plan_order(current_ids: Sequence[int], ordered_ids: Sequence[int]) -> List[int]:
    """
    Full target order for a collection currently ordered as ``current_ids``.
    Ids in ``ordered_ids`` come first, in that order; the rest keep their
    relative order behind them.
    """
    if not ordered_ids:
        raise InvalidArgument("At least one entry id is required")
    if len(set(ordered_ids)) != len(ordered_ids):
        raise InvalidArgument("duplicate entry id")
    members = set(current_ids)
    if any(entry_id not in members for entry_id in ordered_ids):
        raise InvalidArgument("entry does not belong to this collection")

    explicit = set(ordered_ids)
    return list(ordered_ids) + [entry_id for entry_id in current_ids if entry_id not in explicit]


def plan_move(current_ids: Sequence[int], entry_id: int, new_position: int) -> List[int]:
    if entry_id not in current_ids:
        raise NotFound("Entry not found")
    if not 1 <= new_position <= len(current_ids):
        raise InvalidArgument(f"Position must be between 1 and {len(current_ids)}")
    reordered = [i for i in current_ids if i != entry_id]
    reordered.insert(new_position - 1, entry_id)
    return reordered


class ReorderCoordinator:
    def __init__(self, kind: CollectionKind) -> None:
        self.kind = kind

    def _apply(self, db: Session, collection_id: int, plan: Callable[[List[int]], List[int]], description: str) -> list:
        kind = self.kind

        def work():
            lock_collection(db, kind, collection_id)
            entries = load_entries(db, kind, collection_id, lock=True)
            check_dense(kind, collection_id, entries)
            current = {e.id: e.position for e in entries}
            target = plan([e.id for e in entries])
            changed = {
                entry_id: position
                for position, entry_id in enumerate(target, start=1)
                if current[entry_id] != position
            }
            apply_positions(db, kind, collection_id, changed)
            return len(changed)

        changed = run_mutation(db, work, description)
        logger.info("%s of %s moved %s entries", description, kind.describe(collection_id), changed)
        return load_entries(db, kind, collection_id)

    def reorder(self, db: Session, collection_id: int, ordered_ids: Sequence[int]) -> list:
        ordered_ids = list(ordered_ids)
        # Input that is malformed on its face never reaches the store.
        plan_order(ordered_ids, ordered_ids)
        return self._apply(db, collection_id, lambda current: plan_order(current, ordered_ids), "reorder")

    def move(self, db: Session, collection_id: int, entry_id: int, new_position: int) -> list:
        return self._apply(
            db,
            collection_id,
            lambda current: plan_move(current, entry_id, new_position),
            "move",
        )


run_list_reorder = ReorderCoordinator(RUN_LIST)
race_member_reorder = ReorderCoordinator(RACE_ROSTER)
active_race_order = ReorderCoordinator(ACTIVE_RACES)
