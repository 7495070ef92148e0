"""Dense 1..N positions for run-list entries and race rosters.

Every mutation runs in one transaction that first locks the owning collection
row. Position writes go through :func:`apply_positions`, which parks the new
values as negatives and flips them in a second statement so the unique
``(collection, position)`` constraint never sees a transient duplicate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar

from sqlalchemy import case, func, select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from raceboard import config
from raceboard.database import atomic
from raceboard.errors import (
    ConsistencyViolation,
    InvalidArgument,
    NotFound,
    is_transient,
    translate_store_error,
)
from raceboard.models import Race, RaceMember, RunList, RunListEntry, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields an entry owns for ordering purposes; payload updates may not touch them.
PROTECTED_FIELDS = frozenset({"id", "position", "created_at"})


@dataclass(frozen=True)
class CollectionKind:
    """
    One family of ordered collections. A kind without ``collection_model``
    is a single table-wide ordering: its members are the rows that hold a
    position, and ``collection_id`` is ignored.
    """

    label: str
    entry_label: str
    collection_model: Optional[type]
    entry_model: type
    collection_key: Optional[str]

    def scope(self, collection_id):
        if self.collection_key is None:
            return self.entry_model.position.is_not(None)
        return getattr(self.entry_model, self.collection_key) == collection_id

    def owns(self, entry, collection_id) -> bool:
        if self.collection_key is None:
            return entry.position is not None
        return getattr(entry, self.collection_key) == collection_id

    def describe(self, collection_id) -> str:
        if self.collection_key is None:
            return self.label.lower()
        return f"{self.label.lower()} {collection_id}"


RUN_LIST = CollectionKind(
    label="Run list",
    entry_label="Entry",
    collection_model=RunList,
    entry_model=RunListEntry,
    collection_key="run_list_id",
)

RACE_ROSTER = CollectionKind(
    label="Race",
    entry_label="Race member",
    collection_model=Race,
    entry_model=RaceMember,
    collection_key="race_id",
)

ACTIVE_RACES = CollectionKind(
    label="Active races",
    entry_label="Race",
    collection_model=None,
    entry_model=Race,
    collection_key=None,
)


def run_mutation(db: Session, work: Callable[[], T], description: str) -> T:
    """
    Run ``work`` inside one transaction. A transient store failure is retried
    once after a short backoff; a second failure becomes TransientStoreError.
    """
    attempts = 2
    for attempt in range(1, attempts + 1):
        try:
            with atomic(db):
                return work()
        except DBAPIError as exc:
            if is_transient(exc) and attempt < attempts:
                logger.warning(
                    "%s hit a transient store error, retrying in %.2fs: %s",
                    description,
                    config.STORE_RETRY_BACKOFF_SECONDS,
                    exc.orig,
                )
                time.sleep(config.STORE_RETRY_BACKOFF_SECONDS)
                continue
            raise translate_store_error(exc) from exc
    raise AssertionError("unreachable")


def lock_collection(db: Session, kind: CollectionKind, collection_id: int):
    """Take the per-collection write lock, or raise NotFound."""

    model = kind.collection_model
    if model is None:
        # No owning row to lock. SQLite already holds the write lock from BEGIN IMMEDIATE.
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"LOCK TABLE {kind.entry_model.__tablename__} IN SHARE ROW EXCLUSIVE MODE"))
        return None
    collection = db.scalar(select(model).where(model.id == collection_id).with_for_update())
    if collection is None:
        raise NotFound(f"{kind.label} not found")
    collection.updated_at = utcnow()
    db.flush()
    return collection


def load_entries(db: Session, kind: CollectionKind, collection_id: int, lock: bool = False) -> list:
    model = kind.entry_model
    stmt = select(model).where(kind.scope(collection_id)).order_by(model.position.asc(), model.id.asc())
    if lock:
        stmt = stmt.with_for_update()
    return list(db.scalars(stmt).all())


def check_dense(kind: CollectionKind, collection_id: int, entries: Sequence[Any]) -> None:
    positions = [e.position for e in entries]
    if sorted(positions) != list(range(1, len(positions) + 1)):
        raise ConsistencyViolation(
            f"{kind.describe(collection_id)} has positions {sorted(positions)}, "
            f"expected 1..{len(positions)}"
        )


def apply_positions(
    db: Session, kind: CollectionKind, collection_id: int, assignments: Dict[int, int]
) -> None:
    """Write ``{entry_id: new_position}`` as one batch inside the open transaction."""

    if not assignments:
        return
    model = kind.entry_model
    parked = db.execute(
        update(model)
        .where(model.id.in_(list(assignments)), kind.scope(collection_id))
        .values(position=case({eid: -pos for eid, pos in assignments.items()}, value=model.id))
        .execution_options(synchronize_session=False)
    )
    if parked.rowcount != len(assignments):
        raise ConsistencyViolation(
            f"{kind.describe(collection_id)}: expected to move {len(assignments)} rows, "
            f"matched {parked.rowcount}"
        )
    db.execute(
        update(model)
        .where(kind.scope(collection_id), model.position < 0)
        .values(position=-model.position)
        .execution_options(synchronize_session=False)
    )
    db.expire_all()


class OrderedCollectionManager:
    def __init__(self, kind: CollectionKind) -> None:
        self.kind = kind

    def get_collection_or_404(self, db: Session, collection_id: int):
        if self.kind.collection_model is None:
            return None
        collection = db.get(self.kind.collection_model, collection_id)
        if collection is None:
            raise NotFound(f"{self.kind.label} not found")
        return collection

    def get_entry_or_404(self, db: Session, collection_id: int, entry_id: int):
        entry = db.get(self.kind.entry_model, entry_id)
        if entry is None or not self.kind.owns(entry, collection_id):
            raise NotFound(f"{self.kind.entry_label} not found")
        return entry

    def list(self, db: Session, collection_id: int) -> list:
        self.get_collection_or_404(db, collection_id)
        return load_entries(db, self.kind, collection_id)

    def append(
        self,
        db: Session,
        collection_id: int,
        guard: Optional[Callable[[list], None]] = None,
        **payload: Any,
    ):
        """
        Insert at max(position) + 1. ``guard`` sees the locked, current entries
        and may raise to refuse the insert (e.g. a duplicate race member).
        """
        kind = self.kind

        def work():
            lock_collection(db, kind, collection_id)
            entries = load_entries(db, kind, collection_id)
            check_dense(kind, collection_id, entries)
            if guard is not None:
                guard(entries)
            position = (max(e.position for e in entries) + 1) if entries else 1
            if kind.collection_key is not None:
                payload[kind.collection_key] = collection_id
            entry = kind.entry_model(position=position, **payload)
            db.add(entry)
            db.flush()
            return entry

        entry = run_mutation(db, work, f"append to {kind.describe(collection_id)}")
        db.refresh(entry)
        logger.info(
            "%s %s appended to %s at position %s",
            kind.entry_label, entry.id, kind.describe(collection_id), entry.position,
        )
        return entry

    def remove(self, db: Session, collection_id: int, entry_id: int) -> None:
        kind = self.kind

        def work():
            lock_collection(db, kind, collection_id)
            entries = load_entries(db, kind, collection_id)
            check_dense(kind, collection_id, entries)
            target = next((e for e in entries if e.id == entry_id), None)
            if target is None:
                raise NotFound(f"{kind.entry_label} not found")
            removed_position = target.position
            db.delete(target)
            db.flush()
            apply_positions(
                db,
                kind,
                collection_id,
                {e.id: e.position - 1 for e in entries if e.position > removed_position},
            )
            return removed_position

        removed_position = run_mutation(db, work, f"remove from {kind.describe(collection_id)}")
        logger.info(
            "%s %s removed from %s (was position %s)",
            kind.entry_label, entry_id, kind.describe(collection_id), removed_position,
        )

    def update_payload(self, db: Session, collection_id: int, entry_id: int, fields: Dict[str, Any]):
        kind = self.kind
        forbidden = set(fields) & (PROTECTED_FIELDS | {kind.collection_key} - {None})
        if forbidden:
            raise InvalidArgument(f"Cannot update {', '.join(sorted(forbidden))} through a payload update")
        unknown = [name for name in fields if not hasattr(kind.entry_model, name)]
        if unknown:
            raise InvalidArgument(f"Unknown field(s): {', '.join(sorted(unknown))}")

        def work():
            entry = self.get_entry_or_404(db, collection_id, entry_id)
            for name, value in fields.items():
                setattr(entry, name, value)
            entry.updated_at = utcnow()
            db.flush()
            return entry

        entry = run_mutation(db, work, f"update {kind.entry_label.lower()} {entry_id}")
        db.refresh(entry)
        return entry

    def count(self, db: Session, collection_id: int) -> int:
        return db.scalar(
            select(func.count()).select_from(self.kind.entry_model).where(self.kind.scope(collection_id))
        ) or 0


run_list_entries = OrderedCollectionManager(RUN_LIST)
race_members = OrderedCollectionManager(RACE_ROSTER)
active_races = OrderedCollectionManager(ACTIVE_RACES)
