"""Error taxonomy shared by the ordering, leaderboard and HTTP layers.

Each error is an ``HTTPException`` so the service layer can raise it directly
and FastAPI turns it into the matching status code.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

consistency_logger = logging.getLogger("raceboard.consistency")


class RaceboardError(HTTPException):
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail)


class NotFound(RaceboardError):
    status_code = 404


class InvalidArgument(RaceboardError):
    status_code = 400


class Conflict(RaceboardError):
    status_code = 409


class TransientStoreError(RaceboardError):
    """Lock contention, timeout or a dropped connection. Safe to retry."""

    status_code = 503


class ConsistencyViolation(RaceboardError):
    """Stored positions no longer form 1..N. Never repaired automatically."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        consistency_logger.error("Consistency violation: %s", detail)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


POSITION_CONSTRAINTS = ("uq_run_list_entry_position", "uq_race_member_position", "uq_race_position")


def is_position_conflict(exc: IntegrityError) -> bool:
    # PostgreSQL names the constraint; SQLite names the columns.
    message = str(exc.orig)
    return any(name in message for name in POSITION_CONSTRAINTS) or ".position" in message


def translate_store_error(exc: DBAPIError) -> RaceboardError:
    """Map a SQLAlchemy failure onto the taxonomy above."""

    if isinstance(exc, IntegrityError):
        if is_position_conflict(exc):
            return ConsistencyViolation(f"Store rejected position write: {exc.orig}")
        if "unique" in str(exc.orig).lower():
            return Conflict("Record already exists")
        if "foreign key" in str(exc.orig).lower():
            return InvalidArgument("Request references a record that does not exist")
        return InvalidArgument("Request breaks a store constraint")
    if is_transient(exc):
        return TransientStoreError("Store temporarily unavailable, please retry")
    return RaceboardError(f"Store error: {exc.orig}")


__all__ = [
    "Conflict",
    "ConsistencyViolation",
    "InvalidArgument",
    "NotFound",
    "RaceboardError",
    "TransientStoreError",
    "is_position_conflict",
    "is_transient",
    "translate_store_error",
]
