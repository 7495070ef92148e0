from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, joinedload, selectinload

from raceboard import config
from raceboard.database import atomic
from raceboard.errors import Conflict, ConsistencyViolation, InvalidArgument, NotFound, translate_store_error
from raceboard.leaderboard import DriverSummary, LeaderboardEntry, build_leaderboard, summarize_driver
from raceboard.models import (
    Car,
    LapTime,
    Part,
    Race,
    RaceMember,
    RunListEntry,
    RunListEntryCar,
    Track,
    User,
    utcnow,
)
from raceboard.ordering import (
    ACTIVE_RACES,
    active_races,
    apply_positions,
    check_dense,
    load_entries,
    lock_collection,
    race_members,
    run_list_entries,
    run_mutation,
)
from raceboard.rules import (
    MAX_LAP_MS,
    MIN_LAP_MS,
    format_lap_time,
    is_valid_lap_time,
    parse_lap_time,
    time_difference,
)
from raceboard.statistics import ScopeStatistics, scope_statistics

logger = logging.getLogger(__name__)

ACTIVE_ROLES = {"USER", "ADMIN"}


def get_or_404(db: Session, model: Any, obj_id: int, label: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise NotFound(f"{label} not found")
    return obj


def get_car_or_404(db: Session, car_id: int) -> Car:
    return get_or_404(db, Car, car_id, "Car")


def get_track_or_404(db: Session, track_id: int) -> Track:
    return get_or_404(db, Track, track_id, "Track")


def get_user_or_404(db: Session, user_id: int) -> User:
    return get_or_404(db, User, user_id, "User")


def get_lap_time_or_404(db: Session, lap_time_id: int) -> LapTime:
    return get_or_404(db, LapTime, lap_time_id, "Lap time")


# Serialisation -------------------------------------------------------------


def run_list_entry_out(entry: RunListEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "run_list_id": entry.run_list_id,
        "position": entry.position,
        "track_id": entry.track_id,
        "lobby_settings": entry.lobby_settings,
        "notes": entry.notes,
        "cars": [{"car_id": c.car_id, "build_name": c.build_name} for c in entry.cars],
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
    }


def race_member_out(member: RaceMember) -> dict[str, Any]:
    return {
        "id": member.id,
        "race_id": member.race_id,
        "position": member.position,
        "user_id": member.user_id,
        "gamertag": member.user.gamertag if member.user else None,
        "part_id": member.part_id,
        "updated_by_id": member.updated_by_id,
        "updated_at": member.updated_at,
    }


def lap_time_out(lap: LapTime) -> dict[str, Any]:
    return {
        "id": lap.id,
        "user_id": lap.user_id,
        "car_id": lap.car_id,
        "track_id": lap.track_id,
        "time_ms": lap.time_ms,
        "time": format_lap_time(lap.time_ms),
        "notes": lap.notes,
        "conditions": lap.conditions,
        "session_type": lap.session_type,
        "created_at": lap.created_at,
    }


def leaderboard_entry_out(row: LeaderboardEntry, leader_time: Optional[int] = None) -> dict[str, Any]:
    payload = asdict(row)
    payload["best_time_display"] = format_lap_time(row.best_time)
    payload["gap_to_leader"] = time_difference(row.best_time, leader_time) if leader_time is not None else None
    return payload


def driver_summary_out(summary: Optional[DriverSummary]) -> Optional[dict[str, Any]]:
    if summary is None:
        return None
    return {
        "driver_id": summary.driver_id,
        "lap_count": summary.lap_count,
        "best_time": summary.best_time,
        "average_time": summary.average_time,
        "rank": summary.rank,
        "recent_laps": [lap_time_out(lap) for lap in summary.recent_laps],
    }


def statistics_out(stats: ScopeStatistics) -> dict[str, Any]:
    record = stats.world_record
    return {
        "total_laps": stats.total_laps,
        "unique_drivers": stats.unique_drivers,
        "fastest_time": stats.fastest_time,
        "average_time": stats.average_time,
        "world_record": leaderboard_entry_out(record, record.best_time) if record else None,
        "last_activity": stats.last_activity,
        "recent_activity": [lap_time_out(lap) for lap in stats.recent_activity],
    }


# Run lists -----------------------------------------------------------------


def add_run_list_entry(
    db: Session,
    run_list_id: int,
    track_id: int,
    cars: Iterable[Dict[str, Any]],
    lobby_settings: Optional[str] = None,
    notes: Optional[str] = None,
) -> RunListEntry:
    run_list_entries.get_collection_or_404(db, run_list_id)
    get_track_or_404(db, track_id)

    cars = list(cars)
    car_ids = sorted({c["car_id"] for c in cars})
    if len(car_ids) != len(cars):
        raise InvalidArgument("Each car can only appear once per entry")
    found = db.scalars(select(Car.id).where(Car.id.in_(car_ids))).all()
    if len(found) != len(car_ids):
        raise NotFound("One or more cars not found")

    return run_list_entries.append(
        db,
        run_list_id,
        track_id=track_id,
        lobby_settings=lobby_settings,
        notes=notes or None,
        cars=[RunListEntryCar(car_id=c["car_id"], build_name=c.get("build_name")) for c in cars],
    )


# Race rosters --------------------------------------------------------------


def _default_tyre_id(db: Session) -> Optional[int]:
    return db.scalar(select(Part.id).where(Part.name == config.DEFAULT_TYRE_NAME))


def add_race_member(
    db: Session,
    race_id: int,
    user_id: int,
    part_id: Optional[int] = None,
    updated_by_id: Optional[int] = None,
) -> RaceMember:
    race_members.get_collection_or_404(db, race_id)
    user = get_user_or_404(db, user_id)
    if updated_by_id is not None:
        get_user_or_404(db, updated_by_id)
    if user.role not in ACTIVE_ROLES:
        raise InvalidArgument("User must be active (USER or ADMIN) to be added to a race")

    if part_id is None:
        part_id = _default_tyre_id(db)
    else:
        get_or_404(db, Part, part_id, "Part")

    def refuse_duplicates(members: list) -> None:
        if any(m.user_id == user_id for m in members):
            raise Conflict("User is already a member of this race")

    return race_members.append(
        db,
        race_id,
        guard=refuse_duplicates,
        user_id=user_id,
        part_id=part_id,
        updated_by_id=updated_by_id,
    )


# Races ---------------------------------------------------------------------


def race_out(race: Race) -> dict[str, Any]:
    return {
        "id": race.id,
        "name": race.name,
        "track_id": race.track_id,
        "is_active": race.is_active,
        "position": race.position,
        "updated_at": race.updated_at,
    }


def create_race(db: Session, name: str, track_id: Optional[int] = None, is_active: bool = True) -> Race:
    """Active races join the end of the active-race order; inactive ones hold no position."""

    if track_id is not None:
        get_track_or_404(db, track_id)
    if is_active:
        return active_races.append(db, None, name=name, track_id=track_id, is_active=True)

    race = Race(name=name, track_id=track_id, is_active=False)
    with atomic(db):
        db.add(race)
    db.refresh(race)
    return race


def set_race_active(db: Session, race_id: int, is_active: bool) -> Race:
    """
    Activating appends the race to the active order. Deactivating takes it
    out and closes the gap behind it in the same transaction.
    """
    get_or_404(db, Race, race_id, "Race")

    def work():
        lock_collection(db, ACTIVE_RACES, None)
        target = db.get(Race, race_id, populate_existing=True)
        if target.is_active == is_active:
            return
        entries = load_entries(db, ACTIVE_RACES, None)
        check_dense(ACTIVE_RACES, None, entries)
        positioned = {e.id: e.position for e in entries}

        if is_active:
            target.position = max(positioned.values(), default=0) + 1
            shifts = {}
        else:
            if race_id not in positioned:
                raise ConsistencyViolation(f"Race {race_id} is active but holds no position")
            removed = positioned[race_id]
            target.position = None
            shifts = {eid: pos - 1 for eid, pos in positioned.items() if pos > removed}
        target.is_active = is_active
        target.updated_at = utcnow()
        db.flush()
        apply_positions(db, ACTIVE_RACES, None, shifts)

    run_mutation(db, work, f"{'activate' if is_active else 'deactivate'} race {race_id}")
    race = db.get(Race, race_id)
    logger.info("Race %s is_active=%s position=%s", race_id, race.is_active, race.position)
    return race


def update_race(db: Session, race_id: int, fields: Dict[str, Any]) -> Race:
    race = get_or_404(db, Race, race_id, "Race")
    is_active = fields.pop("is_active", None)
    if fields.get("track_id") is not None:
        get_track_or_404(db, fields["track_id"])
    fields = {name: value for name, value in fields.items() if value is not None}
    if fields:
        with atomic(db):
            for name, value in fields.items():
                setattr(race, name, value)
            race.updated_at = utcnow()
    if is_active is not None:
        return set_race_active(db, race_id, is_active)
    db.refresh(race)
    return race


def active_races_out(db: Session) -> list[dict[str, Any]]:
    return [race_out(r) for r in active_races.list(db, None)]


# Lap times -----------------------------------------------------------------


def resolve_time_ms(time_ms: Optional[int], lap_time: Optional[str]) -> int:
    if time_ms is None and lap_time is not None:
        time_ms = parse_lap_time(lap_time)
        if time_ms is None:
            raise InvalidArgument("Lap time must look like 1:23.456")
    if time_ms is None:
        raise InvalidArgument("time_ms or lap_time is required")
    if not is_valid_lap_time(time_ms):
        raise InvalidArgument(
            f"Lap time must be between {format_lap_time(MIN_LAP_MS)} and {format_lap_time(MAX_LAP_MS)}"
        )
    return time_ms


def submit_lap_time(
    db: Session,
    user_id: int,
    car_id: int,
    track_id: int,
    time_ms: int,
    notes: Optional[str] = None,
    conditions: Optional[str] = None,
    session_type: str = "R",
) -> LapTime:
    get_user_or_404(db, user_id)
    get_car_or_404(db, car_id)
    get_track_or_404(db, track_id)

    lap = LapTime(
        user_id=user_id,
        car_id=car_id,
        track_id=track_id,
        time_ms=time_ms,
        notes=notes or None,
        conditions=conditions,
        session_type=session_type,
    )
    with atomic(db):
        db.add(lap)
    db.refresh(lap)
    logger.info("Lap %s recorded: user=%s car=%s track=%s time_ms=%s", lap.id, user_id, car_id, track_id, time_ms)
    return lap


def update_lap_time(db: Session, lap_time_id: int, fields: Dict[str, Any]) -> LapTime:
    lap = get_lap_time_or_404(db, lap_time_id)
    with atomic(db):
        for name, value in fields.items():
            setattr(lap, name, value)
        lap.updated_at = utcnow()
    db.refresh(lap)
    return lap


def delete_lap_time(db: Session, lap_time_id: int) -> tuple[int, int]:
    """Delete a lap and return its (car_id, track_id) scope."""

    lap = get_lap_time_or_404(db, lap_time_id)
    scope = (lap.car_id, lap.track_id)
    with atomic(db):
        db.delete(lap)
    logger.info("Lap %s deleted", lap_time_id)
    return scope


# Standings -----------------------------------------------------------------


def combo_lap_times(db: Session, car_id: int, track_id: int) -> list[LapTime]:
    """Every lap for the scope in one query, so standings and statistics agree."""

    try:
        return list(
            db.scalars(
                select(LapTime)
                .options(joinedload(LapTime.user))
                .where(LapTime.car_id == car_id, LapTime.track_id == track_id)
                .order_by(LapTime.time_ms.asc(), LapTime.created_at.asc())
            ).all()
        )
    except DBAPIError as exc:
        raise translate_store_error(exc) from exc


def combo_standings(
    db: Session, car_id: int, track_id: int, driver_id: Optional[int] = None
) -> dict[str, Any]:
    car = get_car_or_404(db, car_id)
    track = get_track_or_404(db, track_id)

    records = combo_lap_times(db, car_id, track_id)
    names = {r.user_id: r.user.gamertag for r in records if r.user is not None}
    leaderboard = build_leaderboard(records, names)
    summary = (
        summarize_driver(records, leaderboard, driver_id, config.RECENT_LAPS_LIMIT)
        if driver_id is not None
        else None
    )
    stats = scope_statistics(records, leaderboard, config.RECENT_LAPS_LIMIT)
    leader_time = leaderboard[0].best_time if leaderboard else None

    return {
        "car": {"id": car.id, "name": car.name, "slug": car.slug},
        "track": {"id": track.id, "name": track.name, "slug": track.slug},
        "leaderboard": [leaderboard_entry_out(row, leader_time) for row in leaderboard],
        "driver_summary": driver_summary_out(summary),
        "statistics": statistics_out(stats),
    }


def run_list_entries_out(db: Session, run_list_id: int) -> list[dict[str, Any]]:
    run_list_entries.get_collection_or_404(db, run_list_id)
    rows = db.scalars(
        select(RunListEntry)
        .options(selectinload(RunListEntry.cars))
        .where(RunListEntry.run_list_id == run_list_id)
        .order_by(RunListEntry.position.asc())
    ).all()
    return [run_list_entry_out(e) for e in rows]


def race_members_out(db: Session, race_id: int) -> list[dict[str, Any]]:
    return [race_member_out(m) for m in race_members.list(db, race_id)]
