from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.orm import Session

from raceboard.config import ALLOWED_CORS_ORIGINS, configure_logging
from raceboard.database import Base, atomic, engine, get_db
from raceboard.models import Part, Race, RunList
from raceboard.ordering import race_members, run_list_entries
from raceboard.reorder import active_race_order, race_member_reorder, run_list_reorder
from raceboard.schemas import (
    LapTimeCreate,
    LapTimeUpdate,
    MoveRequest,
    RaceCreate,
    RaceMemberCreate,
    RaceMemberUpdate,
    RaceUpdate,
    ReorderRequest,
    RunListCreate,
    RunListEntryCreate,
    RunListEntryUpdate,
)
from raceboard.services import (
    active_races_out,
    add_race_member,
    add_run_list_entry,
    combo_standings,
    create_race,
    delete_lap_time,
    get_lap_time_or_404,
    get_or_404,
    get_track_or_404,
    get_user_or_404,
    lap_time_out,
    race_member_out,
    race_members_out,
    race_out,
    resolve_time_ms,
    run_list_entries_out,
    run_list_entry_out,
    submit_lap_time,
    update_lap_time,
    update_race,
)

logger = logging.getLogger(__name__)


class LiveHub:
    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, channel: str, ws: WebSocket) -> None:
        await ws.accept()
        self._connections[channel].add(ws)

    def disconnect(self, channel: str, ws: WebSocket) -> None:
        if channel in self._connections and ws in self._connections[channel]:
            self._connections[channel].remove(ws)
            if not self._connections[channel]:
                del self._connections[channel]

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> None:
        targets = list(self._connections.get(channel, set()))
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception:
                logger.info("Dropping websocket on %s after failed send", channel)
                self.disconnect(channel, ws)


def race_channel(race_id: int) -> str:
    return f"race:{race_id}"


def combo_channel(car_id: int, track_id: int) -> str:
    return f"combo:{car_id}:{track_id}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    logger.info("Raceboard started")
    yield


app = FastAPI(
    title="Raceboard - Racing Community API",
    version="1.0.0",
    description="Run lists, race rosters, lap times and car/track leaderboards.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

hub = LiveHub()


async def _broadcast_roster(db: Session, race_id: int) -> list[dict[str, Any]]:
    members = await run_in_threadpool(race_members_out, db, race_id)
    await hub.broadcast(
        race_channel(race_id),
        {"type": "race_members", "race_id": race_id, "members": jsonable(members)},
    )
    return members


async def _broadcast_standings(db: Session, car_id: int, track_id: int) -> None:
    standings = await run_in_threadpool(combo_standings, db, car_id, track_id)
    await hub.broadcast(combo_channel(car_id, track_id), {"type": "standings", **jsonable(standings)})


def jsonable(payload: Any) -> Any:
    return jsonable_encoder(payload)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# Run lists -----------------------------------------------------------------


def _run_list_summary(db: Session, run_list: RunList) -> dict[str, Any]:
    return {
        "id": run_list.id,
        "name": run_list.name,
        "description": run_list.description,
        "created_by_id": run_list.created_by_id,
        "is_active": run_list.is_active,
        "entry_count": run_list_entries.count(db, run_list.id),
        "updated_at": run_list.updated_at,
    }


@app.post("/run-lists", status_code=201)
def create_run_list(payload: RunListCreate, db: Session = Depends(get_db)):
    get_user_or_404(db, payload.created_by_id)
    run_list = RunList(
        name=payload.name.strip(),
        description=payload.description,
        created_by_id=payload.created_by_id,
        is_active=payload.is_active,
    )
    with atomic(db):
        db.add(run_list)
    db.refresh(run_list)
    return _run_list_summary(db, run_list)


@app.get("/run-lists")
def list_run_lists(db: Session = Depends(get_db)):
    rows = db.scalars(select(RunList).order_by(RunList.updated_at.desc())).all()
    return [_run_list_summary(db, r) for r in rows]


@app.get("/run-lists/{run_list_id}")
def get_run_list(run_list_id: int, db: Session = Depends(get_db)):
    run_list = get_or_404(db, RunList, run_list_id, "Run list")
    return {**_run_list_summary(db, run_list), "entries": run_list_entries_out(db, run_list_id)}


@app.get("/run-lists/{run_list_id}/entries")
def list_run_list_entries(run_list_id: int, db: Session = Depends(get_db)):
    return {"run_list_id": run_list_id, "entries": run_list_entries_out(db, run_list_id)}


@app.post("/run-lists/{run_list_id}/entries", status_code=201)
def create_run_list_entry(run_list_id: int, payload: RunListEntryCreate, db: Session = Depends(get_db)):
    entry = add_run_list_entry(
        db,
        run_list_id,
        track_id=payload.track_id,
        cars=[c.model_dump() for c in payload.cars],
        lobby_settings=payload.lobby_settings,
        notes=payload.notes,
    )
    return {"entry": run_list_entry_out(entry)}


@app.put("/run-lists/{run_list_id}/entries/order")
def reorder_run_list_entries(run_list_id: int, payload: ReorderRequest, db: Session = Depends(get_db)):
    run_list_reorder.reorder(db, run_list_id, payload.entry_ids)
    return {"run_list_id": run_list_id, "entries": run_list_entries_out(db, run_list_id)}


@app.patch("/run-lists/{run_list_id}/entries/{entry_id}")
def update_run_list_entry(
    run_list_id: int,
    entry_id: int,
    payload: RunListEntryUpdate,
    db: Session = Depends(get_db),
):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("track_id") is not None:
        get_track_or_404(db, fields["track_id"])
    elif "track_id" in fields:
        del fields["track_id"]
    entry = run_list_entries.update_payload(db, run_list_id, entry_id, fields)
    return {"entry": run_list_entry_out(entry)}


@app.delete("/run-lists/{run_list_id}/entries/{entry_id}")
def delete_run_list_entry(run_list_id: int, entry_id: int, db: Session = Depends(get_db)):
    run_list_entries.remove(db, run_list_id, entry_id)
    return {"success": True}


@app.post("/run-lists/{run_list_id}/entries/{entry_id}/move")
def move_run_list_entry(
    run_list_id: int,
    entry_id: int,
    payload: MoveRequest,
    db: Session = Depends(get_db),
):
    run_list_reorder.move(db, run_list_id, entry_id, payload.position)
    return {"run_list_id": run_list_id, "entries": run_list_entries_out(db, run_list_id)}


# Races ---------------------------------------------------------------------


@app.post("/races", status_code=201)
def add_race(payload: RaceCreate, db: Session = Depends(get_db)):
    race = create_race(db, payload.name.strip(), track_id=payload.track_id, is_active=payload.is_active)
    return race_out(race)


@app.get("/races")
def list_active_races(db: Session = Depends(get_db)):
    return {"races": active_races_out(db)}


@app.put("/races/order")
def reorder_active_races(payload: ReorderRequest, db: Session = Depends(get_db)):
    active_race_order.reorder(db, None, payload.entry_ids)
    return {"races": active_races_out(db)}


@app.get("/races/{race_id}")
def get_race(race_id: int, db: Session = Depends(get_db)):
    race = get_or_404(db, Race, race_id, "Race")
    return {**race_out(race), "members": race_members_out(db, race_id)}


@app.patch("/races/{race_id}")
def edit_race(race_id: int, payload: RaceUpdate, db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    if "name" in fields and fields["name"] is not None:
        fields["name"] = fields["name"].strip()
    return race_out(update_race(db, race_id, fields))


@app.get("/races/{race_id}/members")
def list_race_members(race_id: int, db: Session = Depends(get_db)):
    return {"race_id": race_id, "members": race_members_out(db, race_id)}


@app.post("/races/{race_id}/members", status_code=201)
async def create_race_member(race_id: int, payload: RaceMemberCreate, db: Session = Depends(get_db)):
    def apply():
        member = add_race_member(
            db,
            race_id,
            user_id=payload.user_id,
            part_id=payload.part_id,
            updated_by_id=payload.updated_by_id,
        )
        return race_member_out(member)

    created = await run_in_threadpool(apply)
    await _broadcast_roster(db, race_id)
    return created


@app.put("/races/{race_id}/members/order")
async def reorder_race_members(race_id: int, payload: ReorderRequest, db: Session = Depends(get_db)):
    await run_in_threadpool(race_member_reorder.reorder, db, race_id, payload.entry_ids)
    members = await _broadcast_roster(db, race_id)
    return {"race_id": race_id, "members": members}


@app.patch("/races/{race_id}/members/{member_id}")
async def update_race_member(
    race_id: int,
    member_id: int,
    payload: RaceMemberUpdate,
    db: Session = Depends(get_db),
):
    def apply():
        get_or_404(db, Part, payload.part_id, "Part")
        if payload.updated_by_id is not None:
            get_user_or_404(db, payload.updated_by_id)
        member = race_members.update_payload(
            db,
            race_id,
            member_id,
            {"part_id": payload.part_id, "updated_by_id": payload.updated_by_id},
        )
        return race_member_out(member)

    updated = await run_in_threadpool(apply)
    await _broadcast_roster(db, race_id)
    return updated


@app.delete("/races/{race_id}/members/{member_id}")
async def delete_race_member(race_id: int, member_id: int, db: Session = Depends(get_db)):
    await run_in_threadpool(race_members.remove, db, race_id, member_id)
    await _broadcast_roster(db, race_id)
    return {"success": True}


# Lap times -----------------------------------------------------------------


@app.post("/lap-times", status_code=201)
async def create_lap_time(payload: LapTimeCreate, db: Session = Depends(get_db)):
    lap = await run_in_threadpool(
        submit_lap_time,
        db,
        user_id=payload.user_id,
        car_id=payload.car_id,
        track_id=payload.track_id,
        time_ms=resolve_time_ms(payload.time_ms, payload.lap_time),
        notes=payload.notes,
        conditions=payload.conditions,
        session_type=payload.session_type,
    )
    created = lap_time_out(lap)
    await _broadcast_standings(db, payload.car_id, payload.track_id)
    return {"lap_time": created}


@app.get("/lap-times/{lap_time_id}")
def get_lap_time(lap_time_id: int, db: Session = Depends(get_db)):
    return {"lap_time": lap_time_out(get_lap_time_or_404(db, lap_time_id))}


@app.patch("/lap-times/{lap_time_id}")
async def edit_lap_time(lap_time_id: int, payload: LapTimeUpdate, db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True, exclude={"time_ms", "lap_time"})
    if payload.time_ms is not None or payload.lap_time is not None:
        fields["time_ms"] = resolve_time_ms(payload.time_ms, payload.lap_time)
    lap = await run_in_threadpool(update_lap_time, db, lap_time_id, fields)
    updated = lap_time_out(lap)
    await _broadcast_standings(db, lap.car_id, lap.track_id)
    return {"lap_time": updated}


@app.delete("/lap-times/{lap_time_id}")
async def remove_lap_time(lap_time_id: int, db: Session = Depends(get_db)):
    car_id, track_id = await run_in_threadpool(delete_lap_time, db, lap_time_id)
    await _broadcast_standings(db, car_id, track_id)
    return {"success": True}


# Standings -----------------------------------------------------------------


@app.get("/combos/{car_id}/{track_id}")
def get_combo_standings(
    car_id: int,
    track_id: int,
    driver_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    return combo_standings(db, car_id, track_id, driver_id)


# Live updates --------------------------------------------------------------


@app.websocket("/ws/races/{race_id}/members")
async def race_members_ws(websocket: WebSocket, race_id: int, db: Session = Depends(get_db)):
    members = race_members_out(db, race_id)
    # Release the read transaction before idling on the socket.
    db.rollback()
    channel = race_channel(race_id)
    await hub.connect(channel, websocket)
    try:
        await websocket.send_json({"type": "bootstrap", "race_id": race_id, "members": jsonable(members)})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(channel, websocket)


@app.websocket("/ws/combos/{car_id}/{track_id}")
async def combo_standings_ws(websocket: WebSocket, car_id: int, track_id: int, db: Session = Depends(get_db)):
    standings = combo_standings(db, car_id, track_id)
    db.rollback()
    channel = combo_channel(car_id, track_id)
    await hub.connect(channel, websocket)
    try:
        await websocket.send_json({"type": "bootstrap", **jsonable(standings)})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(channel, websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("raceboard.main:app", host="127.0.0.1", port=8000, reload=True)
