import asyncio
import logging

import pytest
from fastapi.testclient import TestClient

from raceboard import main as main_module
from raceboard.database import Base, get_db, make_engine, make_sessionmaker
from raceboard.main import app
from raceboard.models import Car, Part, Track, User


@pytest.fixture()
def client(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'api.db'}")
    Base.metadata.create_all(bind=engine)
    SessionLocal = make_sessionmaker(engine)

    with SessionLocal() as db:
        db.add_all(
            [
                User(gamertag="Alpha"),
                User(gamertag="Bravo"),
                User(gamertag="Pending", role="PENDING"),
                Car(name="Porsche 911 RSR", slug="porsche-911-rsr"),
                Car(name="Ferrari 296 GT3", slug="ferrari-296-gt3"),
                Track(name="Suzuka Circuit", slug="suzuka"),
                Part(name="Racing: Soft", category="Tyres"),
                Part(name="Racing: Hard", category="Tyres"),
            ]
        )
        db.commit()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _run_list_with_entries(client: TestClient, count: int) -> tuple[int, list[int]]:
    res = client.post("/run-lists", json={"name": "Thursday league", "created_by_id": 1})
    assert res.status_code == 201
    run_list_id = res.json()["id"]
    ids = []
    for _ in range(count):
        res = client.post(
            f"/run-lists/{run_list_id}/entries",
            json={"track_id": 1, "cars": [{"car_id": 1}, {"car_id": 2, "build_name": "Low drag"}]},
        )
        assert res.status_code == 201
        ids.append(res.json()["entry"]["id"])
    return run_list_id, ids


def test_run_list_entry_lifecycle(client):
    run_list_id, (e1, e2, e3, e4) = _run_list_with_entries(client, 4)

    res = client.delete(f"/run-lists/{run_list_id}/entries/{e2}")
    assert res.status_code == 200

    entries = client.get(f"/run-lists/{run_list_id}/entries").json()["entries"]
    assert [(e["id"], e["position"]) for e in entries] == [(e1, 1), (e3, 2), (e4, 3)]
    assert entries[0]["cars"] == [
        {"car_id": 1, "build_name": None},
        {"car_id": 2, "build_name": "Low drag"},
    ]

    res = client.put(f"/run-lists/{run_list_id}/entries/order", json={"entry_ids": [e4, e1, e3]})
    assert res.status_code == 200
    assert [e["id"] for e in res.json()["entries"]] == [e4, e1, e3]

    res = client.post(f"/run-lists/{run_list_id}/entries/{e4}/move", json={"position": 3})
    assert [e["id"] for e in res.json()["entries"]] == [e1, e3, e4]

    res = client.patch(f"/run-lists/{run_list_id}/entries/{e3}", json={"notes": "Night race"})
    assert res.status_code == 200
    assert res.json()["entry"]["notes"] == "Night race"
    assert res.json()["entry"]["position"] == 2

    summary = client.get(f"/run-lists/{run_list_id}").json()
    assert summary["entry_count"] == 3


def test_run_list_error_responses(client):
    run_list_id, (e1, e2) = _run_list_with_entries(client, 2)

    res = client.put(f"/run-lists/{run_list_id}/entries/order", json={"entry_ids": [e1, e1]})
    assert res.status_code == 400
    assert res.json()["detail"] == "duplicate entry id"

    res = client.put(f"/run-lists/{run_list_id}/entries/order", json={"entry_ids": []})
    assert res.status_code == 400

    res = client.put(f"/run-lists/{run_list_id}/entries/order", json={"entry_ids": [e1, 777]})
    assert res.status_code == 400
    assert res.json()["detail"] == "entry does not belong to this collection"

    assert client.delete(f"/run-lists/{run_list_id}/entries/777").status_code == 404
    assert client.get("/run-lists/999/entries").status_code == 404

    res = client.post(f"/run-lists/{run_list_id}/entries", json={"track_id": 1, "cars": [{"car_id": 42}]})
    assert res.status_code == 404


def test_race_roster(client):
    race_id = client.post("/races", json={"name": "GT3 sprint", "track_id": 1}).json()["id"]

    alpha = client.post(f"/races/{race_id}/members", json={"user_id": 1})
    assert alpha.status_code == 201
    assert alpha.json()["position"] == 1
    assert alpha.json()["part_id"] == 1  # default tyre

    bravo = client.post(f"/races/{race_id}/members", json={"user_id": 2, "part_id": 2})
    assert bravo.json()["position"] == 2

    duplicate = client.post(f"/races/{race_id}/members", json={"user_id": 1})
    assert duplicate.status_code == 409

    unknown_editor = client.post(f"/races/{race_id}/members", json={"user_id": 2, "updated_by_id": 999})
    assert unknown_editor.status_code == 404

    pending = client.post(f"/races/{race_id}/members", json={"user_id": 3})
    assert pending.status_code == 400

    res = client.put(
        f"/races/{race_id}/members/order",
        json={"entry_ids": [bravo.json()["id"], alpha.json()["id"]]},
    )
    assert [(m["gamertag"], m["position"]) for m in res.json()["members"]] == [("Bravo", 1), ("Alpha", 2)]

    res = client.patch(f"/races/{race_id}/members/{alpha.json()['id']}", json={"part_id": 2, "updated_by_id": 2})
    assert res.json()["part_id"] == 2
    assert res.json()["position"] == 2

    client.delete(f"/races/{race_id}/members/{bravo.json()['id']}")
    members = client.get(f"/races/{race_id}/members").json()["members"]
    assert [(m["gamertag"], m["position"]) for m in members] == [("Alpha", 1)]


def test_race_roster_websocket_bootstrap(client):
    race_id = client.post("/races", json={"name": "Endurance"}).json()["id"]
    client.post(f"/races/{race_id}/members", json={"user_id": 2})

    with client.websocket_connect(f"/ws/races/{race_id}/members") as ws:
        message = ws.receive_json()
    assert message["type"] == "bootstrap"
    assert [m["gamertag"] for m in message["members"]] == ["Bravo"]


def test_combo_standings(client):
    for user_id, lap in [(1, "1:30.000"), (1, "1:25.000"), (2, "1:27.000")]:
        res = client.post("/lap-times", json={"user_id": user_id, "car_id": 1, "track_id": 1, "lap_time": lap})
        assert res.status_code == 201

    body = client.get("/combos/1/1", params={"driver_id": 1}).json()

    assert [(row["driver_name"], row["rank"], row["best_time"]) for row in body["leaderboard"]] == [
        ("Alpha", 1, 85000),
        ("Bravo", 2, 87000),
    ]
    assert body["leaderboard"][0]["lap_count"] == 2
    assert body["leaderboard"][0]["best_time_display"] == "1:25.000"
    assert [row["gap_to_leader"] for row in body["leaderboard"]] == ["0.000", "+2.000"]
    assert body["statistics"]["world_record"]["gap_to_leader"] == "0.000"
    assert body["statistics"]["total_laps"] == 3
    assert body["statistics"]["unique_drivers"] == 2
    assert body["statistics"]["fastest_time"] == 85000
    assert body["statistics"]["average_time"] == 87333
    assert body["statistics"]["world_record"]["driver_id"] == 1
    assert body["driver_summary"]["average_time"] == 87500
    assert body["driver_summary"]["rank"] == 1


def test_combo_standings_without_laps(client):
    body = client.get("/combos/2/1").json()
    assert body["leaderboard"] == []
    assert body["driver_summary"] is None
    assert body["statistics"]["total_laps"] is None
    assert body["statistics"]["fastest_time"] is None
    assert body["statistics"]["average_time"] is None
    assert body["statistics"]["world_record"] is None

    assert client.get("/combos/99/1").status_code == 404


def test_lap_time_validation_and_edits(client):
    res = client.post("/lap-times", json={"user_id": 1, "car_id": 1, "track_id": 1, "lap_time": "1:75.000"})
    assert res.status_code == 400
    res = client.post("/lap-times", json={"user_id": 1, "car_id": 1, "track_id": 1, "time_ms": 5000})
    assert res.status_code == 400
    res = client.post("/lap-times", json={"user_id": 1, "car_id": 1, "track_id": 1})
    assert res.status_code == 400
    res = client.post("/lap-times", json={"user_id": 1, "car_id": 1, "track_id": 9, "time_ms": 90000})
    assert res.status_code == 404

    lap_id = client.post(
        "/lap-times", json={"user_id": 1, "car_id": 1, "track_id": 1, "time_ms": 90000}
    ).json()["lap_time"]["id"]

    res = client.patch(f"/lap-times/{lap_id}", json={"lap_time": "1:28.500", "notes": "Clean lap"})
    assert res.json()["lap_time"]["time_ms"] == 88500
    assert res.json()["lap_time"]["notes"] == "Clean lap"
    assert client.get("/combos/1/1").json()["statistics"]["fastest_time"] == 88500

    assert client.delete(f"/lap-times/{lap_id}").status_code == 200
    assert client.get(f"/lap-times/{lap_id}").status_code == 404
    assert client.get("/combos/1/1").json()["leaderboard"] == []


def test_unknown_editor_is_rejected_without_a_consistency_alarm(client, caplog):
    race_id = client.post("/races", json={"name": "Club night"}).json()["id"]
    member_id = client.post(f"/races/{race_id}/members", json={"user_id": 1}).json()["id"]

    with caplog.at_level(logging.ERROR, logger="raceboard.consistency"):
        added = client.post(f"/races/{race_id}/members", json={"user_id": 2, "updated_by_id": 999})
        edited = client.patch(f"/races/{race_id}/members/{member_id}", json={"part_id": 2, "updated_by_id": 999})

    assert added.status_code == 404
    assert edited.status_code == 404
    assert caplog.records == []
    members = client.get(f"/races/{race_id}/members").json()["members"]
    assert [(m["user_id"], m["position"], m["part_id"]) for m in members] == [(1, 1, 1)]


def test_active_race_order(client):
    r1, r2, r3 = (client.post("/races", json={"name": name}).json() for name in ("Sprint", "Feature", "Endurance"))
    idle = client.post("/races", json={"name": "Off season", "is_active": False}).json()
    assert [r["position"] for r in (r1, r2, r3)] == [1, 2, 3]
    assert idle["position"] is None

    res = client.put("/races/order", json={"entry_ids": [r3["id"], r1["id"]]})
    assert res.status_code == 200
    assert [(r["name"], r["position"]) for r in res.json()["races"]] == [
        ("Endurance", 1),
        ("Sprint", 2),
        ("Feature", 3),
    ]

    res = client.put("/races/order", json={"entry_ids": [idle["id"]]})
    assert res.status_code == 400
    assert res.json()["detail"] == "entry does not belong to this collection"

    res = client.patch(f"/races/{r3['id']}", json={"is_active": False})
    assert res.json()["is_active"] is False
    assert res.json()["position"] is None
    assert [(r["name"], r["position"]) for r in client.get("/races").json()["races"]] == [
        ("Sprint", 1),
        ("Feature", 2),
    ]

    res = client.patch(f"/races/{idle['id']}", json={"is_active": True, "name": "Winter cup"})
    assert res.json()["position"] == 3
    assert res.json()["name"] == "Winter cup"
    assert [r["name"] for r in client.get("/races").json()["races"]] == ["Sprint", "Feature", "Winter cup"]


def test_broadcasting_routes_keep_store_work_off_the_event_loop(client, monkeypatch):
    seen = []

    def tracked(func):
        def wrapper(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append((func.__name__, "event loop"))
            except RuntimeError:
                seen.append((func.__name__, "worker thread"))
            return func(*args, **kwargs)

        return wrapper

    monkeypatch.setattr(main_module, "add_race_member", tracked(main_module.add_race_member))
    monkeypatch.setattr(main_module, "race_members_out", tracked(main_module.race_members_out))
    monkeypatch.setattr(main_module, "submit_lap_time", tracked(main_module.submit_lap_time))

    race_id = client.post("/races", json={"name": "Sprint"}).json()["id"]
    assert client.post(f"/races/{race_id}/members", json={"user_id": 1}).status_code == 201
    res = client.post("/lap-times", json={"user_id": 1, "car_id": 1, "track_id": 1, "time_ms": 90000})
    assert res.status_code == 201

    assert ("add_race_member", "worker thread") in seen
    assert ("race_members_out", "worker thread") in seen
    assert ("submit_lap_time", "worker thread") in seen
    assert all(where == "worker thread" for _, where in seen)
