"""Best-lap leaderboard for one (car, track) scope.

All functions here are pure: they take the lap records of a single snapshot
and never touch the database, so standings are recomputed on every read.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from raceboard.rules import mean_ms


class LapRecord(Protocol):
    id: int
    user_id: int
    time_ms: int
    created_at: datetime


@dataclass
class LeaderboardEntry:
    driver_id: int
    best_time: int
    best_record_id: int
    lap_count: int
    last_improvement: datetime
    rank: int = 0
    driver_name: Optional[str] = None


@dataclass
class DriverSummary:
    driver_id: int
    lap_count: int
    best_time: int
    average_time: int
    rank: Optional[int]
    recent_laps: List[LapRecord] = field(default_factory=list)


def _record_order(record: LapRecord):
    return (record.created_at, record.id)


def _best_record(records: Sequence[LapRecord]) -> LapRecord:
    # Fastest lap; on equal times the one set first.
    return min(records, key=lambda r: (r.time_ms, r.created_at, r.id))


def group_by_driver(records: Sequence[LapRecord]) -> Dict[int, List[LapRecord]]:
    grouped: Dict[int, List[LapRecord]] = defaultdict(list)
    for record in records:
        grouped[record.user_id].append(record)
    return grouped


def build_leaderboard(
    records: Sequence[LapRecord], driver_names: Optional[Dict[int, str]] = None
) -> List[LeaderboardEntry]:
    driver_names = driver_names or {}
    rows: List[LeaderboardEntry] = []
    for driver_id, driver_records in group_by_driver(records).items():
        best = _best_record(driver_records)
        rows.append(
            LeaderboardEntry(
                driver_id=driver_id,
                best_time=best.time_ms,
                best_record_id=best.id,
                lap_count=len(driver_records),
                last_improvement=best.created_at,
                driver_name=driver_names.get(driver_id),
            )
        )

    # Equal best times: whoever got there first ranks higher.
    rows.sort(key=lambda row: (row.best_time, row.last_improvement, row.driver_id))
    for idx, row in enumerate(rows, start=1):
        row.rank = idx
    return rows


def summarize_driver(
    records: Sequence[LapRecord],
    leaderboard: Sequence[LeaderboardEntry],
    driver_id: int,
    recent_limit: int = 10,
) -> Optional[DriverSummary]:
    """Stats for one driver in the scope, or None if they have no laps in it."""

    own = [r for r in records if r.user_id == driver_id]
    if not own:
        return None
    rank = next((row.rank for row in leaderboard if row.driver_id == driver_id), None)
    return DriverSummary(
        driver_id=driver_id,
        lap_count=len(own),
        best_time=min(r.time_ms for r in own),
        average_time=mean_ms(r.time_ms for r in own),
        rank=rank,
        recent_laps=most_recent(own, recent_limit),
    )


def most_recent(records: Sequence[LapRecord], limit: int) -> List[LapRecord]:
    return sorted(records, key=_record_order, reverse=True)[:limit]
