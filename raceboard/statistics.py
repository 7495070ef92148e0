from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from raceboard.leaderboard import LapRecord, LeaderboardEntry, most_recent
from raceboard.rules import mean_ms


@dataclass
class ScopeStatistics:
    total_laps: Optional[int]
    unique_drivers: Optional[int]
    fastest_time: Optional[int]
    average_time: Optional[int]
    world_record: Optional[LeaderboardEntry]
    last_activity: Optional[datetime]
    recent_activity: List[LapRecord] = field(default_factory=list)


def scope_statistics(
    records: Sequence[LapRecord],
    leaderboard: Sequence[LeaderboardEntry],
    recent_limit: int = 10,
) -> ScopeStatistics:
    """
    Scope-wide figures. ``leaderboard`` must be built from the same ``records``.
    With no records every figure is None, never 0.
    """
    if not records:
        return ScopeStatistics(None, None, None, None, None, None)

    times = [r.time_ms for r in records]
    recent = most_recent(records, recent_limit)
    return ScopeStatistics(
        total_laps=len(records),
        unique_drivers=len({r.user_id for r in records}),
        fastest_time=min(times),
        average_time=mean_ms(times),
        world_record=leaderboard[0] if leaderboard else None,
        last_activity=recent[0].created_at,
        recent_activity=recent,
    )
