from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class RunListCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: Optional[str] = None
    created_by_id: int
    is_active: bool = False


class EntryCarIn(BaseModel):
    car_id: int
    build_name: Optional[str] = Field(default=None, max_length=128)


class RunListEntryCreate(BaseModel):
    track_id: int
    cars: list[EntryCarIn] = Field(min_length=1)
    lobby_settings: Optional[str] = None
    notes: Optional[str] = None


class RunListEntryUpdate(BaseModel):
    track_id: Optional[int] = None
    lobby_settings: Optional[str] = None
    notes: Optional[str] = None


class RaceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    track_id: Optional[int] = None
    is_active: bool = True


class RaceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    track_id: Optional[int] = None
    is_active: Optional[bool] = None


class RaceMemberCreate(BaseModel):
    user_id: int
    part_id: Optional[int] = None
    updated_by_id: Optional[int] = None


class RaceMemberUpdate(BaseModel):
    part_id: int
    updated_by_id: Optional[int] = None


# Emptiness and duplicates are checked by the reorder coordinator so the
# caller gets its error wording instead of a generic validation error.
class ReorderRequest(BaseModel):
    entry_ids: list[int]


class MoveRequest(BaseModel):
    position: int


class LapTimeCreate(BaseModel):
    user_id: int
    car_id: int
    track_id: int
    time_ms: Optional[int] = Field(default=None, gt=0)
    lap_time: Optional[str] = Field(default=None, max_length=16)  # "1:23.456"
    notes: Optional[str] = None
    conditions: Optional[str] = Field(default=None, max_length=32)
    session_type: Literal["Q", "R"] = "R"


class LapTimeUpdate(BaseModel):
    time_ms: Optional[int] = Field(default=None, gt=0)
    lap_time: Optional[str] = Field(default=None, max_length=16)
    notes: Optional[str] = None
    conditions: Optional[str] = Field(default=None, max_length=32)
