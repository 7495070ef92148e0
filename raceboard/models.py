from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from raceboard.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gamertag: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="USER", nullable=False)  # PENDING, USER, ADMIN
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Car(Base):
    __tablename__ = "cars"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)


class Track(Base):
    __tablename__ = "tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)


class Part(Base):
    __tablename__ = "parts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)


class RunList(Base):
    __tablename__ = "run_lists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    entries: Mapped[list["RunListEntry"]] = relationship(
        "RunListEntry",
        back_populates="run_list",
        cascade="all, delete-orphan",
        order_by="RunListEntry.position",
    )


class RunListEntry(Base):
    __tablename__ = "run_list_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_list_id: Mapped[int] = mapped_column(ForeignKey("run_lists.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    track_id: Mapped[int] = mapped_column(ForeignKey("tracks.id"), nullable=False)
    lobby_settings: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    run_list: Mapped[RunList] = relationship("RunList", back_populates="entries")
    cars: Mapped[list["RunListEntryCar"]] = relationship(
        "RunListEntryCar",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="RunListEntryCar.id",
    )

    __table_args__ = (UniqueConstraint("run_list_id", "position", name="uq_run_list_entry_position"),)


class RunListEntryCar(Base):
    __tablename__ = "run_list_entry_cars"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(ForeignKey("run_list_entries.id"), nullable=False, index=True)
    car_id: Mapped[int] = mapped_column(ForeignKey("cars.id"), nullable=False)
    build_name: Mapped[str | None] = mapped_column(String(128), nullable=True)

    entry: Mapped[RunListEntry] = relationship("RunListEntry", back_populates="cars")

    __table_args__ = (UniqueConstraint("entry_id", "car_id", name="uq_run_list_entry_car"),)


class Race(Base):
    __tablename__ = "races"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    track_id: Mapped[int | None] = mapped_column(ForeignKey("tracks.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)  # active races only
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    members: Mapped[list["RaceMember"]] = relationship(
        "RaceMember",
        back_populates="race",
        cascade="all, delete-orphan",
        order_by="RaceMember.position",
    )

    __table_args__ = (UniqueConstraint("position", name="uq_race_position"),)


class RaceMember(Base):
    __tablename__ = "race_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    race_id: Mapped[int] = mapped_column(ForeignKey("races.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    part_id: Mapped[int | None] = mapped_column(ForeignKey("parts.id"), nullable=True)  # tyre
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    race: Mapped[Race] = relationship("Race", back_populates="members")
    user: Mapped[User] = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("race_id", "position", name="uq_race_member_position"),
        UniqueConstraint("race_id", "user_id", name="uq_race_member_user"),
    )


class LapTime(Base):
    __tablename__ = "lap_times"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    car_id: Mapped[int] = mapped_column(ForeignKey("cars.id"), nullable=False, index=True)
    track_id: Mapped[int] = mapped_column(ForeignKey("tracks.id"), nullable=False, index=True)
    time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    conditions: Mapped[str | None] = mapped_column(String(32), nullable=True)  # dry / wet
    session_type: Mapped[str] = mapped_column(String(8), default="R", nullable=False)  # Q / R
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped[User] = relationship("User")
