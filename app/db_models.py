"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base

# Movies and other non-episodic content store this in ``episode_key`` so the
# open-session index can cover the whole identity triple.
NO_EPISODE = ""


def _new_session_id() -> str:
    return uuid.uuid4().hex


class PlaybackSessionRecord(Base):
    """Live or archived playback position for one viewer/content/episode."""

    __tablename__ = "playback_sessions"
    __table_args__ = (
        Index(
            "uq_playback_open_session",
            "viewer_id",
            "content_id",
            "episode_key",
            unique=True,
            sqlite_where=text("completed = 0"),
            postgresql_where=text("completed = false"),
        ),
        Index("ix_playback_viewer_updated", "viewer_id", "last_updated_at"),
    )

    id: Mapped[str] = mapped_column(
        String(32), primary_key=True, default=_new_session_id
    )
    viewer_id: Mapped[str] = mapped_column(String(64), index=True)
    content_id: Mapped[str] = mapped_column(String(64), index=True)
    episode_key: Mapped[str] = mapped_column(String(64), default=NO_EPISODE)
    current_time_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    total_duration_seconds: Mapped[float] = mapped_column(Float)
    completion_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quality_tier: Mapped[str] = mapped_column(String(8), default="auto")
    device_descriptor: Mapped[str | None] = mapped_column(String(512), nullable=True)
    cumulative_watch_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def episode_id(self) -> str | None:
        return self.episode_key or None


class WatchHistoryLedgerRecord(Base):
    """One bounded, most-recent-first history document per viewer."""

    __tablename__ = "watch_history_ledgers"

    viewer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class WatchlistItemRecord(Base):
    """Content a viewer saved for later."""

    __tablename__ = "watchlist_items"
    __table_args__ = (
        UniqueConstraint("viewer_id", "content_id", name="uq_watchlist_viewer_content"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    viewer_id: Mapped[str] = mapped_column(String(64), index=True)
    content_id: Mapped[str] = mapped_column(String(64))
    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
