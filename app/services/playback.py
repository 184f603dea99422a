"""Playback session tracking: resume points, progress and completion."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..config import Settings
from ..db_models import NO_EPISODE, PlaybackSessionRecord
from ..errors import AccessDenied, ConcurrentUpdateConflict, InvalidProgress
from ..models import CatalogEntry, Viewer
from ..tiers import allowed_qualities, tier_allows
from ..utils import clamp_percentage, retry_on_conflict, retry_read
from .catalog import CatalogAccessor
from .history import WatchHistoryLedger

logger = logging.getLogger(__name__)

SessionKey = tuple[str, str, str]


@dataclass
class SessionHandle:
    """Everything a player needs to start or resume playback."""

    session_id: str
    resume_from: float
    video_url: str | None
    quality: str
    created: bool
    subtitles: list[dict[str, str]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "resumeFrom": self.resume_from,
            "videoUrl": self.video_url,
            "subtitles": self.subtitles,
            "quality": self.quality,
        }


@dataclass
class ProgressState:
    """Session progress after a report or completion."""

    session_id: str
    current_time: float
    duration: float
    percentage: float
    completed: bool
    cumulative_watch_seconds: float

    @classmethod
    def from_record(cls, record: PlaybackSessionRecord) -> "ProgressState":
        return cls(
            session_id=record.id,
            current_time=record.current_time_seconds,
            duration=record.total_duration_seconds,
            percentage=record.completion_percentage,
            completed=record.completed,
            cumulative_watch_seconds=record.cumulative_watch_seconds,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "progress": {
                "currentTime": self.current_time,
                "duration": self.duration,
                "percentage": self.percentage,
            },
            "completed": self.completed,
            "watchTime": self.cumulative_watch_seconds,
        }


@dataclass
class ResumeInfo:
    """Where an open session left off, if there is one."""

    has_resume_point: bool
    current_time: float = 0.0
    percentage: float | None = None
    session_id: str | None = None
    episode_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        if not self.has_resume_point:
            return {"hasResumePoint": False, "currentTime": 0}
        return {
            "hasResumePoint": True,
            "currentTime": self.current_time,
            "percentage": self.percentage,
            "sessionId": self.session_id,
            "episodeId": self.episode_id,
        }


@dataclass
class ContinueWatchingItem:
    session_id: str
    content_id: str
    episode_id: str | None
    current_time: float
    duration: float
    percentage: float
    last_watched: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "contentId": self.content_id,
            "episodeId": self.episode_id,
            "progress": {
                "currentTime": self.current_time,
                "duration": self.duration,
                "percentage": self.percentage,
            },
            "lastWatched": self.last_watched.isoformat(),
        }


class PlaybackService:
    """Owns playback sessions and keeps the watch history in step with them.

    Every mutation runs under a lock keyed by (viewer, content, episode) and,
    when it touches history, the viewer's ledger lock as well; the session row
    and the ledger document are written in one transaction.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: CatalogAccessor,
        ledger: WatchHistoryLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._catalog = catalog
        self._ledger = ledger
        self._session_factory = session_factory
        self._threshold = settings.completion_threshold
        # Locks disappear once no writer or waiter holds them.
        self._locks: weakref.WeakValueDictionary[SessionKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def start_or_resume(
        self,
        viewer: Viewer,
        content_id: str,
        *,
        duration_seconds: float,
        episode_id: str | None = None,
        quality: str | None = None,
        device: str | None = None,
    ) -> SessionHandle:
        """Open (or reopen) a session and return the playable resource."""

        if duration_seconds <= 0:
            raise InvalidProgress("Duration must be greater than zero")

        content = await self._catalog.resolve(content_id)
        if not tier_allows(viewer.tier, content.access_tier):
            raise AccessDenied(content.access_tier, viewer.tier)

        effective_quality = self._effective_quality(quality, viewer.tier)
        key = self._session_key(viewer.id, content_id, episode_id)

        async def _attempt() -> tuple[PlaybackSessionRecord, bool]:
            async with self._session_factory() as session:
                record = await self._find_open(session, *key)
                if record is not None:
                    return record, False
                record = PlaybackSessionRecord(
                    viewer_id=viewer.id,
                    content_id=content_id,
                    episode_key=key[2],
                    current_time_seconds=0.0,
                    total_duration_seconds=float(duration_seconds),
                    completion_percentage=0.0,
                    completed=False,
                    quality_tier=effective_quality,
                    device_descriptor=device,
                    cumulative_watch_seconds=0.0,
                )
                session.add(record)
                await self._flush(session, key)
                await session.commit()
                return record, True

        async with self._lock_for(key):
            record, created = await retry_on_conflict(
                _attempt, label=f"session start for {key}"
            )

        if created:
            logger.info(
                "Started playback session %s for viewer %s on %s",
                record.id,
                viewer.id,
                content_id,
            )
        return SessionHandle(
            session_id=record.id,
            resume_from=record.current_time_seconds,
            video_url=self._playable_url(content, episode_id, effective_quality),
            quality=effective_quality,
            created=created,
            subtitles=list(content.subtitles),
        )

    async def report_progress(
        self,
        viewer_id: str,
        content_id: str,
        *,
        current_time: float,
        duration: float,
        episode_id: str | None = None,
        session_id: str | None = None,
    ) -> ProgressState:
        """Record a position report, creating the session when none exists."""

        self._validate_progress(current_time, duration)
        key = self._session_key(viewer_id, content_id, episode_id)

        async def _attempt() -> ProgressState:
            async with self._session_factory() as session:
                now = datetime.utcnow()
                record = await self._find_for_progress(session, key, session_id)
                if record is None:
                    percentage = clamp_percentage(current_time, duration)
                    record = PlaybackSessionRecord(
                        viewer_id=viewer_id,
                        content_id=content_id,
                        episode_key=key[2],
                        current_time_seconds=float(current_time),
                        total_duration_seconds=float(duration),
                        completion_percentage=percentage,
                        completed=percentage >= self._threshold,
                        cumulative_watch_seconds=0.0,
                        started_at=now,
                        last_updated_at=now,
                    )
                    session.add(record)
                else:
                    self._advance(record, current_time, now)
                await self._flush(session, key)
                await self._ledger.stage_upsert(
                    session,
                    viewer_id,
                    content_id,
                    record.completion_percentage,
                    record.completed,
                    now=now,
                )
                await session.commit()
                return ProgressState.from_record(record)

        async with self._lock_for(key), self._ledger.lock_for(viewer_id):
            state = await retry_on_conflict(
                _attempt, label=f"progress report for {key}"
            )
        return state

    async def get_resume_point(
        self,
        viewer_id: str,
        content_id: str,
        episode_id: str | None = None,
    ) -> ResumeInfo:
        """Return the most recently updated open session for the content."""

        async def _load() -> ResumeInfo:
            async with self._session_factory() as session:
                stmt = select(PlaybackSessionRecord).where(
                    PlaybackSessionRecord.viewer_id == viewer_id,
                    PlaybackSessionRecord.content_id == content_id,
                    PlaybackSessionRecord.completed.is_(False),
                )
                if episode_id:
                    stmt = stmt.where(PlaybackSessionRecord.episode_key == episode_id)
                stmt = stmt.order_by(PlaybackSessionRecord.last_updated_at.desc()).limit(1)
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()
                if record is None:
                    return ResumeInfo(has_resume_point=False)
                return ResumeInfo(
                    has_resume_point=True,
                    current_time=record.current_time_seconds,
                    percentage=record.completion_percentage,
                    session_id=record.id,
                    episode_id=record.episode_id,
                )

        return await retry_read(
            _load, retry_on=(OperationalError,), label=f"resume lookup for {viewer_id}"
        )

    async def mark_completed(
        self,
        viewer_id: str,
        content_id: str,
        episode_id: str | None = None,
    ) -> ProgressState | None:
        """Force the session and its history snapshot to the completed state.

        Returns ``None`` without touching history when the viewer has no
        session for the content.
        """

        key = self._session_key(viewer_id, content_id, episode_id)

        async def _attempt() -> ProgressState | None:
            async with self._session_factory() as session:
                record = await self._find_for_progress(session, key, None)
                if record is None:
                    return None
                record.completed = True
                record.completion_percentage = 100.0
                record.last_updated_at = datetime.utcnow()
                await self._flush(session, key)
                await self._ledger.stage_mark_completed(session, viewer_id, content_id)
                await session.commit()
                return ProgressState.from_record(record)

        async with self._lock_for(key), self._ledger.lock_for(viewer_id):
            state = await retry_on_conflict(
                _attempt, label=f"completion of {key}"
            )
        if state is not None:
            logger.info("Marked %s completed for viewer %s", content_id, viewer_id)
        return state

    async def list_continue_watching(
        self, viewer_id: str, limit: int = 20
    ) -> list[ContinueWatchingItem]:
        """Open sessions that were started but not finished, newest first."""

        if limit <= 0:
            return []

        async def _load() -> list[ContinueWatchingItem]:
            async with self._session_factory() as session:
                stmt = (
                    select(PlaybackSessionRecord)
                    .where(
                        PlaybackSessionRecord.viewer_id == viewer_id,
                        PlaybackSessionRecord.completed.is_(False),
                        PlaybackSessionRecord.completion_percentage
                        > self._settings.continue_watching_min,
                        PlaybackSessionRecord.completion_percentage
                        < self._settings.continue_watching_max,
                    )
                    .order_by(PlaybackSessionRecord.last_updated_at.desc())
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [
                    ContinueWatchingItem(
                        session_id=record.id,
                        content_id=record.content_id,
                        episode_id=record.episode_id,
                        current_time=record.current_time_seconds,
                        duration=record.total_duration_seconds,
                        percentage=record.completion_percentage,
                        last_watched=record.last_updated_at,
                    )
                    for record in result.scalars().all()
                ]

        return await retry_read(
            _load,
            retry_on=(OperationalError,),
            label=f"continue watching for {viewer_id}",
        )

    async def quality_options(
        self, viewer: Viewer, content_id: str
    ) -> list[dict[str, Any]]:
        """Return the content's renditions the viewer's tier may stream."""

        content = await self._catalog.resolve(content_id)
        allowed = allowed_qualities(viewer.tier)
        return [
            variant.model_dump(mode="json", exclude_none=True)
            for variant in content.qualities
            if variant.quality in allowed
        ]

    def _advance(
        self, record: PlaybackSessionRecord, current_time: float, now: datetime
    ) -> None:
        """Apply a position report to an existing session in memory."""

        duration = record.total_duration_seconds
        if current_time > duration + self._settings.progress_tolerance_seconds:
            raise InvalidProgress(
                f"Current time {current_time} exceeds session duration {duration}"
            )

        previous_time = record.current_time_seconds or 0.0
        percentage = clamp_percentage(current_time, duration)
        record.last_updated_at = now
        if record.completed and percentage < record.completion_percentage:
            # Completed sessions are terminal: a rewind does not reopen them.
            return

        record.cumulative_watch_seconds = (record.cumulative_watch_seconds or 0.0) + max(
            0.0, current_time - previous_time
        )
        record.current_time_seconds = float(current_time)
        record.completion_percentage = percentage
        if not record.completed and percentage >= self._threshold:
            record.completed = True
            logger.info(
                "Session %s for viewer %s reached completion at %.1f%%",
                record.id,
                record.viewer_id,
                percentage,
            )

    def _validate_progress(self, current_time: float, duration: float) -> None:
        if current_time < 0:
            raise InvalidProgress("Current time must not be negative")
        if duration <= 0:
            raise InvalidProgress("Duration must be greater than zero")
        if current_time > duration + self._settings.progress_tolerance_seconds:
            raise InvalidProgress(
                f"Current time {current_time} exceeds duration {duration}"
            )

    async def _find_for_progress(
        self,
        session: AsyncSession,
        key: SessionKey,
        session_id: str | None,
    ) -> PlaybackSessionRecord | None:
        viewer_id, content_id, episode_key = key
        if session_id:
            record = await session.get(PlaybackSessionRecord, session_id)
            if (
                record is not None
                and record.viewer_id == viewer_id
                and record.content_id == content_id
                and record.episode_key == episode_key
            ):
                return record

        record = await self._find_open(session, viewer_id, content_id, episode_key)
        if record is not None:
            return record

        stmt = (
            select(PlaybackSessionRecord)
            .where(
                PlaybackSessionRecord.viewer_id == viewer_id,
                PlaybackSessionRecord.content_id == content_id,
                PlaybackSessionRecord.episode_key == episode_key,
            )
            .order_by(PlaybackSessionRecord.last_updated_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_open(
        session: AsyncSession,
        viewer_id: str,
        content_id: str,
        episode_key: str,
    ) -> PlaybackSessionRecord | None:
        stmt = select(PlaybackSessionRecord).where(
            PlaybackSessionRecord.viewer_id == viewer_id,
            PlaybackSessionRecord.content_id == content_id,
            PlaybackSessionRecord.episode_key == episode_key,
            PlaybackSessionRecord.completed.is_(False),
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _flush(session: AsyncSession, key: SessionKey) -> None:
        try:
            await session.flush()
        except (IntegrityError, StaleDataError) as exc:
            raise ConcurrentUpdateConflict(
                f"Playback session {key} changed during update"
            ) from exc

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    @staticmethod
    def _session_key(
        viewer_id: str, content_id: str, episode_id: str | None
    ) -> SessionKey:
        return (viewer_id, content_id, episode_id or NO_EPISODE)

    @staticmethod
    def _effective_quality(quality: str | None, viewer_tier: str) -> str:
        if not quality or quality == "auto":
            return "auto"
        if quality in allowed_qualities(viewer_tier):
            return quality
        return "auto"

    @staticmethod
    def _playable_url(
        content: CatalogEntry, episode_id: str | None, quality: str
    ) -> str | None:
        if content.type == "series" and episode_id:
            episode_url = content.episode_url(episode_id)
            if episode_url:
                return episode_url
        if quality != "auto":
            quality_url = content.quality_url(quality)
            if quality_url:
                return quality_url
        return content.video_url
