"""Bounded, deduplicated, most-recent-first watch history per viewer."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..config import Settings
from ..db_models import WatchHistoryLedgerRecord
from ..errors import ConcurrentUpdateConflict
from ..utils import retry_on_conflict, retry_read

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HistoryEntry:
    """Snapshot of a viewer's last touch of one piece of content."""

    content_id: str
    watched_at: datetime
    progress_percentage: float
    completed: bool

    @classmethod
    def from_document(cls, raw: Mapping[str, Any]) -> "HistoryEntry | None":
        content_id = raw.get("contentId")
        if not content_id:
            return None
        watched_at_raw = raw.get("watchedAt")
        try:
            watched_at = datetime.fromisoformat(str(watched_at_raw))
        except ValueError:
            watched_at = datetime.min
        try:
            progress = float(raw.get("progress") or 0.0)
        except (TypeError, ValueError):
            progress = 0.0
        return cls(
            content_id=str(content_id),
            watched_at=watched_at,
            progress_percentage=progress,
            completed=bool(raw.get("completed")),
        )

    def to_payload(self) -> dict[str, Any]:
        """Camel-cased form used both in the stored document and in responses."""

        return {
            "contentId": self.content_id,
            "watchedAt": self.watched_at.isoformat(),
            "progress": self.progress_percentage,
            "completed": self.completed,
        }


@dataclass
class HistoryPage:
    """One page of a viewer's history along with the full entry count."""

    entries: list[HistoryEntry]
    total: int
    offset: int
    limit: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "data": [entry.to_payload() for entry in self.entries],
            "pagination": {
                "offset": self.offset,
                "limit": self.limit,
                "total": self.total,
            },
        }


class WatchHistoryLedger:
    """Owns each viewer's ordered history document.

    The ledger behaves like a fixed-capacity LRU keyed by content id: touching
    an item moves it to the head, and the least recently touched entry falls
    off the tail once the capacity is exceeded. Writers for the same viewer are
    serialised by an in-process lock and, across processes, by the versioned
    update SQLAlchemy issues for the document row.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._capacity = settings.history_capacity
        self._session_factory = session_factory
        # Locks disappear once no writer or waiter holds them.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    def lock_for(self, viewer_id: str) -> asyncio.Lock:
        """Return the lock serialising ledger writes for ``viewer_id``."""

        return self._locks.setdefault(viewer_id, asyncio.Lock())

    async def upsert(
        self,
        viewer_id: str,
        content_id: str,
        progress_percentage: float,
        completed: bool,
    ) -> list[HistoryEntry]:
        """Move ``content_id`` to the head of the viewer's history."""

        async def _attempt() -> list[HistoryEntry]:
            async with self._session_factory() as session:
                entries = await self.stage_upsert(
                    session, viewer_id, content_id, progress_percentage, completed
                )
                await session.commit()
                return entries

        async with self.lock_for(viewer_id):
            return await retry_on_conflict(
                _attempt, label=f"history upsert for {viewer_id}"
            )

    async def list(
        self, viewer_id: str, *, offset: int = 0, limit: int = 20
    ) -> HistoryPage:
        """Return a page of history, newest first, with the total count."""

        offset = max(0, offset)
        limit = max(0, limit)
        entries = await self.entries(viewer_id)
        entries.sort(key=lambda entry: entry.watched_at, reverse=True)
        return HistoryPage(
            entries=entries[offset : offset + limit],
            total=len(entries),
            offset=offset,
            limit=limit,
        )

    async def entries(self, viewer_id: str) -> list[HistoryEntry]:
        """Return the viewer's full history in stored order."""

        async def _load() -> list[HistoryEntry]:
            async with self._session_factory() as session:
                record = await session.get(WatchHistoryLedgerRecord, viewer_id)
                return self._decode(record)

        return await retry_read(
            _load, retry_on=(OperationalError,), label=f"history read for {viewer_id}"
        )

    async def clear(self, viewer_id: str) -> None:
        """Empty the viewer's history unconditionally."""

        async with self.lock_for(viewer_id):
            async with self._session_factory() as session:
                await session.execute(
                    update(WatchHistoryLedgerRecord)
                    .where(WatchHistoryLedgerRecord.viewer_id == viewer_id)
                    .values(
                        entries=[],
                        version=WatchHistoryLedgerRecord.version + 1,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        logger.info("Cleared watch history for viewer %s", viewer_id)

    async def stage_upsert(
        self,
        session: AsyncSession,
        viewer_id: str,
        content_id: str,
        progress_percentage: float,
        completed: bool,
        *,
        now: datetime | None = None,
    ) -> list[HistoryEntry]:
        """Apply an upsert inside the caller's transaction without committing.

        Callers must hold :meth:`lock_for` for the viewer.
        """

        record = await session.get(WatchHistoryLedgerRecord, viewer_id)
        entries = [
            entry for entry in self._decode(record) if entry.content_id != content_id
        ]
        entries.insert(
            0,
            HistoryEntry(
                content_id=content_id,
                watched_at=now or datetime.utcnow(),
                progress_percentage=round(progress_percentage, 2),
                completed=completed,
            ),
        )
        del entries[self._capacity :]
        await self._write(session, viewer_id, record, entries)
        return entries

    async def stage_mark_completed(
        self,
        session: AsyncSession,
        viewer_id: str,
        content_id: str,
    ) -> None:
        """Force the content's snapshot to completed inside the caller's transaction.

        The entry keeps its position; when it is absent a completed entry is
        inserted at the head instead.
        """

        record = await session.get(WatchHistoryLedgerRecord, viewer_id)
        entries = self._decode(record)
        for entry in entries:
            if entry.content_id == content_id:
                entry.progress_percentage = 100.0
                entry.completed = True
                await self._write(session, viewer_id, record, entries)
                return
        await self.stage_upsert(session, viewer_id, content_id, 100.0, True)

    async def _write(
        self,
        session: AsyncSession,
        viewer_id: str,
        record: WatchHistoryLedgerRecord | None,
        entries: list[HistoryEntry],
    ) -> None:
        documents = [entry.to_payload() for entry in entries]
        now = datetime.utcnow()
        if record is None:
            session.add(
                WatchHistoryLedgerRecord(
                    viewer_id=viewer_id, entries=documents, updated_at=now
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ConcurrentUpdateConflict(
                    f"History ledger for {viewer_id} was created concurrently"
                ) from exc
            return

        record.entries = documents
        record.updated_at = now
        try:
            await session.flush()
        except StaleDataError as exc:
            raise ConcurrentUpdateConflict(
                f"History ledger for {viewer_id} changed during update"
            ) from exc

    @staticmethod
    def _decode(record: WatchHistoryLedgerRecord | None) -> list[HistoryEntry]:
        if record is None or not record.entries:
            return []
        entries: list[HistoryEntry] = []
        for raw in record.entries:
            if not isinstance(raw, Mapping):
                continue
            entry = HistoryEntry.from_document(raw)
            if entry is not None:
                entries.append(entry)
        return entries
