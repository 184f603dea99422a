"""Per-viewer watchlist of content saved for later."""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import WatchlistItemRecord
from ..utils import retry_read
from .catalog import CatalogAccessor

logger = logging.getLogger(__name__)


class WatchlistService:
    """Store and list the content ids a viewer saved."""

    def __init__(
        self,
        catalog: CatalogAccessor,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._catalog = catalog
        self._session_factory = session_factory

    async def add(self, viewer_id: str, content_id: str) -> None:
        """Save ``content_id`` for the viewer.

        Raises ``ContentNotFound`` for unknown content and ``ValueError`` when
        the content is already on the watchlist.
        """

        await self._catalog.resolve(content_id)
        async with self._session_factory() as session:
            session.add(WatchlistItemRecord(viewer_id=viewer_id, content_id=content_id))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValueError("Content already in watchlist") from exc
        logger.info("Viewer %s added %s to their watchlist", viewer_id, content_id)

    async def remove(self, viewer_id: str, content_id: str) -> bool:
        """Drop ``content_id`` from the watchlist, returning whether it was there."""

        async with self._session_factory() as session:
            result = await session.execute(
                delete(WatchlistItemRecord).where(
                    WatchlistItemRecord.viewer_id == viewer_id,
                    WatchlistItemRecord.content_id == content_id,
                )
            )
            await session.commit()
        return bool(result.rowcount)

    async def list(self, viewer_id: str) -> list[str]:
        """Return saved content ids, oldest first."""

        async def _load() -> list[str]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(WatchlistItemRecord.content_id)
                    .where(WatchlistItemRecord.viewer_id == viewer_id)
                    .order_by(WatchlistItemRecord.added_at, WatchlistItemRecord.id)
                )
                return list(result.scalars().all())

        return await retry_read(
            _load, retry_on=(OperationalError,), label=f"watchlist read for {viewer_id}"
        )
