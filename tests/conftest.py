"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import pytest
from sqlalchemy import text


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import Settings  # noqa: E402
from app.database import Database  # noqa: E402
from app.models import CatalogEntry  # noqa: E402
from app.services.catalog import StaticCatalog  # noqa: E402
from app.services.history import WatchHistoryLedger  # noqa: E402
from app.services.playback import PlaybackService  # noqa: E402
from app.services.recommendations import RecommendationService  # noqa: E402
from app.services.watchlist import WatchlistService  # noqa: E402


async def bump_version(session_factory, table: str, key_column: str, key: str) -> None:
    """Commit a version increment from an independent session, as a rival writer would."""

    async with session_factory() as rival:
        await rival.execute(
            text(f"UPDATE {table} SET version = version + 1 WHERE {key_column} = :key"),
            {"key": key},
        )
        await rival.commit()


class ContendedLedger(WatchHistoryLedger):
    """Ledger whose next ``conflicts`` updates lose a race to another writer."""

    def __init__(self, *args: Any, conflicts: int = 0, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.conflicts = conflicts
        self.writes = 0

    async def _write(self, session, viewer_id, record, entries) -> None:
        self.writes += 1
        if record is not None and self.conflicts > 0:
            self.conflicts -= 1
            await bump_version(
                self._session_factory, "watch_history_ledgers", "viewer_id", viewer_id
            )
        await super()._write(session, viewer_id, record, entries)


class ContendedPlayback(PlaybackService):
    """Playback service whose next ``conflicts`` session updates lose a race."""

    def __init__(self, *args: Any, conflicts: int = 0, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.conflicts = conflicts

    async def _find_for_progress(self, session, key, session_id):
        record = await super()._find_for_progress(session, key, session_id)
        if record is not None and self.conflicts > 0:
            self.conflicts -= 1
            await bump_version(self._session_factory, "playback_sessions", "id", record.id)
        return record


def build_entry(
    content_id: str,
    *,
    genres: Sequence[str] = ("Drama",),
    content_type: str = "movie",
    views: int = 0,
    rating: float | None = None,
    tier: str = "free",
    **extra: Any,
) -> CatalogEntry:
    """Return a catalog entry with sensible defaults for tests."""

    payload: dict[str, Any] = {
        "id": content_id,
        "title": extra.pop("title", content_id.title()),
        "type": content_type,
        "genres": list(genres),
        "viewCount": views,
        "externalRating": rating,
        "accessTier": tier,
        "videoUrl": extra.pop("video_url", f"https://cdn.example.com/{content_id}.m3u8"),
    }
    payload.update(extra)
    return CatalogEntry.model_validate(payload)


@dataclass
class ServiceStack:
    """Every service wired against one temporary SQLite database."""

    settings: Settings
    database: Database
    catalog: StaticCatalog
    ledger: WatchHistoryLedger
    watchlist: WatchlistService
    playback: PlaybackService
    recommendations: RecommendationService


@pytest.fixture
def entry_factory() -> Callable[..., CatalogEntry]:
    return build_entry


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., Settings]:
    """Build settings pointing at a throwaway database with the shuffle off."""

    def _make(**overrides: Any) -> Settings:
        base: dict[str, Any] = {
            "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'reelstate.db'}",
            "RECOMMENDATION_SHUFFLE": False,
        }
        base.update(overrides)
        return Settings(_env_file=None, **base)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def make_stack(
    make_settings: Callable[..., Settings],
) -> Callable[..., Awaitable[ServiceStack]]:
    """Return a coroutine factory creating the schema and all services.

    Callers must run it inside the same event loop as the rest of the test and
    dispose of ``stack.database`` when done.
    """

    async def _make(entries: Sequence[CatalogEntry], **overrides: Any) -> ServiceStack:
        settings = make_settings(**overrides)
        database = Database(settings.database_url)
        await database.create_all()
        catalog = StaticCatalog(entries)
        ledger = WatchHistoryLedger(settings, database.session_factory)
        watchlist = WatchlistService(catalog, database.session_factory)
        playback = PlaybackService(settings, catalog, ledger, database.session_factory)
        recommendations = RecommendationService(settings, catalog, ledger, watchlist)
        return ServiceStack(
            settings=settings,
            database=database,
            catalog=catalog,
            ledger=ledger,
            watchlist=watchlist,
            playback=playback,
            recommendations=recommendations,
        )

    return _make
