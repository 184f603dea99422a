"""Genre-affinity recommendations built from history, watchlist and catalog."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ..config import Settings
from ..models import CandidateQuery, CatalogEntry
from .catalog import CatalogAccessor
from .history import WatchHistoryLedger
from .watchlist import WatchlistService

logger = logging.getLogger(__name__)

HISTORY_HEAD_WEIGHT = 10.0
HISTORY_WEIGHT_DECAY = 0.5
HISTORY_WEIGHT_FLOOR = 1.0
WATCHLIST_WEIGHT = 2.0
PERSONALIZED_GENRE_COUNT = 5
RATIONALE_GENRE_COUNT = 3
CAST_OVERLAP_MEMBERS = 3


def history_weight(position: int) -> float:
    """Weight of the history entry at ``position`` (0 is the most recent)."""

    return max(HISTORY_WEIGHT_FLOOR, HISTORY_HEAD_WEIGHT - position * HISTORY_WEIGHT_DECAY)


def accumulate_genre_scores(
    history_genres: Sequence[Sequence[str] | None],
    watchlist_genres: Iterable[Sequence[str]] = (),
) -> dict[str, float]:
    """Sum position-weighted history genres and flat watchlist genres.

    ``history_genres`` is indexed by ledger position; ``None`` marks an entry
    whose content could not be resolved and keeps the following entries at
    their original positions. The returned mapping preserves the order in
    which genres were first encountered.
    """

    scores: dict[str, float] = {}
    for position, genres in enumerate(history_genres):
        if not genres:
            continue
        weight = history_weight(position)
        for genre in genres:
            scores[genre] = scores.get(genre, 0.0) + weight
    for genres in watchlist_genres:
        for genre in genres:
            scores[genre] = scores.get(genre, 0.0) + WATCHLIST_WEIGHT
    return scores


def top_genres(scores: Mapping[str, float], count: int) -> list[str]:
    """Highest scoring genres; ties keep their first-encountered order."""

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [genre for genre, _ in ranked[:count]]


@dataclass
class RecommendationResult:
    """Ranked items plus the rationale they were selected on."""

    items: list[CatalogEntry]
    based_on: Any = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "data": [entry.to_summary() for entry in self.items],
            "basedOn": self.based_on,
        }


class RecommendationService:
    """Rank catalog candidates for a viewer or around a pivot title.

    The scorer holds no state of its own; every call reads the ledger, the
    watchlist and the catalog afresh.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: CatalogAccessor,
        ledger: WatchHistoryLedger,
        watchlist: WatchlistService,
    ):
        self._settings = settings
        self._catalog = catalog
        self._ledger = ledger
        self._watchlist = watchlist

    async def personalized(
        self, viewer_id: str, limit: int = 20, seed: int | None = None
    ) -> RecommendationResult:
        """Recommend content for ``viewer_id`` from their genre affinity.

        Items matching the viewer's top genres come first, then the most
        popular remaining titles fill up to ``limit``. The combined list is
        shuffled for presentation variety; the shuffle carries no ranking
        signal and can be seeded or switched off through settings.
        """

        if limit <= 0:
            return RecommendationResult(items=[], based_on=[])

        history, watchlist_ids = await asyncio.gather(
            self._ledger.entries(viewer_id), self._watchlist.list(viewer_id)
        )
        resolved = await self._catalog.resolve_many(
            [entry.content_id for entry in history] + watchlist_ids
        )
        history_genres = [
            resolved[entry.content_id].genres if entry.content_id in resolved else None
            for entry in history
        ]
        watchlist_genres = [
            resolved[content_id].genres
            for content_id in watchlist_ids
            if content_id in resolved
        ]
        scores = accumulate_genre_scores(history_genres, watchlist_genres)
        genres = top_genres(scores, PERSONALIZED_GENRE_COUNT)
        excluded = frozenset(entry.content_id for entry in history if entry.completed)

        items: list[CatalogEntry] = []
        if genres:
            items = await self._catalog.query_candidates(
                CandidateQuery(
                    genres=tuple(genres),
                    exclude_ids=excluded,
                    sort=("views", "rating"),
                    limit=limit,
                )
            )
        remaining = limit - len(items)
        if remaining > 0:
            selected = excluded | {entry.id for entry in items}
            items.extend(
                await self._catalog.query_candidates(
                    CandidateQuery(
                        exclude_ids=frozenset(selected),
                        sort=("views", "created"),
                        limit=remaining,
                    )
                )
            )
        items = items[:limit]

        if self._settings.recommendation_shuffle:
            if seed is None:
                seed = self._settings.recommendation_seed
            random.Random(seed).shuffle(items)

        logger.debug(
            "Personalized %s items for viewer %s from genres %s",
            len(items),
            viewer_id,
            genres,
        )
        return RecommendationResult(
            items=items, based_on=genres[:RATIONALE_GENRE_COUNT]
        )

    async def similar(self, content_id: str, limit: int = 12) -> RecommendationResult:
        """Same-type titles sharing at least one genre with the pivot."""

        pivot = await self._catalog.resolve(content_id)
        if not pivot.genres or limit <= 0:
            return RecommendationResult(items=[], based_on=list(pivot.genres))
        items = await self._catalog.query_candidates(
            CandidateQuery(
                genres=tuple(pivot.genres),
                content_type=pivot.type,
                exclude_ids=frozenset({pivot.id}),
                sort=("rating", "views"),
                limit=limit,
            )
        )
        return RecommendationResult(items=items, based_on=list(pivot.genres))

    async def because_you_watched(
        self, content_id: str, limit: int = 10
    ) -> RecommendationResult:
        pivot = await self._catalog.resolve(content_id)
        based_on = {"id": pivot.id, "title": pivot.title}
        if limit <= 0:
            return RecommendationResult(items=[], based_on=based_on)

        ranking = CandidateQuery(
            exclude_ids=frozenset({pivot.id}), sort=("rating", "views"), limit=limit
        )
        queries: list[CandidateQuery] = []
        if pivot.genres:
            queries.append(ranking.model_copy(update={"genres": tuple(pivot.genres)}))
        if pivot.director:
            queries.append(ranking.model_copy(update={"director": pivot.director}))
        cast = tuple(pivot.cast[:CAST_OVERLAP_MEMBERS])
        if cast:
            queries.append(ranking.model_copy(update={"cast": cast}))
        if not queries:
            return RecommendationResult(items=[], based_on=based_on)

        batches = await asyncio.gather(
            *(self._catalog.query_candidates(query) for query in queries)
        )
        merged: dict[str, CatalogEntry] = {}
        for batch in batches:
            for entry in batch:
                if entry.id != pivot.id:
                    merged.setdefault(entry.id, entry)
        items = sorted(merged.values(), key=ranking.sort_key)[:limit]
        return RecommendationResult(items=items, based_on=based_on)

    async def top_picks(self, viewer_id: str, limit: int = 10) -> RecommendationResult:
        """Highly rated titles in the viewer's most watched genres."""

        history = await self._ledger.entries(viewer_id)
        resolved = await self._catalog.resolve_many(
            entry.content_id for entry in history
        )
        counts: Counter[str] = Counter()
        for entry in history:
            content = resolved.get(entry.content_id)
            if content is not None:
                counts.update(content.genres)
        genres = [genre for genre, _ in counts.most_common(RATIONALE_GENRE_COUNT)]
        if not genres:
            genres = list(self._settings.default_genres)
        if limit <= 0:
            return RecommendationResult(items=[], based_on=genres)

        items = await self._catalog.query_candidates(
            CandidateQuery(
                genres=tuple(genres),
                min_rating=self._settings.top_picks_min_rating,
                sort=("rating", "views"),
                limit=limit,
            )
        )
        return RecommendationResult(items=items, based_on=genres)

    async def by_genre(
        self,
        genre: str,
        limit: int = 20,
        exclude_ids: Iterable[str] = (),
    ) -> RecommendationResult:
        items = await self._catalog.query_candidates(
            CandidateQuery(
                genres=(genre,),
                exclude_ids=frozenset(exclude_ids),
                sort=("views", "rating"),
                limit=max(0, limit),
            )
        )
        return RecommendationResult(items=items, based_on=[genre])

    async def trending_in_genre(
        self, genre: str, limit: int = 10
    ) -> RecommendationResult:
        items = await self._catalog.query_candidates(
            CandidateQuery(genres=(genre,), sort=("views",), limit=max(0, limit))
        )
        return RecommendationResult(items=items, based_on=[genre])
