"""Pydantic models describing catalog entries and request payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .tiers import normalize_tier

ContentType = Literal["movie", "series"]
PublishStatus = Literal["draft", "published", "archived"]
SortField = Literal["views", "rating", "created"]


class QualityVariant(BaseModel):
    """A single encoded rendition of a title."""

    quality: str
    url: str
    size_mb: float | None = Field(
        default=None, validation_alias=AliasChoices("sizeMb", "size_mb", "size")
    )


class EpisodeRef(BaseModel):
    """Playable reference for one episode of a series."""

    id: str = Field(validation_alias=AliasChoices("id", "_id", "episodeId"))
    video_url: str | None = Field(
        default=None, validation_alias=AliasChoices("videoUrl", "video_url")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value


class CatalogEntry(BaseModel):
    """Catalog metadata for one piece of content."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id", "contentId"))
    title: str = ""
    type: ContentType
    genres: list[str] = Field(default_factory=list)
    director: str | None = None
    cast: list[str] = Field(default_factory=list)
    external_rating: float | None = Field(
        default=None,
        validation_alias=AliasChoices("externalRating", "imdbRating", "external_rating"),
    )
    view_count: int = Field(
        default=0, validation_alias=AliasChoices("viewCount", "views", "view_count")
    )
    access_tier: str = Field(
        default="free",
        validation_alias=AliasChoices(
            "accessTier", "subscriptionRequired", "access_tier"
        ),
    )
    status: PublishStatus = "published"
    created_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("createdAt", "created_at")
    )
    video_url: str | None = Field(
        default=None, validation_alias=AliasChoices("videoUrl", "video_url")
    )
    qualities: list[QualityVariant] = Field(
        default_factory=list,
        validation_alias=AliasChoices("videoQuality", "qualities"),
    )
    episodes: list[EpisodeRef] = Field(default_factory=list)
    subtitles: list[dict[str, str]] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_seasons(cls, data: Any) -> Any:
        """Collapse nested season listings into a flat episode list."""

        if not isinstance(data, dict) or "seasons" not in data:
            return data
        payload = dict(data)
        seasons = payload.pop("seasons") or []
        episodes = list(payload.get("episodes") or [])
        for season in seasons:
            if not isinstance(season, dict):
                continue
            for episode in season.get("episodes") or []:
                if isinstance(episode, dict):
                    episodes.append(episode)
        payload["episodes"] = episodes
        return payload

    @field_validator("cast", mode="before")
    @classmethod
    def _cast_names(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        names: list[str] = []
        for member in value:
            if isinstance(member, dict):
                name = member.get("name")
            else:
                name = member
            if name:
                names.append(str(name))
        return names

    @field_validator("genres", mode="before")
    @classmethod
    def _drop_blank_genres(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(genre).strip() for genre in value if str(genre).strip()]
        return value

    def genre_keys(self) -> set[str]:
        """Case-folded genre names for overlap checks."""

        return {genre.casefold() for genre in self.genres}

    def episode_url(self, episode_id: str | None) -> str | None:
        if not episode_id:
            return None
        for episode in self.episodes:
            if episode.id == episode_id:
                return episode.video_url
        return None

    def quality_url(self, quality: str | None) -> str | None:
        if not quality:
            return None
        for variant in self.qualities:
            if variant.quality == quality:
                return variant.url
        return None

    def to_summary(self) -> dict[str, object]:
        """Return the listing payload used in recommendation responses."""

        summary: dict[str, object] = {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "genres": list(self.genres),
            "views": self.view_count,
        }
        if self.external_rating is not None:
            summary["externalRating"] = self.external_rating
        if self.director:
            summary["director"] = self.director
        return summary


class CandidateQuery(BaseModel):
    """Filter, sort and limit sent to the catalog's candidate query."""

    genres: tuple[str, ...] = ()
    content_type: ContentType | None = None
    exclude_ids: frozenset[str] = frozenset()
    status: PublishStatus | None = "published"
    min_rating: float | None = None
    director: str | None = None
    cast: tuple[str, ...] = ()
    sort: tuple[SortField, ...] = ("views",)
    limit: int = Field(default=20, ge=0)

    def matches(self, entry: CatalogEntry) -> bool:
        """Return ``True`` when ``entry`` satisfies every filter."""

        if entry.id in self.exclude_ids:
            return False
        if self.status is not None and entry.status != self.status:
            return False
        if self.content_type is not None and entry.type != self.content_type:
            return False
        if self.genres:
            wanted = {genre.casefold() for genre in self.genres}
            if not wanted & entry.genre_keys():
                return False
        if self.min_rating is not None:
            if entry.external_rating is None or entry.external_rating < self.min_rating:
                return False
        if self.director is not None and entry.director != self.director:
            return False
        if self.cast and not set(self.cast) & set(entry.cast):
            return False
        return True

    def sort_key(self, entry: CatalogEntry) -> tuple[float, ...]:
        """Descending sort key; missing values rank last."""

        key: list[float] = []
        for field in self.sort:
            if field == "views":
                key.append(-float(entry.view_count))
            elif field == "rating":
                rating = entry.external_rating
                key.append(-rating if rating is not None else float("inf"))
            else:
                created = entry.created_at
                key.append(-created.timestamp() if created else float("inf"))
        return tuple(key)

    def to_params(self) -> dict[str, str]:
        """Encode the query as request parameters for the catalog API."""

        params: dict[str, str] = {
            "sort": ",".join(self.sort),
            "limit": str(self.limit),
        }
        if self.genres:
            params["genres"] = ",".join(self.genres)
        if self.content_type:
            params["type"] = self.content_type
        if self.exclude_ids:
            params["exclude"] = ",".join(sorted(self.exclude_ids))
        if self.status:
            params["status"] = self.status
        if self.min_rating is not None:
            params["minRating"] = str(self.min_rating)
        if self.director:
            params["director"] = self.director
        if self.cast:
            params["cast"] = ",".join(self.cast)
        return params


class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("content_id", "episode_id", mode="before", check_fields=False)
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value


class StartPlaybackRequest(_RequestModel):
    content_id: str = Field(validation_alias=AliasChoices("contentId", "content_id"))
    episode_id: str | None = Field(
        default=None, validation_alias=AliasChoices("episodeId", "episode_id")
    )
    duration: float = Field(
        validation_alias=AliasChoices("duration", "durationSeconds")
    )
    quality: str | None = None
    device: str | None = None


class ProgressReport(_RequestModel):
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("sessionId", "session_id")
    )
    content_id: str = Field(validation_alias=AliasChoices("contentId", "content_id"))
    episode_id: str | None = Field(
        default=None, validation_alias=AliasChoices("episodeId", "episode_id")
    )
    current_time: float = Field(
        validation_alias=AliasChoices("currentTime", "current_time")
    )
    duration: float


class CompletionRequest(_RequestModel):
    content_id: str = Field(validation_alias=AliasChoices("contentId", "content_id"))
    episode_id: str | None = Field(
        default=None, validation_alias=AliasChoices("episodeId", "episode_id")
    )


class Viewer(BaseModel):
    """Authenticated viewer identity forwarded by the gateway."""

    id: str
    tier: str = "free"

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: object) -> str:
        return normalize_tier(value if isinstance(value, str) else None)
