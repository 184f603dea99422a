"""Subscription tier ordering and the playback qualities each tier unlocks."""

from __future__ import annotations

TIER_ORDER: tuple[str, ...] = ("free", "basic", "standard", "premium")

TIER_QUALITIES: dict[str, tuple[str, ...]] = {
    "free": ("360p", "480p"),
    "basic": ("360p", "480p", "720p"),
    "standard": ("360p", "480p", "720p", "1080p"),
    "premium": ("360p", "480p", "720p", "1080p", "4K"),
}


def normalize_tier(value: str | None) -> str:
    """Return a known tier name, treating unknown or missing values as free."""

    if not value:
        return "free"
    lowered = value.strip().lower()
    if lowered in TIER_ORDER:
        return lowered
    return "free"


def tier_allows(viewer_tier: str | None, required_tier: str | None) -> bool:
    """Return ``True`` when ``viewer_tier`` ranks at or above ``required_tier``."""

    viewer_rank = TIER_ORDER.index(normalize_tier(viewer_tier))
    required_rank = TIER_ORDER.index(normalize_tier(required_tier))
    return viewer_rank >= required_rank


def allowed_qualities(viewer_tier: str | None) -> tuple[str, ...]:
    return TIER_QUALITIES[normalize_tier(viewer_tier)]
