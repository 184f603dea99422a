"""Typed failures raised by the playback and recommendation services."""

from __future__ import annotations


class ContentNotFound(KeyError):
    """The referenced content id cannot be resolved by the catalog."""

    def __init__(self, content_id: str):
        super().__init__(content_id)
        self.content_id = content_id

    def __str__(self) -> str:
        return f"Content {self.content_id} not found"


class AccessDenied(PermissionError):
    """The viewer's subscription tier is below the content's required tier."""

    def __init__(self, required_tier: str, viewer_tier: str):
        super().__init__(f"This content requires a {required_tier} subscription")
        self.required_tier = required_tier
        self.viewer_tier = viewer_tier


class InvalidProgress(ValueError):
    """A progress report or duration failed validation."""


class ConcurrentUpdateConflict(RuntimeError):
    """A conditional write lost a race against another writer."""


class CatalogUnavailable(RuntimeError):
    """The remote catalog could not be reached after retrying."""
