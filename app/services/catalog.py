"""Read-only access to the external content catalog."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Sequence
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..errors import CatalogUnavailable, ContentNotFound
from ..models import CandidateQuery, CatalogEntry
from ..utils import retry_read

logger = logging.getLogger(__name__)


class CatalogAccessor(ABC):
    """Interface shared by the remote and static catalog implementations."""

    _resolve_concurrency = 8

    @abstractmethod
    async def resolve(self, content_id: str) -> CatalogEntry:
        """Return the entry for ``content_id`` or raise ``ContentNotFound``."""

    @abstractmethod
    async def query_candidates(self, query: CandidateQuery) -> list[CatalogEntry]:
        """Return entries matching ``query`` in its sort order."""

    async def resolve_many(self, content_ids: Iterable[str]) -> dict[str, CatalogEntry]:
        """Resolve several ids at once, silently skipping unknown content."""

        unique_ids = list(dict.fromkeys(content_ids))
        if not unique_ids:
            return {}
        semaphore = asyncio.Semaphore(self._resolve_concurrency)

        async def _lookup(content_id: str) -> CatalogEntry | None:
            async with semaphore:
                try:
                    return await self.resolve(content_id)
                except ContentNotFound:
                    logger.debug("Skipping unresolvable content %s", content_id)
                    return None

        results = await asyncio.gather(*(_lookup(content_id) for content_id in unique_ids))
        return {
            content_id: entry
            for content_id, entry in zip(unique_ids, results)
            if entry is not None
        }


class CatalogClient(CatalogAccessor):
    """Thin wrapper around the catalog service HTTP API."""

    _CONTENT_PATH = "/content"

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def resolve(self, content_id: str) -> CatalogEntry:
        """Return catalog metadata for ``content_id``."""

        path = f"{self._CONTENT_PATH}/{quote(content_id, safe='')}"
        response = await self._get(path, label=f"catalog lookup of {content_id}")
        if response.status_code == 404:
            raise ContentNotFound(content_id)
        self._raise_for_status(response, content_id)

        payload = response.json()
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        try:
            return CatalogEntry.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Catalog returned malformed entry for %s: %s", content_id, exc)
            raise ContentNotFound(content_id) from exc

    async def query_candidates(self, query: CandidateQuery) -> list[CatalogEntry]:
        """Run a filtered, sorted candidate query against the catalog."""

        if query.limit <= 0:
            return []
        response = await self._get(
            self._CONTENT_PATH,
            params=query.to_params(),
            label="catalog candidate query",
        )
        self._raise_for_status(response, "candidate query")

        payload = response.json()
        raw_items: Any = payload
        if isinstance(payload, dict):
            raw_items = payload.get("items") or payload.get("data") or []
        if not isinstance(raw_items, list):
            return []

        entries: list[CatalogEntry] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            try:
                entries.append(CatalogEntry.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed catalog candidate: %s", exc)
        return entries[: query.limit]

    async def _get(
        self,
        path: str,
        *,
        label: str,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        async def _request() -> httpx.Response:
            return await self._client.get(path, params=params)

        try:
            return await retry_read(
                _request, retry_on=(httpx.TransportError,), label=label
            )
        except httpx.TransportError as exc:
            logger.warning("Catalog unavailable during %s: %s", label, exc)
            raise CatalogUnavailable(f"Catalog unavailable during {label}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, subject: str) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Catalog request for %s failed: %s", subject, exc)
            raise CatalogUnavailable(
                f"Catalog request for {subject} failed with {response.status_code}"
            ) from exc


class StaticCatalog(CatalogAccessor):
    """In-memory catalog loaded from a JSON export."""

    def __init__(self, entries: Sequence[CatalogEntry]):
        self._entries: dict[str, CatalogEntry] = {entry.id: entry for entry in entries}

    @classmethod
    def from_payload(cls, payload: Any) -> "StaticCatalog":
        if isinstance(payload, dict):
            payload = payload.get("items") or payload.get("data") or []
        entries: list[CatalogEntry] = []
        for raw in payload or []:
            if not isinstance(raw, dict):
                continue
            try:
                entries.append(CatalogEntry.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed catalog entry: %s", exc)
        return cls(entries)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticCatalog":
        source = Path(path)
        catalog = cls.from_payload(json.loads(source.read_text(encoding="utf-8")))
        logger.info("Loaded %s catalog entries from %s", len(catalog), source)
        return catalog

    def __len__(self) -> int:
        return len(self._entries)

    async def resolve(self, content_id: str) -> CatalogEntry:
        entry = self._entries.get(content_id)
        if entry is None:
            raise ContentNotFound(content_id)
        return entry

    async def query_candidates(self, query: CandidateQuery) -> list[CatalogEntry]:
        if query.limit <= 0:
            return []
        matches = [entry for entry in self._entries.values() if query.matches(entry)]
        matches.sort(key=query.sort_key)
        return matches[: query.limit]
