"""Tests for the catalog accessors."""

from __future__ import annotations

import json

import httpx
import pytest

from app.errors import CatalogUnavailable, ContentNotFound
from app.models import CandidateQuery
from app.services.catalog import CatalogAccessor, CatalogClient, StaticCatalog


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def _movie_payload(content_id: str, **overrides) -> dict:
    payload = {
        "_id": content_id,
        "title": f"Movie {content_id}",
        "type": "movie",
        "genres": ["Drama"],
        "views": 10,
        "imdbRating": 7.5,
        "subscriptionRequired": "basic",
    }
    payload.update(overrides)
    return payload


@pytest.mark.anyio("asyncio")
async def test_resolve_unwraps_data_envelope() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"data": _movie_payload("m1")})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://catalog.test"
    ) as http_client:
        client = CatalogClient(http_client)
        entry = await client.resolve("m1")

    assert requests[0].url.path == "/content/m1"
    assert entry.id == "m1"
    assert entry.view_count == 10
    assert entry.external_rating == 7.5
    assert entry.access_tier == "basic"


@pytest.mark.anyio("asyncio")
async def test_resolve_maps_404_to_content_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Content not found"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://catalog.test"
    ) as http_client:
        client = CatalogClient(http_client)
        with pytest.raises(ContentNotFound):
            await client.resolve("missing")


@pytest.mark.anyio("asyncio")
async def test_transport_errors_are_retried_once() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=_movie_payload("m1"))

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://catalog.test"
    ) as http_client:
        client = CatalogClient(http_client)
        entry = await client.resolve("m1")

    assert attempts == 2
    assert entry.title == "Movie m1"


@pytest.mark.anyio("asyncio")
async def test_persistent_failures_raise_catalog_unavailable() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://catalog.test"
    ) as http_client:
        client = CatalogClient(http_client)
        with pytest.raises(CatalogUnavailable):
            await client.resolve("m1")

    assert attempts == 2


@pytest.mark.anyio("asyncio")
async def test_server_errors_raise_catalog_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://catalog.test"
    ) as http_client:
        client = CatalogClient(http_client)
        with pytest.raises(CatalogUnavailable):
            await client.query_candidates(CandidateQuery(limit=5))


@pytest.mark.anyio("asyncio")
async def test_query_candidates_encodes_filters() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={
                "items": [
                    _movie_payload("m1"),
                    {"title": "missing id and type"},
                    _movie_payload("m2"),
                ]
            },
        )

    query = CandidateQuery(
        genres=("Drama", "Crime"),
        content_type="movie",
        exclude_ids=frozenset({"b", "a"}),
        min_rating=7.0,
        sort=("rating", "views"),
        limit=1,
    )
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://catalog.test"
    ) as http_client:
        client = CatalogClient(http_client)
        entries = await client.query_candidates(query)

    params = captured[0].url.params
    assert captured[0].url.path == "/content"
    assert params["genres"] == "Drama,Crime"
    assert params["type"] == "movie"
    assert params["exclude"] == "a,b"
    assert params["status"] == "published"
    assert params["minRating"] == "7.0"
    assert params["sort"] == "rating,views"
    assert params["limit"] == "1"
    assert [entry.id for entry in entries] == ["m1"]


@pytest.mark.anyio("asyncio")
async def test_resolve_many_skips_unknown_content() -> None:
    catalog = StaticCatalog.from_payload([_movie_payload("m1"), _movie_payload("m2")])

    resolved = await catalog.resolve_many(["m2", "gone", "m1", "m2"])

    assert list(resolved) == ["m2", "m1"]


def test_static_catalog_loads_json_export(tmp_path) -> None:
    source = tmp_path / "catalog.json"
    source.write_text(
        json.dumps(
            {
                "data": [
                    _movie_payload("m1"),
                    {"_id": "broken"},
                    _movie_payload(
                        "s1",
                        type="series",
                        seasons=[{"episodes": [{"_id": "e1", "videoUrl": "u"}]}],
                    ),
                ]
            }
        ),
        encoding="utf-8",
    )

    catalog = StaticCatalog.from_file(source)

    assert len(catalog) == 2


def test_catalog_accessor_requires_both_lookups() -> None:
    class ResolveOnly(CatalogAccessor):
        async def resolve(self, content_id: str):
            raise ContentNotFound(content_id)

    with pytest.raises(TypeError):
        ResolveOnly()
