"""Entry point for the FastAPI-powered playback and recommendation service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Awaitable, TypeVar

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from .config import Settings, settings
from .database import Database
from .errors import (
    AccessDenied,
    CatalogUnavailable,
    ConcurrentUpdateConflict,
    ContentNotFound,
)
from .models import CompletionRequest, ProgressReport, StartPlaybackRequest, Viewer
from .services.catalog import CatalogAccessor, CatalogClient, StaticCatalog
from .services.history import WatchHistoryLedger
from .services.playback import PlaybackService
from .services.recommendations import RecommendationService
from .services.watchlist import WatchlistService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

app: FastAPI


async def _build_catalog(
    app_settings: Settings, exit_stack: AsyncExitStack
) -> CatalogAccessor:
    if app_settings.catalog_api_url is not None:
        http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(app_settings.catalog_api_url),
                timeout=httpx.Timeout(10.0, connect=5.0),
            )
        )
        return CatalogClient(http_client)
    if app_settings.catalog_file:
        return StaticCatalog.from_file(app_settings.catalog_file)
    logger.warning("No catalog configured, serving an empty catalog")
    return StaticCatalog([])


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    app_settings: Settings = fastapi_app.state.settings
    exit_stack = AsyncExitStack()
    database = Database(app_settings.database_url)
    await database.create_all()

    catalog = await _build_catalog(app_settings, exit_stack)
    ledger = WatchHistoryLedger(app_settings, database.session_factory)
    watchlist = WatchlistService(catalog, database.session_factory)
    playback = PlaybackService(app_settings, catalog, ledger, database.session_factory)
    recommendations = RecommendationService(app_settings, catalog, ledger, watchlist)

    fastapi_app.state.database = database
    fastapi_app.state.catalog = catalog
    fastapi_app.state.history_ledger = ledger
    fastapi_app.state.watchlist_service = watchlist
    fastapi_app.state.playback_service = playback
    fastapi_app.state.recommendation_service = recommendations

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or settings
    fastapi_app = FastAPI(
        title=app_settings.app_name,
        description="Playback state tracking and recommendation scoring",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    fastapi_app.state.settings = app_settings

    register_routes(fastapi_app)
    return fastapi_app


def _get_state(fastapi_app: FastAPI, name: str, expected: type[T]) -> T:
    service = getattr(fastapi_app.state, name, None)
    if not isinstance(service, expected):
        raise RuntimeError(f"{expected.__name__} not initialised")
    return service


def get_playback_service(fastapi_app: FastAPI) -> PlaybackService:
    return _get_state(fastapi_app, "playback_service", PlaybackService)


def get_history_ledger(fastapi_app: FastAPI) -> WatchHistoryLedger:
    return _get_state(fastapi_app, "history_ledger", WatchHistoryLedger)


def get_watchlist_service(fastapi_app: FastAPI) -> WatchlistService:
    return _get_state(fastapi_app, "watchlist_service", WatchlistService)


def get_recommendation_service(fastapi_app: FastAPI) -> RecommendationService:
    return _get_state(fastapi_app, "recommendation_service", RecommendationService)


def register_routes(fastapi_app: FastAPI) -> None:
    def _viewer(request: Request) -> Viewer:
        viewer_id = (request.headers.get("x-viewer-id") or "").strip()
        if not viewer_id:
            raise HTTPException(status_code=401, detail="Authentication required")
        return Viewer(id=viewer_id, tier=request.headers.get("x-viewer-tier"))

    async def _parse(request: Request, model: type[M]) -> M:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=exc.errors(include_url=False)
            ) from exc

    async def _guard(operation: Awaitable[T]) -> T:
        try:
            return await operation
        except ContentNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except AccessDenied as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConcurrentUpdateConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except CatalogUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/playback/start")
    async def start_playback(request: Request) -> dict[str, Any]:
        viewer = _viewer(request)
        body = await _parse(request, StartPlaybackRequest)
        service = get_playback_service(fastapi_app)
        handle = await _guard(
            service.start_or_resume(
                viewer,
                body.content_id,
                episode_id=body.episode_id,
                duration_seconds=body.duration,
                quality=body.quality,
                device=body.device or request.headers.get("user-agent"),
            )
        )
        return handle.to_payload()

    @fastapi_app.post("/api/playback/progress")
    async def report_progress(request: Request) -> dict[str, Any]:
        viewer = _viewer(request)
        body = await _parse(request, ProgressReport)
        service = get_playback_service(fastapi_app)
        state = await _guard(
            service.report_progress(
                viewer.id,
                body.content_id,
                current_time=body.current_time,
                duration=body.duration,
                episode_id=body.episode_id,
                session_id=body.session_id,
            )
        )
        return state.to_payload()

    @fastapi_app.post("/api/playback/complete")
    async def mark_completed(request: Request) -> dict[str, Any]:
        viewer = _viewer(request)
        body = await _parse(request, CompletionRequest)
        service = get_playback_service(fastapi_app)
        state = await _guard(
            service.mark_completed(viewer.id, body.content_id, body.episode_id)
        )
        if state is None:
            raise HTTPException(status_code=404, detail="No playback session found")
        return state.to_payload()

    @fastapi_app.get("/api/playback/resume/{content_id}")
    async def resume_point(
        request: Request,
        content_id: str,
        episode_id: str | None = Query(default=None, alias="episodeId"),
    ) -> dict[str, Any]:
        viewer = _viewer(request)
        service = get_playback_service(fastapi_app)
        info = await _guard(
            service.get_resume_point(viewer.id, content_id, episode_id)
        )
        return info.to_payload()

    @fastapi_app.get("/api/playback/continue-watching")
    async def continue_watching(
        request: Request, limit: int = Query(default=20, ge=1, le=100)
    ) -> dict[str, Any]:
        viewer = _viewer(request)
        service = get_playback_service(fastapi_app)
        items = await _guard(service.list_continue_watching(viewer.id, limit))
        return {"data": [item.to_payload() for item in items]}

    @fastapi_app.get("/api/playback/quality/{content_id}")
    async def quality_options(request: Request, content_id: str) -> dict[str, Any]:
        viewer = _viewer(request)
        service = get_playback_service(fastapi_app)
        options = await _guard(service.quality_options(viewer, content_id))
        return {"data": options}

    @fastapi_app.get("/api/history")
    async def watch_history(
        request: Request,
        offset: int = Query(default=0, ge=0),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> dict[str, Any]:
        viewer = _viewer(request)
        ledger = get_history_ledger(fastapi_app)
        page = await _guard(ledger.list(viewer.id, offset=offset, limit=limit))
        return page.to_payload()

    @fastapi_app.delete("/api/history")
    async def clear_history(request: Request) -> dict[str, str]:
        viewer = _viewer(request)
        ledger = get_history_ledger(fastapi_app)
        await _guard(ledger.clear(viewer.id))
        return {"status": "cleared"}

    @fastapi_app.get("/api/watchlist")
    async def watchlist(request: Request) -> dict[str, Any]:
        viewer = _viewer(request)
        service = get_watchlist_service(fastapi_app)
        content_ids = await _guard(service.list(viewer.id))
        return {"data": content_ids}

    @fastapi_app.post("/api/watchlist/{content_id}", status_code=201)
    async def add_to_watchlist(request: Request, content_id: str) -> dict[str, str]:
        viewer = _viewer(request)
        service = get_watchlist_service(fastapi_app)
        await _guard(service.add(viewer.id, content_id))
        return {"status": "added", "contentId": content_id}

    @fastapi_app.delete("/api/watchlist/{content_id}")
    async def remove_from_watchlist(
        request: Request, content_id: str
    ) -> dict[str, str]:
        viewer = _viewer(request)
        service = get_watchlist_service(fastapi_app)
        removed = await _guard(service.remove(viewer.id, content_id))
        if not removed:
            raise HTTPException(status_code=404, detail="Content not in watchlist")
        return {"status": "removed", "contentId": content_id}

    @fastapi_app.get("/api/recommendations/personalized")
    async def personalized(
        request: Request,
        limit: int = Query(default=20, ge=1, le=100),
        seed: int | None = Query(default=None),
    ) -> dict[str, Any]:
        viewer = _viewer(request)
        service = get_recommendation_service(fastapi_app)
        result = await _guard(service.personalized(viewer.id, limit, seed=seed))
        return result.to_payload()

    @fastapi_app.get("/api/recommendations/similar/{content_id}")
    async def similar(
        content_id: str, limit: int = Query(default=12, ge=1, le=100)
    ) -> dict[str, Any]:
        service = get_recommendation_service(fastapi_app)
        result = await _guard(service.similar(content_id, limit))
        return result.to_payload()

    @fastapi_app.get("/api/recommendations/because-watched/{content_id}")
    async def because_watched(
        content_id: str, limit: int = Query(default=10, ge=1, le=100)
    ) -> dict[str, Any]:
        service = get_recommendation_service(fastapi_app)
        result = await _guard(service.because_you_watched(content_id, limit))
        return result.to_payload()

    @fastapi_app.get("/api/recommendations/top-picks")
    async def top_picks(
        request: Request, limit: int = Query(default=10, ge=1, le=100)
    ) -> dict[str, Any]:
        viewer = _viewer(request)
        service = get_recommendation_service(fastapi_app)
        result = await _guard(service.top_picks(viewer.id, limit))
        return result.to_payload()

    @fastapi_app.get("/api/recommendations/genre/{genre}")
    async def by_genre(
        genre: str, limit: int = Query(default=20, ge=1, le=100)
    ) -> dict[str, Any]:
        service = get_recommendation_service(fastapi_app)
        result = await _guard(service.by_genre(genre, limit))
        return result.to_payload()

    @fastapi_app.get("/api/recommendations/trending/{genre}")
    async def trending(
        genre: str, limit: int = Query(default=10, ge=1, le=100)
    ) -> dict[str, Any]:
        service = get_recommendation_service(fastapi_app)
        result = await _guard(service.trending_in_genre(genre, limit))
        return result.to_payload()


app = create_app()
