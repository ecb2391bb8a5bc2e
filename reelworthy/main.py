"""Entry point for the ReelWorthy FastAPI service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from .config import settings
from .database import Database
from .duration import DurationClass
from .models import RecommendationRequest, SyncRequest, WatchedUpdate
from .services.gemini import GeminiClient, ModelApiError
from .services.ingestion import IngestionPipeline
from .services.recommendations import RecommendationService
from .services.reconciler import CacheReconciler
from .services.store import CatalogStore
from .services.sync import SyncService
from .services.youtube import ContentApiError, YouTubeClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    youtube_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.youtube_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    gemini_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.gemini_api_url),
            timeout=httpx.Timeout(120.0, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    youtube = YouTubeClient(settings, youtube_http_client)
    gemini = GeminiClient(settings, gemini_http_client)
    store = CatalogStore(database.session_factory)
    pipeline = IngestionPipeline(settings, youtube, store)
    sync_service = SyncService(settings, pipeline, CacheReconciler(store))
    recommendation_service = RecommendationService(settings, store, gemini)

    fastapi_app.state.database = database
    fastapi_app.state.store = store
    fastapi_app.state.gemini_client = gemini
    fastapi_app.state.sync_service = sync_service
    fastapi_app.state.recommendation_service = recommendation_service
    await sync_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await sync_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Conversational recommendations over your YouTube playlists",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def _state_service(fastapi_app: FastAPI, name: str, expected: type) -> Any:
    service = getattr(fastapi_app.state, name, None)
    if not isinstance(service, expected):
        raise RuntimeError(f"{expected.__name__} not initialised")
    return service


def get_store(fastapi_app: FastAPI) -> CatalogStore:
    return _state_service(fastapi_app, "store", CatalogStore)


def get_sync_service(fastapi_app: FastAPI) -> SyncService:
    return _state_service(fastapi_app, "sync_service", SyncService)


def get_recommendation_service(fastapi_app: FastAPI) -> RecommendationService:
    return _state_service(
        fastapi_app, "recommendation_service", RecommendationService
    )


def get_gemini_client(fastapi_app: FastAPI) -> GeminiClient:
    return _state_service(fastapi_app, "gemini_client", GeminiClient)


async def _read_body(request: Request, model: type[BaseModel]) -> Any:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail=exc.errors(include_url=False, include_context=False)
        ) from exc


def _require_youtube_credentials() -> None:
    if not (settings.youtube_access_token or settings.youtube_api_key):
        raise HTTPException(
            status_code=503, detail="YouTube credentials are not configured"
        )


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/videos")
    async def list_videos(long_only: bool = False) -> JSONResponse:
        store = get_store(fastapi_app)
        items = await store.get_all_items()
        if long_only:
            items = [item for item in items if item.duration_class is DurationClass.LONG]
        return JSONResponse({"items": [item.to_payload() for item in items]})

    @fastapi_app.post("/api/videos/{item_id}/watched")
    async def mark_watched(item_id: str, request: Request) -> JSONResponse:
        body: WatchedUpdate = await _read_body(request, WatchedUpdate)
        store = get_store(fastapi_app)
        if not await store.set_watched(item_id, body.watched):
            raise HTTPException(status_code=404, detail="Video not found")
        item = await store.get_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return JSONResponse(item.to_payload())

    @fastapi_app.post("/api/videos/{item_id}/fetch")
    async def fetch_video(item_id: str) -> JSONResponse:
        _require_youtube_credentials()
        service = get_sync_service(fastapi_app)
        try:
            item = await service.fetch_item(item_id)
        except ContentApiError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if item is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return JSONResponse(item.to_payload())

    @fastapi_app.get("/api/playlists")
    async def list_playlists() -> JSONResponse:
        store = get_store(fastapi_app)
        collections = await store.get_all_collections()
        return JSONResponse(
            {
                "playlists": [
                    collection.model_dump(mode="json", by_alias=True)
                    for collection in collections
                ]
            }
        )

    @fastapi_app.post("/api/playlists/refresh")
    async def refresh_playlists() -> JSONResponse:
        if not settings.youtube_access_token:
            raise HTTPException(
                status_code=503,
                detail="Listing your playlists requires YOUTUBE_ACCESS_TOKEN",
            )
        service = get_sync_service(fastapi_app)
        try:
            collections = await service.refresh_collections()
        except ContentApiError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(
            {
                "playlists": [
                    collection.model_dump(mode="json", by_alias=True)
                    for collection in collections
                ]
            }
        )

    @fastapi_app.post("/api/sync")
    async def run_sync(request: Request) -> JSONResponse:
        body: SyncRequest = await _read_body(request, SyncRequest)
        _require_youtube_credentials()
        service = get_sync_service(fastapi_app)
        report = await service.run_sync(
            body.playlist_ids, include_subscriptions=body.include_subscriptions
        )
        return JSONResponse(report.model_dump(mode="json", by_alias=True))

    @fastapi_app.post("/api/playlists/{collection_id}/sync")
    async def sync_playlist(collection_id: str) -> JSONResponse:
        _require_youtube_credentials()
        service = get_sync_service(fastapi_app)
        try:
            ids = await service.sync_collection(collection_id)
        except ContentApiError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse({"playlistId": collection_id, "syncedIds": ids})

    @fastapi_app.post("/api/recommendations")
    async def recommendations(request: Request) -> StreamingResponse:
        body: RecommendationRequest = await _read_body(request, RecommendationRequest)
        service = get_recommendation_service(fastapi_app)

        async def _events() -> AsyncIterator[str]:
            async for update in service.get_recommendations(
                body.query, model=body.model, deep_thinking=body.deep_thinking
            ):
                yield f"data: {json.dumps(update.to_payload(), ensure_ascii=False)}\n\n"

        return StreamingResponse(
            _events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @fastapi_app.get("/api/models")
    async def list_models() -> JSONResponse:
        if not settings.gemini_api_key:
            raise HTTPException(status_code=503, detail="GEMINI_API_KEY is not configured")
        client = get_gemini_client(fastapi_app)
        try:
            models = await client.list_models()
        except ModelApiError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(
            {
                "default": settings.gemini_model,
                "models": [
                    {
                        "id": model.model_id,
                        "displayName": model.display_name or model.model_id,
                        "description": model.description,
                    }
                    for model in models
                ],
            }
        )

    @fastapi_app.get("/api/search-history")
    async def search_history() -> JSONResponse:
        store = get_store(fastapi_app)
        queries = await store.recent_searches(settings.search_history_limit)
        return JSONResponse({"queries": queries})

    @fastapi_app.delete("/api/search-history/{query}")
    async def delete_search(query: str) -> JSONResponse:
        store = get_store(fastapi_app)
        if not await store.delete_search(query):
            raise HTTPException(status_code=404, detail="Search not found")
        return JSONResponse({"deleted": query})


app = create_app()
