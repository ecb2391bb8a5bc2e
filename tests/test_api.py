"""HTTP route tests using stubbed services."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from reelworthy import main as main_module
from reelworthy.main import register_routes
from reelworthy.models import (
    CatalogItem,
    DisplayUpdate,
    HydratedRecommendation,
    SourceCollection,
    SyncReport,
)
from reelworthy.services.gemini import GeminiClient, ModelInfo
from reelworthy.services.recommendations import RecommendationService
from reelworthy.services.store import CatalogStore
from reelworthy.services.sync import SyncService
from reelworthy.services.youtube import ContentApiError


class DummyStore(CatalogStore):
    """In-memory CatalogStore stub for route testing."""

    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        # Skip super().__init__ so no database is touched.
        self.items: dict[str, CatalogItem] = {}
        self.collections: list[SourceCollection] = []
        self.searches: list[str] = []

    async def get_all_items(self) -> list[CatalogItem]:  # type: ignore[override]
        return list(self.items.values())

    async def get_item(self, item_id: str) -> CatalogItem | None:  # type: ignore[override]
        return self.items.get(item_id)

    async def set_watched(self, item_id: str, watched: bool) -> bool:  # type: ignore[override]
        item = self.items.get(item_id)
        if item is None:
            return False
        self.items[item_id] = item.model_copy(update={"watched": watched})
        return True

    async def get_all_collections(self) -> list[SourceCollection]:  # type: ignore[override]
        return list(self.collections)

    async def recent_searches(self, limit: int = 100) -> list[str]:  # type: ignore[override]
        return self.searches[:limit]

    async def delete_search(self, query: str) -> bool:  # type: ignore[override]
        if query not in self.searches:
            return False
        self.searches.remove(query)
        return True


class DummySyncService(SyncService):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        self.run_calls: list[tuple[Any, Any]] = []
        self.fail_collection = False

    async def run_sync(  # type: ignore[override]
        self, playlist_ids=None, *, include_subscriptions=None, **_: Any
    ) -> SyncReport:
        self.run_calls.append((playlist_ids, include_subscriptions))
        return SyncReport(attempted=1, succeeded=1, synced_ids=["v1"], reconciled=True)

    async def sync_collection(self, collection_id: str, **_: Any) -> list[str]:  # type: ignore[override]
        if self.fail_collection:
            raise ContentApiError("quota exceeded", status_code=403)
        return ["v1", "v2"]

    async def fetch_item(self, item_id: str, **_: Any) -> CatalogItem | None:  # type: ignore[override]
        if item_id == "missing":
            return None
        return CatalogItem(id=item_id, title="Fetched", duration="PT3M")


class DummyRecommendationService(RecommendationService):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        self.queries: list[str] = []

    async def get_recommendations(  # type: ignore[override]
        self, query: str, **_: Any
    ) -> AsyncIterator[DisplayUpdate]:
        self.queries.append(query)
        yield DisplayUpdate(text="Thinking")
        yield DisplayUpdate(
            text="Here",
            complete=True,
            recommendations=[
                HydratedRecommendation(
                    item=CatalogItem(id="v1", title="One", duration="PT2M"),
                    reason="fits",
                )
            ],
        )


class DummyGeminiClient(GeminiClient):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        pass

    async def list_models(self, api_key: str | None = None) -> list[ModelInfo]:  # type: ignore[override]
        return [
            ModelInfo(
                name="models/gemini-2.5-flash",
                display_name="Gemini 2.5 Flash",
                supported_generation_methods=["generateContent"],
            )
        ]


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(main_module.settings, "youtube_api_key", "yt-key")
    monkeypatch.setattr(main_module.settings, "youtube_access_token", None)
    monkeypatch.setattr(main_module.settings, "gemini_api_key", "gemini-key")

    app = FastAPI()
    register_routes(app)
    app.state.store = DummyStore()
    app.state.sync_service = DummySyncService()
    app.state.recommendation_service = DummyRecommendationService()
    app.state.gemini_client = DummyGeminiClient()
    return app


def test_healthcheck(api: FastAPI) -> None:
    with TestClient(api) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_videos_can_filter_long_form(api: FastAPI) -> None:
    api.state.store.items = {
        "long": CatalogItem(id="long", duration="PT10M"),
        "short": CatalogItem(id="short", duration="PT30S"),
        "pending": CatalogItem(id="pending"),
    }

    with TestClient(api) as client:
        everything = client.get("/api/videos").json()["items"]
        long_only = client.get("/api/videos", params={"long_only": "true"}).json()["items"]

    assert {item["id"] for item in everything} == {"long", "short", "pending"}
    assert [item["id"] for item in long_only] == ["long"]
    assert long_only[0]["formattedDuration"] == "10:00"
    assert long_only[0]["sourceLabel"] == ""


def test_mark_watched(api: FastAPI) -> None:
    api.state.store.items = {"v1": CatalogItem(id="v1")}

    with TestClient(api) as client:
        response = client.post("/api/videos/v1/watched", json={"watched": True})
        missing = client.post("/api/videos/nope/watched", json={"watched": True})
        invalid = client.post("/api/videos/v1/watched", json={"watched": "maybe"})

    assert response.status_code == 200
    assert response.json()["watched"] is True
    assert missing.status_code == 404
    assert invalid.status_code == 400


def test_fetch_video(api: FastAPI) -> None:
    with TestClient(api) as client:
        found = client.post("/api/videos/v9/fetch")
        missing = client.post("/api/videos/missing/fetch")

    assert found.status_code == 200
    assert found.json()["formattedDuration"] == "3:00"
    assert missing.status_code == 404


def test_sync_passes_selection(api: FastAPI) -> None:
    with TestClient(api) as client:
        response = client.post(
            "/api/sync", json={"playlistIds": ["PL1"], "includeSubscriptions": True}
        )

    assert response.status_code == 200
    assert response.json()["syncedIds"] == ["v1"]
    assert response.json()["reconciled"] is True
    assert api.state.sync_service.run_calls == [(["PL1"], True)]


def test_sync_requires_credentials(api: FastAPI, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main_module.settings, "youtube_api_key", None)

    with TestClient(api) as client:
        response = client.post("/api/sync", json={})

    assert response.status_code == 503


def test_playlist_sync_maps_content_errors(api: FastAPI) -> None:
    with TestClient(api) as client:
        ok = client.post("/api/playlists/PL1/sync")
        api.state.sync_service.fail_collection = True
        failed = client.post("/api/playlists/PL1/sync")

    assert ok.json() == {"playlistId": "PL1", "syncedIds": ["v1", "v2"]}
    assert failed.status_code == 502


def test_list_playlists(api: FastAPI) -> None:
    api.state.store.collections = [SourceCollection(id="PL1", title="Mix", item_count=3)]

    with TestClient(api) as client:
        response = client.get("/api/playlists")

    assert response.json()["playlists"][0]["itemCount"] == 3


def test_recommendations_stream_server_sent_events(api: FastAPI) -> None:
    with TestClient(api) as client:
        response = client.post("/api/recommendations", json={"query": "cooking"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(chunk[len("data: "):])
        for chunk in response.text.split("\n\n")
        if chunk.startswith("data: ")
    ]
    assert [event["complete"] for event in events] == [False, True]
    final = events[-1]
    assert final["text"] == "Here"
    assert final["recommendations"][0]["item"]["id"] == "v1"
    assert final["recommendations"][0]["item"]["formattedDuration"] == "2:00"
    assert final["recommendations"][0]["reason"] == "fits"
    assert api.state.recommendation_service.queries == ["cooking"]


def test_recommendations_reject_blank_query(api: FastAPI) -> None:
    with TestClient(api) as client:
        response = client.post("/api/recommendations", json={"query": ""})

    assert response.status_code == 400


def test_list_models(api: FastAPI) -> None:
    with TestClient(api) as client:
        response = client.get("/api/models")

    payload = response.json()
    assert payload["models"] == [
        {"id": "gemini-2.5-flash", "displayName": "Gemini 2.5 Flash", "description": None}
    ]


def test_search_history_routes(api: FastAPI) -> None:
    api.state.store.searches = ["jazz", "cooking"]

    with TestClient(api) as client:
        listed = client.get("/api/search-history").json()
        deleted = client.delete("/api/search-history/jazz")
        missing = client.delete("/api/search-history/jazz")

    assert listed == {"queries": ["jazz", "cooking"]}
    assert deleted.status_code == 200
    assert missing.status_code == 404
