"""End-to-end tests for the recommendation flow."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, cast

from sqlalchemy.exc import OperationalError

from reelworthy.config import Settings
from reelworthy.database import Database
from reelworthy.models import CatalogItem, DisplayUpdate
from reelworthy.services.gemini import GeminiClient, ModelApiError
from reelworthy.services.recommendations import (
    EMPTY_CATALOG_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    RecommendationService,
)
from reelworthy.services.store import CatalogStore


def _chunk(text: str, *, thought: bool = False) -> dict[str, Any]:
    part: dict[str, Any] = {"text": text}
    if thought:
        part["thought"] = True
    return {"candidates": [{"content": {"parts": [part]}}]}


class FakeGeminiClient:
    """Replays a scripted stream and records the prompts it receives."""

    def __init__(
        self,
        payloads: list[Any] | None = None,
        *,
        error: ModelApiError | None = None,
    ) -> None:
        self.payloads = payloads or []
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.delivered = 0
        self.closed = False

    async def stream_completion(self, prompt: str, **kwargs: Any) -> AsyncIterator[Any]:
        self.calls.append({"prompt": prompt, **kwargs})
        try:
            for payload in self.payloads:
                yield payload
                self.delivered += 1
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class LockedStore(CatalogStore):
    """Real store whose selected operations fail like a locked SQLite file."""

    def __init__(self, session_factory, *, failing: set[str]) -> None:
        super().__init__(session_factory)
        self.failing = failing

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise OperationalError(
                "INSERT INTO search_history", {}, Exception("database is locked")
            )

    async def add_search(self, query: str, *, limit: int = 100) -> None:  # type: ignore[override]
        self._maybe_fail("add_search")
        await super().add_search(query, limit=limit)

    async def get_all_items(self) -> list[CatalogItem]:  # type: ignore[override]
        self._maybe_fail("get_all_items")
        return await super().get_all_items()

    async def get_items(self, ids):  # type: ignore[override]
        self._maybe_fail("get_items")
        return await super().get_items(ids)


def _run(
    tmp_path,
    gemini: FakeGeminiClient,
    scenario,
    *,
    failing: set[str] | None = None,
    **setting_overrides: Any,
) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
        await database.create_all()
        store = (
            LockedStore(database.session_factory, failing=failing)
            if failing
            else CatalogStore(database.session_factory)
        )
        overrides: dict[str, Any] = {"GEMINI_API_KEY": "gemini-key"}
        overrides.update(setting_overrides)
        settings = Settings(_env_file=None, **overrides)  # type: ignore[arg-type]
        service = RecommendationService(settings, store, cast(GeminiClient, gemini))
        try:
            await scenario(service, store)
        finally:
            await database.dispose()

    asyncio.run(runner())


async def _collect(service: RecommendationService, query: str, **kwargs: Any) -> list[DisplayUpdate]:
    return [update async for update in service.get_recommendations(query, **kwargs)]


def test_empty_cache_short_circuits_without_model_call(tmp_path) -> None:
    gemini = FakeGeminiClient([_chunk("should not be used")])

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        updates = await _collect(service, "anything")

        assert len(updates) == 1
        assert updates[0].complete is True
        assert updates[0].text == EMPTY_CATALOG_MESSAGE
        assert updates[0].recommendations == []
        assert gemini.calls == []

    _run(tmp_path, gemini, scenario)


def test_streamed_answer_is_hydrated_from_cache(tmp_path) -> None:
    gemini = FakeGeminiClient(
        [
            _chunk("Looking...", thought=True),
            _chunk("Sure, "),
            _chunk(
                '```json\n{"answer":"Here","suggestedItems":'
                '[{"itemId":"v1","reason":"matches"},{"itemId":"ghost","reason":"?"},'
                '{"itemId":"v1","reason":"again"}]}\n```'
            ),
        ]
    )

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items(
            [
                CatalogItem(id="v1", title="Cooking basics", duration="PT12M"),
                CatalogItem(id="v2", title="Jazz night"),
            ]
        )

        updates = await _collect(service, "something to cook")

        assert [update.complete for update in updates] == [False, False, False, True]
        assert updates[0].text == "Looking..."
        assert updates[1].text == "Looking...\n\nSure, "
        assert "suggestedItems" not in updates[2].text
        final = updates[-1]
        assert final.text == "Here"
        assert len(final.recommendations) == 1
        assert final.recommendations[0].item.id == "v1"
        assert final.recommendations[0].item.title == "Cooking basics"
        assert final.recommendations[0].reason == "matches"

    _run(tmp_path, gemini, scenario)


def test_plain_answer_without_structure_is_returned_verbatim(tmp_path) -> None:
    gemini = FakeGeminiClient([_chunk("I could not find anything suitable.")])

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1", title="Only video")])

        updates = await _collect(service, "space documentaries")

        final = updates[-1]
        assert final.complete is True
        assert final.text == "I could not find anything suitable."
        assert final.recommendations == []

    _run(tmp_path, gemini, scenario)


def test_prompt_lists_every_cached_item(tmp_path) -> None:
    gemini = FakeGeminiClient([_chunk("ok")])

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items(
            [
                CatalogItem(
                    id="v1",
                    title='Quotes "inside"',
                    description="x" * 500,
                    source_label="Chef",
                    duration="PT4M5S",
                ),
                CatalogItem(id="v2", title="No duration"),
            ]
        )

        await _collect(service, "dinner ideas", deep_thinking=True)

        call = gemini.calls[0]
        assert call["temperature"] == 0.7
        assert call["include_thoughts"] is True
        prompt = call["prompt"]
        assert "User Query: dinner ideas" in prompt
        assert "```json" in prompt
        catalog_text = prompt.split("Video List (JSON):\n", 1)[1].split("\n\nUser Query:", 1)[0]
        catalog = json.loads(catalog_text)
        by_id = {entry["id"]: entry for entry in catalog}
        assert set(by_id) == {"v1", "v2"}
        assert by_id["v1"]["title"] == 'Quotes "inside"'
        assert by_id["v1"]["description"] == "x" * 200 + "..."
        assert by_id["v1"]["duration"] == "4:05"
        assert by_id["v2"]["duration"] == "Unknown"

    _run(tmp_path, gemini, scenario)


def test_stream_open_failure_becomes_error_message(tmp_path) -> None:
    gemini = FakeGeminiClient(error=ModelApiError("Gemini returned 500: boom", status_code=500))

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1")])

        updates = await _collect(service, "anything")

        assert len(updates) == 1
        assert updates[0].complete is True
        assert updates[0].text == "Sorry, I encountered an error: Gemini returned 500: boom"

    _run(tmp_path, gemini, scenario)


def test_interrupted_stream_completes_with_partial_text(tmp_path) -> None:
    gemini = FakeGeminiClient(
        [_chunk("Partial thoughts")],
        error=ModelApiError("Gemini stream failed: ReadError", stream_started=True),
    )

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1")])

        updates = await _collect(service, "anything")

        assert updates[-1].complete is True
        assert updates[-1].text == "Partial thoughts"

    _run(tmp_path, gemini, scenario)


def test_missing_model_key_is_reported(tmp_path) -> None:
    gemini = FakeGeminiClient([_chunk("unused")])

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1")])

        updates = await _collect(service, "anything")

        assert [update.text for update in updates] == [NOT_CONFIGURED_MESSAGE]
        assert gemini.calls == []

    _run(tmp_path, gemini, scenario, GEMINI_API_KEY=None)


def test_queries_are_recorded_in_search_history(tmp_path) -> None:
    gemini = FakeGeminiClient()

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await _collect(service, "  late night jazz  ")

        assert await store.recent_searches() == ["late night jazz"]

    _run(tmp_path, gemini, scenario)


def test_search_history_failure_does_not_block_recommendations(tmp_path) -> None:
    gemini = FakeGeminiClient(
        [_chunk('```json\n{"answer":"Try this","suggestedItems":[{"itemId":"v1"}]}\n```')]
    )

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1", title="Jazz night")])

        updates = await _collect(service, "jazz")

        final = updates[-1]
        assert final.complete is True
        assert final.text == "Try this"
        assert [rec.item.id for rec in final.recommendations] == ["v1"]
        assert await store.recent_searches() == []

    _run(tmp_path, gemini, scenario, failing={"add_search"})


def test_unreadable_cache_becomes_error_message(tmp_path) -> None:
    gemini = FakeGeminiClient([_chunk("unused")])

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        updates = await _collect(service, "jazz")

        assert len(updates) == 1
        assert updates[0].complete is True
        assert updates[0].text.startswith("Sorry, I encountered an error: ")
        assert "database is locked" in updates[0].text
        assert gemini.calls == []

    _run(tmp_path, gemini, scenario, failing={"get_all_items"})


def test_hydration_failure_becomes_error_message(tmp_path) -> None:
    gemini = FakeGeminiClient(
        [_chunk('```json\n{"answer":"Here","suggestedItems":[{"itemId":"v1"}]}\n```')]
    )

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1")])

        updates = await _collect(service, "jazz")

        final = updates[-1]
        assert final.complete is True
        assert "database is locked" in final.text
        assert final.recommendations == []

    _run(tmp_path, gemini, scenario, failing={"get_items"})


def test_model_stream_is_closed_when_consumer_stops_early(tmp_path) -> None:
    gemini = FakeGeminiClient([_chunk("first "), _chunk("second "), _chunk("third")])

    async def scenario(service: RecommendationService, store: CatalogStore) -> None:
        await store.upsert_items([CatalogItem(id="v1")])

        updates = service.get_recommendations("jazz")
        first = await updates.__anext__()
        await updates.aclose()

        assert first.text == "first "
        assert gemini.closed is True
        assert gemini.delivered == 0

    _run(tmp_path, gemini, scenario)
