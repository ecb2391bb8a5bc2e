"""Conversational recommendations over the cached catalog."""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import AsyncIterator, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..models import (
    CatalogItem,
    DisplayUpdate,
    HydratedRecommendation,
    RecommendationReference,
)
from ..utils import clip_text
from .gemini import GeminiClient, ModelApiError
from .store import CatalogStore
from .stream_parser import StreamingResponseParser

logger = logging.getLogger(__name__)

EMPTY_CATALOG_MESSAGE = (
    "I don't have any videos in my database yet. Please sync a playlist first."
)
NOT_CONFIGURED_MESSAGE = (
    "Recommendations are not available because no Gemini API key is configured."
)
ERROR_MESSAGE_TEMPLATE = "Sorry, I encountered an error: {error}"

PROMPT_TEMPLATE = """
You are a video recommendation assistant.
Using Model: {model}. Deep Thinking Mode: {deep_thinking}.

I will provide a 'Video List' JSON.
Your task is to recommend videos from this list that best match the 'User Query'.

Video List (JSON):
{catalog}

User Query: {query}

Instructions:
1. First, THINK step-by-step about which videos match the query and why. Output this thinking process naturally.
2. After analyzing, identify ALL videos that are relevant to the query. Do not arbitrarily limit the number of results. If 10 videos match, return 10.
3. Prioritize relevance, but be generous in your selection to give the user plenty of options.
4. FINALLY, output the result in a strict JSON block wrapped in ```json ... ```.

The JSON structure MUST be:
{{
  "answer": "A friendly conversational response to the user summarizing the recommendations.",
  "suggestedItems": [
    {{ "itemId": "THE_VIDEO_ID", "reason": "Why you chose this video" }}
  ]
}}

If NO videos match, return an empty array for suggestedItems and explain why in the answer.
Only suggest videos that actually exist in the provided list.
"""


class RecommendationService:
    """Streams model-backed recommendations drawn only from cached videos."""

    def __init__(
        self,
        settings: Settings,
        store: CatalogStore,
        gemini_client: GeminiClient,
    ):
        self._settings = settings
        self._store = store
        self._gemini = gemini_client

    async def get_recommendations(
        self,
        query: str,
        *,
        model: str | None = None,
        deep_thinking: bool | None = None,
        api_key: str | None = None,
    ) -> AsyncIterator[DisplayUpdate]:
        """Yield display updates in arrival order, ending with one complete update.

        The flow never raises past this iterator: every failure is turned into
        a final textual answer.
        """

        cleaned = query.strip()
        if cleaned:
            try:
                await self._store.add_search(
                    cleaned, limit=self._settings.search_history_limit
                )
            except SQLAlchemyError as exc:
                logger.warning("Could not record search %r: %s", cleaned, exc)

        try:
            items = await self._store.get_all_items()
        except SQLAlchemyError as exc:
            logger.warning("Could not read the video cache: %s", exc)
            yield DisplayUpdate(
                text=ERROR_MESSAGE_TEMPLATE.format(error=exc), complete=True
            )
            return
        logger.info("Recommendation request over %s cached videos", len(items))
        if not items:
            yield DisplayUpdate(text=EMPTY_CATALOG_MESSAGE, complete=True)
            return

        resolved_key = api_key or self._settings.gemini_api_key
        if not resolved_key:
            yield DisplayUpdate(text=NOT_CONFIGURED_MESSAGE, complete=True)
            return

        thinking = self._settings.deep_thinking if deep_thinking is None else deep_thinking
        resolved_model = model or self._settings.gemini_model
        prompt = self.build_prompt(
            cleaned, items, model=resolved_model, deep_thinking=thinking
        )
        logger.info(
            "Sending %s character prompt to %s (deep thinking: %s)",
            len(prompt),
            resolved_model,
            thinking,
        )

        parser = StreamingResponseParser()
        try:
            stream = self._gemini.stream_completion(
                prompt,
                model=resolved_model,
                api_key=resolved_key,
                temperature=0.7 if thinking else 0.4,
                include_thoughts=thinking,
            )
            async with aclosing(stream):
                async for payload in stream:
                    for update in parser.feed_raw(payload):
                        yield update
        except ModelApiError as exc:
            if not exc.stream_started:
                logger.warning("Gemini stream could not be opened: %s", exc)
                yield DisplayUpdate(
                    text=ERROR_MESSAGE_TEMPLATE.format(error=exc), complete=True
                )
                return
            logger.warning("Gemini stream ended early: %s", exc)
        except Exception as exc:  # pragma: no cover - safety net
            logger.exception("Recommendation stream failed")
            yield DisplayUpdate(
                text=ERROR_MESSAGE_TEMPLATE.format(error=exc), complete=True
            )
            return

        result = parser.finish()
        try:
            recommendations = await self.hydrate(result.references)
        except SQLAlchemyError as exc:
            logger.warning("Could not load suggested videos: %s", exc)
            yield DisplayUpdate(
                text=ERROR_MESSAGE_TEMPLATE.format(error=exc), complete=True
            )
            return
        if len(recommendations) < len(result.references):
            logger.info(
                "Dropped %s suggested ids missing from the cache",
                len(result.references) - len(recommendations),
            )
        yield DisplayUpdate(
            text=result.answer, complete=True, recommendations=recommendations
        )

    def build_prompt(
        self,
        query: str,
        items: Sequence[CatalogItem],
        *,
        model: str,
        deep_thinking: bool,
    ) -> str:
        limit = self._settings.prompt_description_chars
        catalog = [
            {
                "id": item.id,
                "title": item.title,
                "description": clip_text(item.description, limit),
                "channel": item.source_label,
                "duration": item.formatted_duration or "Unknown",
            }
            for item in items
        ]
        return PROMPT_TEMPLATE.format(
            model=model,
            deep_thinking=str(deep_thinking).lower(),
            catalog=json.dumps(catalog, ensure_ascii=False, indent=1),
            query=query,
        ).strip()

    async def hydrate(
        self, references: Sequence[RecommendationReference]
    ) -> list[HydratedRecommendation]:
        """Resolve suggested ids against a fresh cache read, keeping the model's order."""

        if not references:
            return []
        cached = await self._store.get_items([ref.item_id for ref in references])
        hydrated: list[HydratedRecommendation] = []
        seen: set[str] = set()
        for reference in references:
            item = cached.get(reference.item_id)
            if item is None or reference.item_id in seen:
                continue
            seen.add(reference.item_id)
            hydrated.append(HydratedRecommendation(item=item, reason=reference.reason))
        return hydrated
