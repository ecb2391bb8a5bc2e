"""Fetch, enrich and persist videos from the content API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from ..config import Settings
from ..duration import is_short
from ..models import CatalogItem, SourceCollection
from ..utils import chunked
from .store import CatalogStore
from .youtube import ContentApiError, PlaylistItemPage, YouTubeClient

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Keeps the local cache in step with playlists and the subscription feed.

    Listing errors abort the sync they occur in and propagate to the caller.
    Detail lookups and per-channel lookups degrade instead: the affected
    items are stored without a duration, or the channel is skipped.
    """

    def __init__(
        self,
        settings: Settings,
        youtube_client: YouTubeClient,
        store: CatalogStore,
    ):
        self._settings = settings
        self._youtube = youtube_client
        self._store = store

    async def sync_collection(
        self,
        collection_id: str,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> list[str]:
        """Deep-sync one playlist and return the ids it currently lists."""

        items = await self._list_collection(
            collection_id, access_token=access_token, api_key=api_key
        )
        if not items:
            logger.info("Playlist %s is empty; nothing to store", collection_id)
            await self._store.mark_collection_synced(collection_id)
            return []

        enriched = await self._enrich(items, access_token=access_token, api_key=api_key)
        await self._store.upsert_items(enriched)
        await self._store.mark_collection_synced(collection_id)

        missing = sum(1 for item in enriched if item.duration is None)
        logger.info(
            "Stored %s videos from playlist %s (%s without duration)",
            len(enriched),
            collection_id,
            missing,
        )
        return [item.id for item in items]

    async def sync_subscription_feed(
        self,
        access_token: str | None = None,
        *,
        api_key: str | None = None,
    ) -> list[str]:
        """Store the most recent long-form uploads across subscribed channels."""

        sources = await self._list_sources(access_token=access_token, api_key=api_key)
        candidates: dict[str, CatalogItem] = {}
        per_source = self._settings.feed_items_per_source

        for source in sources:
            channel_id = source.channel_id
            if not channel_id:
                continue
            try:
                uploads_id = await self._youtube.resolve_uploads_collection(
                    channel_id, access_token=access_token, api_key=api_key
                )
                if not uploads_id:
                    logger.info("Channel %s has no uploads playlist", source.title or channel_id)
                    continue
                page = await self._youtube.list_collection_items(
                    uploads_id,
                    access_token=access_token,
                    api_key=api_key,
                    max_results=per_source,
                )
            except ContentApiError as exc:
                logger.warning(
                    "Failed to fetch uploads for channel %s: %s",
                    source.title or channel_id,
                    exc,
                )
                continue

            added_at = datetime.utcnow()
            for entry in page.items[:per_source]:
                item = entry.to_catalog_item(added_at=added_at)
                if item is not None and item.id not in candidates:
                    candidates[item.id] = item

        # publishedAt is fixed-width UTC ISO-8601, so string order is time order.
        ranked = sorted(
            candidates.values(), key=lambda item: item.published_at, reverse=True
        )[: self._settings.feed_total_limit]
        if not ranked:
            logger.info("Subscription feed produced no candidates")
            return []

        enriched = await self._enrich(ranked, access_token=access_token, api_key=api_key)
        survivors = [item for item in enriched if not is_short(item.duration)]
        await self._store.upsert_items(survivors)
        logger.info(
            "Synced %s recent videos from %s subscriptions (%s candidates, %s dropped as short)",
            len(survivors),
            len(sources),
            len(ranked),
            len(ranked) - len(survivors),
        )
        return [item.id for item in survivors]

    async def sync_user_collections(
        self, access_token: str | None = None
    ) -> list[SourceCollection]:
        """Refresh the cached list of the user's own playlists."""

        collections: list[SourceCollection] = []
        page_token: str | None = None
        seen_tokens: set[str] = set()
        while True:
            page = await self._youtube.list_user_collections(
                access_token, page_token=page_token
            )
            collections.extend(resource.to_collection() for resource in page.items)
            page_token = page.next_page_token
            if not page_token:
                break
            if page_token in seen_tokens:
                raise ContentApiError("Playlist listing repeated a page token")
            seen_tokens.add(page_token)

        await self._store.upsert_collections(collections)
        logger.info("Stored %s playlists", len(collections))
        return collections

    async def fetch_single_item(
        self,
        item_id: str,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> CatalogItem | None:
        """Fetch one video with its details and cache it."""

        details = await self._youtube.get_item_details(
            [item_id], access_token=access_token, api_key=api_key
        )
        for entry in details:
            item = entry.to_catalog_item()
            if item is not None and item.id == item_id:
                await self._store.upsert_items([item])
                return item
        logger.info("Video %s was not returned by the content API", item_id)
        return None

    async def _list_collection(
        self,
        collection_id: str,
        *,
        access_token: str | None,
        api_key: str | None,
    ) -> list[CatalogItem]:
        items: dict[str, CatalogItem] = {}
        page_token: str | None = None
        seen_tokens: set[str] = set()
        pages = 0
        while True:
            page: PlaylistItemPage = await self._youtube.list_collection_items(
                collection_id,
                access_token=access_token,
                api_key=api_key,
                page_token=page_token,
                max_results=self._settings.page_size,
            )
            pages += 1
            for entry in page.items:
                item = entry.to_catalog_item()
                if item is not None and item.id not in items:
                    items[item.id] = item

            page_token = page.next_page_token
            if not page_token:
                break
            if page_token in seen_tokens:
                raise ContentApiError(
                    f"Playlist {collection_id} listing repeated a page token"
                )
            seen_tokens.add(page_token)

        logger.info(
            "Listed %s videos across %s pages for playlist %s",
            len(items),
            pages,
            collection_id,
        )
        return list(items.values())

    async def _list_sources(self, *, access_token: str | None, api_key: str | None):
        sources = []
        page_token: str | None = None
        seen_tokens: set[str] = set()
        while True:
            page = await self._youtube.list_followed_sources(
                access_token, api_key=api_key, page_token=page_token
            )
            sources.extend(page.items)
            page_token = page.next_page_token
            if not page_token:
                break
            if page_token in seen_tokens:
                raise ContentApiError("Subscription listing repeated a page token")
            seen_tokens.add(page_token)
        return sources

    async def _enrich(
        self,
        items: Sequence[CatalogItem],
        *,
        access_token: str | None,
        api_key: str | None,
    ) -> list[CatalogItem]:
        """Attach durations batch by batch; a failed batch keeps its items as-is."""

        batches = list(chunked(items, self._settings.detail_batch_size))
        enriched: list[CatalogItem] = []
        for index, batch in enumerate(batches, start=1):
            try:
                details = await self._youtube.get_item_details(
                    [item.id for item in batch],
                    access_token=access_token,
                    api_key=api_key,
                )
            except ContentApiError as exc:
                logger.warning(
                    "Failed to fetch video details for batch %s/%s (%s videos): %s",
                    index,
                    len(batches),
                    len(batch),
                    exc,
                )
                enriched.extend(batch)
                continue

            durations = {entry.id: entry.duration for entry in details if entry.id}
            enriched.extend(item.with_duration(durations.get(item.id)) for item in batch)
        return enriched
