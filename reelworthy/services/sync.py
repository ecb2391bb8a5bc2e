"""Orchestration of sync runs and the periodic background sync."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Iterable

from ..config import Settings
from ..models import CatalogItem, SourceCollection, SyncReport
from .ingestion import IngestionPipeline
from .reconciler import CacheReconciler
from .youtube import ContentApiError

logger = logging.getLogger(__name__)

SUBSCRIPTION_FEED_SOURCE = "subscriptions"


class SyncService:
    """Runs ingestion for the selected sources and prunes the cache afterwards.

    A single lock serialises every write path, so the reconcile step can never
    delete videos that a concurrent sync has just stored.
    """

    def __init__(
        self,
        settings: Settings,
        pipeline: IngestionPipeline,
        reconciler: CacheReconciler,
    ):
        self._settings = settings
        self._pipeline = pipeline
        self._reconciler = reconciler
        self._lock = asyncio.Lock()
        self._sync_task: asyncio.Task[None] | None = None
        self.last_report: SyncReport | None = None

    async def start(self) -> None:
        """Launch the periodic sync loop."""

        if self._sync_task is None:
            self._sync_task = asyncio.create_task(self._sync_loop())

    async def stop(self) -> None:
        """Stop the periodic sync loop."""

        if self._sync_task is None:
            return
        self._sync_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sync_task
        self._sync_task = None

    async def run_sync(
        self,
        playlist_ids: Iterable[str] | None = None,
        *,
        include_subscriptions: bool | None = None,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> SyncReport:
        """Sync every selected source in turn, then reconcile the cache."""

        selected = list(
            dict.fromkeys(
                playlist_ids
                if playlist_ids is not None
                else self._settings.sync_playlist_ids
            )
        )
        with_feed = (
            self._settings.include_subscription_feed
            if include_subscriptions is None
            else include_subscriptions
        )
        report = SyncReport()
        retained: set[str] = set()

        async with self._lock:
            logger.info(
                "Starting sync of %s playlists (subscription feed: %s)",
                len(selected),
                with_feed,
            )
            for collection_id in selected:
                report.attempted += 1
                try:
                    ids = await self._pipeline.sync_collection(
                        collection_id, access_token=access_token, api_key=api_key
                    )
                except ContentApiError as exc:
                    logger.warning("Sync failed for playlist %s: %s", collection_id, exc)
                    report.failed_sources.append(collection_id)
                    continue
                report.succeeded += 1
                retained.update(ids)

            if with_feed:
                report.attempted += 1
                try:
                    ids = await self._pipeline.sync_subscription_feed(
                        access_token, api_key=api_key
                    )
                except ContentApiError as exc:
                    logger.warning("Subscription feed sync failed: %s", exc)
                    ids = None
                if ids:
                    report.succeeded += 1
                    retained.update(ids)
                else:
                    if ids is not None:
                        logger.warning(
                            "Subscription feed returned no videos; treating it as failed"
                        )
                    report.failed_sources.append(SUBSCRIPTION_FEED_SOURCE)

            outcome = await self._reconciler.reconcile_if_complete(
                report.attempted, report.succeeded, retained
            )

        report.synced_ids = sorted(retained)
        report.reconciled = outcome.performed
        report.deleted = outcome.deleted
        self.last_report = report
        logger.info(
            "Sync finished: %s/%s sources succeeded, %s videos retained, %s deleted",
            report.succeeded,
            report.attempted,
            len(retained),
            report.deleted,
        )
        return report

    async def sync_collection(
        self,
        collection_id: str,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> list[str]:
        """Sync a single playlist without reconciling. Errors propagate."""

        async with self._lock:
            return await self._pipeline.sync_collection(
                collection_id, access_token=access_token, api_key=api_key
            )

    async def refresh_collections(
        self, access_token: str | None = None
    ) -> list[SourceCollection]:
        async with self._lock:
            return await self._pipeline.sync_user_collections(access_token)

    async def fetch_item(
        self,
        item_id: str,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> CatalogItem | None:
        async with self._lock:
            return await self._pipeline.fetch_single_item(
                item_id, access_token=access_token, api_key=api_key
            )

    async def _sync_loop(self) -> None:
        delay = 0 if self._settings.sync_on_startup else self._settings.sync_interval_seconds
        while True:
            await asyncio.sleep(delay)
            delay = self._settings.sync_interval_seconds
            try:
                await self.run_sync()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled sync failed: %s", exc)
