"""Persistence layer for the locally cached catalog."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import PlaylistRecord, SearchHistoryRecord, VideoRecord
from ..models import CatalogItem, SourceCollection
from ..utils import chunked

logger = logging.getLogger(__name__)

# Keeps multi-row statements below SQLite's bound-parameter limit.
_WRITE_CHUNK = 500

_SYNCED_VIDEO_COLUMNS = (
    "title",
    "description",
    "thumbnail_url",
    "channel_title",
    "published_at",
    "duration",
    "added_at",
)


def _insert_for(session: AsyncSession, table: Any):
    bind = session.bind
    if bind is not None and bind.dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


def _item_from_record(record: VideoRecord) -> CatalogItem:
    return CatalogItem(
        id=record.id,
        title=record.title or "",
        description=record.description or "",
        thumbnail_url=record.thumbnail_url or "",
        source_label=record.channel_title or "",
        published_at=record.published_at or "",
        duration=record.duration,
        watched=bool(record.watched),
        added_at=record.added_at,
    )


def _collection_from_record(record: PlaylistRecord) -> SourceCollection:
    return SourceCollection(
        id=record.id,
        title=record.title or "",
        description=record.description,
        thumbnail_url=record.thumbnail_url,
        item_count=record.item_count or 0,
        last_sync_time=record.last_sync_time,
    )


class CatalogStore:
    """Upsert-only access to cached videos, playlists and search history.

    Every write runs inside a single transaction, so a batch is either fully
    applied or not at all, including when the calling task is cancelled.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._version = 0
        self._changed = asyncio.Condition()

    async def upsert_items(self, items: Iterable[CatalogItem]) -> int:
        """Insert or update items by id, keeping the locally owned ``watched`` flag."""

        unique: dict[str, CatalogItem] = {}
        for item in items:
            unique[item.id] = item
        if not unique:
            return 0

        rows = [
            {
                "id": item.id,
                "title": item.title,
                "description": item.description,
                "thumbnail_url": item.thumbnail_url,
                "channel_title": item.source_label,
                "published_at": item.published_at,
                "duration": item.duration,
                "watched": item.watched,
                "added_at": item.added_at,
            }
            for item in unique.values()
        ]
        async with self._session_factory() as session:
            async with session.begin():
                for batch in chunked(rows, _WRITE_CHUNK):
                    stmt = _insert_for(session, VideoRecord).values(batch)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[VideoRecord.id],
                        set_={
                            column: stmt.excluded[column]
                            for column in _SYNCED_VIDEO_COLUMNS
                        },
                    )
                    await session.execute(stmt)
        await self._notify()
        return len(rows)

    async def upsert_collections(self, collections: Iterable[SourceCollection]) -> int:
        unique = {collection.id: collection for collection in collections}
        if not unique:
            return 0

        rows = [
            {
                "id": collection.id,
                "title": collection.title,
                "description": collection.description,
                "thumbnail_url": collection.thumbnail_url,
                "item_count": collection.item_count,
                "last_sync_time": collection.last_sync_time,
            }
            for collection in unique.values()
        ]
        async with self._session_factory() as session:
            async with session.begin():
                for batch in chunked(rows, _WRITE_CHUNK):
                    stmt = _insert_for(session, PlaylistRecord).values(batch)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[PlaylistRecord.id],
                        set_={
                            "title": stmt.excluded.title,
                            "description": stmt.excluded.description,
                            "thumbnail_url": stmt.excluded.thumbnail_url,
                            "item_count": stmt.excluded.item_count,
                            "last_sync_time": func.coalesce(
                                stmt.excluded.last_sync_time,
                                PlaylistRecord.last_sync_time,
                            ),
                        },
                    )
                    await session.execute(stmt)
        await self._notify()
        return len(rows)

    async def delete_items_not_in(self, ids: Iterable[str]) -> int:
        """Delete every cached item whose id is absent from ``ids``."""

        keep = set(ids)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(select(VideoRecord.id))
                stale = [item_id for item_id in result.scalars() if item_id not in keep]
                for batch in chunked(stale, _WRITE_CHUNK):
                    await session.execute(
                        delete(VideoRecord).where(VideoRecord.id.in_(batch))
                    )
        if stale:
            await self._notify()
        return len(stale)

    async def get_all_items(self) -> list[CatalogItem]:
        """Return every cached item, most recently added first."""

        async with self._session_factory() as session:
            stmt = select(VideoRecord).order_by(
                VideoRecord.added_at.desc(), VideoRecord.published_at.desc()
            )
            result = await session.execute(stmt)
            return [_item_from_record(record) for record in result.scalars()]

    async def get_items(self, ids: Sequence[str]) -> dict[str, CatalogItem]:
        found: dict[str, CatalogItem] = {}
        if not ids:
            return found
        async with self._session_factory() as session:
            for batch in chunked(list(dict.fromkeys(ids)), _WRITE_CHUNK):
                result = await session.execute(
                    select(VideoRecord).where(VideoRecord.id.in_(batch))
                )
                for record in result.scalars():
                    found[record.id] = _item_from_record(record)
        return found

    async def get_item(self, item_id: str) -> CatalogItem | None:
        async with self._session_factory() as session:
            record = await session.get(VideoRecord, item_id)
            return _item_from_record(record) if record is not None else None

    async def count_items(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(VideoRecord))
            return int(result.scalar_one())

    async def set_watched(self, item_id: str, watched: bool) -> bool:
        """Flag an item as watched or unwatched. Returns ``False`` for unknown ids."""

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(VideoRecord)
                    .where(VideoRecord.id == item_id)
                    .values(watched=watched)
                )
        if not result.rowcount:
            return False
        await self._notify()
        return True

    async def get_all_collections(self) -> list[SourceCollection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlaylistRecord).order_by(PlaylistRecord.title)
            )
            return [_collection_from_record(record) for record in result.scalars()]

    async def mark_collection_synced(
        self, collection_id: str, when: datetime | None = None
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(PlaylistRecord)
                    .where(PlaylistRecord.id == collection_id)
                    .values(last_sync_time=when or datetime.utcnow())
                )

    async def watch_items(self) -> AsyncIterator[list[CatalogItem]]:
        """Yield the current items, then a fresh snapshot after every change."""

        seen = -1
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: self._version != seen)
                seen = self._version
            yield await self.get_all_items()

    async def _notify(self) -> None:
        async with self._changed:
            self._version += 1
            self._changed.notify_all()

    async def add_search(self, query: str, *, limit: int = 100) -> None:
        """Record a query as the most recent search and keep only ``limit`` entries."""

        cleaned = query.strip()
        if not cleaned:
            return
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(
                    SearchHistoryRecord(query=cleaned, searched_at=datetime.utcnow())
                )
                await session.flush()
                newest = (
                    select(SearchHistoryRecord.query)
                    .order_by(SearchHistoryRecord.searched_at.desc())
                    .limit(limit)
                )
                await session.execute(
                    delete(SearchHistoryRecord).where(
                        SearchHistoryRecord.query.not_in(newest)
                    )
                )

    async def recent_searches(self, limit: int = 100) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SearchHistoryRecord.query)
                .order_by(SearchHistoryRecord.searched_at.desc())
                .limit(limit)
            )
            return list(result.scalars())

    async def delete_search(self, query: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(SearchHistoryRecord).where(SearchHistoryRecord.query == query)
                )
        return bool(result.rowcount)
