"""Utilities for communicating with the YouTube Data API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..config import Settings
from ..models import CatalogItem, SourceCollection

logger = logging.getLogger(__name__)

MAX_DETAIL_IDS = 50


class ContentApiError(RuntimeError):
    """Raised when the content API cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class _ApiRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class Thumbnail(_ApiRecord):
    url: str
    width: int | None = None
    height: int | None = None


class Thumbnails(_ApiRecord):
    default: Thumbnail | None = None
    medium: Thumbnail | None = None
    high: Thumbnail | None = None
    standard: Thumbnail | None = None
    maxres: Thumbnail | None = None

    def best_url(self) -> str | None:
        for candidate in (self.high, self.medium, self.default):
            if candidate is not None and candidate.url:
                return candidate.url
        return None


def _thumbnail_url(thumbnails: Thumbnails | None) -> str | None:
    return thumbnails.best_url() if thumbnails is not None else None


class ResourceId(_ApiRecord):
    kind: str | None = None
    video_id: str | None = None
    channel_id: str | None = None


class PlaylistItemSnippet(_ApiRecord):
    title: str = ""
    description: str = ""
    thumbnails: Thumbnails | None = None
    channel_title: str = ""
    video_owner_channel_title: str | None = None
    published_at: str = ""
    resource_id: ResourceId | None = None


class PlaylistItemContentDetails(_ApiRecord):
    video_id: str | None = None
    video_published_at: str | None = None


class PlaylistItemResource(_ApiRecord):
    id: str | None = None
    snippet: PlaylistItemSnippet | None = None
    content_details: PlaylistItemContentDetails | None = None

    @property
    def video_id(self) -> str | None:
        if self.snippet and self.snippet.resource_id and self.snippet.resource_id.video_id:
            return self.snippet.resource_id.video_id
        if self.content_details and self.content_details.video_id:
            return self.content_details.video_id
        return None

    def to_catalog_item(self, *, added_at: datetime | None = None) -> CatalogItem | None:
        """Return a lightweight cache entry, or ``None`` when no video id is present."""

        video_id = self.video_id
        if not video_id:
            return None
        snippet = self.snippet or PlaylistItemSnippet()
        item = CatalogItem(
            id=video_id,
            title=snippet.title,
            description=snippet.description,
            thumbnail_url=_thumbnail_url(snippet.thumbnails) or "",
            source_label=snippet.video_owner_channel_title or snippet.channel_title,
            published_at=snippet.published_at,
        )
        if added_at is not None:
            item.added_at = added_at
        return item


class PlaylistItemPage(_ApiRecord):
    items: list[PlaylistItemResource] = Field(default_factory=list)
    next_page_token: str | None = None


class VideoSnippet(_ApiRecord):
    title: str = ""
    description: str = ""
    thumbnails: Thumbnails | None = None
    channel_title: str = ""
    published_at: str = ""


class VideoContentDetails(_ApiRecord):
    duration: str | None = None


class VideoDetails(_ApiRecord):
    id: str | None = None
    snippet: VideoSnippet | None = None
    content_details: VideoContentDetails | None = None

    @property
    def duration(self) -> str | None:
        return self.content_details.duration if self.content_details else None

    def to_catalog_item(self) -> CatalogItem | None:
        if not self.id:
            return None
        snippet = self.snippet or VideoSnippet()
        return CatalogItem(
            id=self.id,
            title=snippet.title,
            description=snippet.description,
            thumbnail_url=_thumbnail_url(snippet.thumbnails) or "",
            source_label=snippet.channel_title,
            published_at=snippet.published_at,
            duration=self.duration,
        )


class VideoListResponse(_ApiRecord):
    items: list[VideoDetails] = Field(default_factory=list)


class PlaylistSnippet(_ApiRecord):
    title: str = ""
    description: str | None = None
    thumbnails: Thumbnails | None = None


class PlaylistContentDetails(_ApiRecord):
    item_count: int = 0


class PlaylistResource(_ApiRecord):
    id: str
    snippet: PlaylistSnippet | None = None
    content_details: PlaylistContentDetails | None = None

    def to_collection(self) -> SourceCollection:
        snippet = self.snippet or PlaylistSnippet()
        return SourceCollection(
            id=self.id,
            title=snippet.title,
            description=snippet.description,
            thumbnail_url=_thumbnail_url(snippet.thumbnails),
            item_count=self.content_details.item_count if self.content_details else 0,
        )


class PlaylistPage(_ApiRecord):
    items: list[PlaylistResource] = Field(default_factory=list)
    next_page_token: str | None = None


class SubscriptionSnippet(_ApiRecord):
    title: str = ""
    resource_id: ResourceId | None = None


class SubscriptionResource(_ApiRecord):
    id: str | None = None
    snippet: SubscriptionSnippet | None = None

    @property
    def channel_id(self) -> str | None:
        if self.snippet and self.snippet.resource_id:
            return self.snippet.resource_id.channel_id
        return None

    @property
    def title(self) -> str:
        return self.snippet.title if self.snippet else ""


class SubscriptionPage(_ApiRecord):
    items: list[SubscriptionResource] = Field(default_factory=list)
    next_page_token: str | None = None


class RelatedPlaylists(_ApiRecord):
    uploads: str | None = None


class ChannelContentDetails(_ApiRecord):
    related_playlists: RelatedPlaylists | None = None


class ChannelResource(_ApiRecord):
    id: str | None = None
    content_details: ChannelContentDetails | None = None


class ChannelListResponse(_ApiRecord):
    items: list[ChannelResource] = Field(default_factory=list)


class YouTubeClient:
    """Thin, retry-free wrapper around the YouTube Data API v3.

    Requests authenticate with the OAuth bearer token when one is available and
    fall back to the API key otherwise. Every failure surfaces as
    :class:`ContentApiError`; deciding which failures are tolerable is left to
    the caller.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _credentials(
        self,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> tuple[dict[str, str], dict[str, str]]:
        headers = {"Accept": "application/json"}
        params: dict[str, str] = {}
        resolved_token = access_token or self._settings.youtube_access_token
        resolved_key = api_key or self._settings.youtube_api_key
        if resolved_token:
            headers["Authorization"] = f"Bearer {resolved_token}"
        elif resolved_key:
            params["key"] = resolved_key
        return headers, params

    async def _get(
        self,
        path: str,
        params: dict[str, Any],
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        headers, auth_params = self._credentials(
            access_token=access_token, api_key=api_key
        )
        query = {key: value for key, value in params.items() if value is not None}
        query.update(auth_params)
        try:
            response = await self._client.get(path, params=query, headers=headers)
        except httpx.HTTPError as exc:
            raise ContentApiError(
                f"YouTube request to {path} failed: {exc.__class__.__name__}"
            ) from exc

        if response.status_code >= 400:
            raise ContentApiError(
                f"YouTube {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ContentApiError(
                f"Unexpected non-JSON YouTube response for {path}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise ContentApiError(
                f"Unexpected YouTube response structure for {path}",
                status_code=response.status_code,
            )
        return data

    @staticmethod
    def _parse(model: type[_ApiRecord], data: dict[str, Any], path: str):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ContentApiError(f"Malformed YouTube response for {path}: {exc}") from exc

    async def list_collection_items(
        self,
        collection_id: str,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
        page_token: str | None = None,
        max_results: int = 50,
    ) -> PlaylistItemPage:
        """Return one page of a playlist's items."""

        data = await self._get(
            "/playlistItems",
            {
                "part": "snippet,contentDetails",
                "playlistId": collection_id,
                "maxResults": max(1, min(int(max_results), 50)),
                "pageToken": page_token,
            },
            access_token=access_token,
            api_key=api_key,
        )
        return self._parse(PlaylistItemPage, data, "/playlistItems")

    async def get_item_details(
        self,
        ids: Sequence[str],
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> list[VideoDetails]:
        """Return snippet and content details for up to fifty videos."""

        if not ids:
            return []
        if len(ids) > MAX_DETAIL_IDS:
            raise ValueError(f"At most {MAX_DETAIL_IDS} ids may be looked up per call")
        data = await self._get(
            "/videos",
            {
                "part": "snippet,contentDetails",
                "id": ",".join(ids),
                "maxResults": len(ids),
            },
            access_token=access_token,
            api_key=api_key,
        )
        return self._parse(VideoListResponse, data, "/videos").items

    async def list_user_collections(
        self,
        access_token: str | None = None,
        *,
        page_token: str | None = None,
    ) -> PlaylistPage:
        """Return one page of the authenticated user's playlists."""

        data = await self._get(
            "/playlists",
            {
                "part": "snippet,contentDetails",
                "mine": "true",
                "maxResults": 50,
                "pageToken": page_token,
            },
            access_token=access_token,
        )
        return self._parse(PlaylistPage, data, "/playlists")

    async def list_followed_sources(
        self,
        access_token: str | None = None,
        *,
        api_key: str | None = None,
        page_token: str | None = None,
    ) -> SubscriptionPage:
        """Return one page of the channels the user subscribes to."""

        data = await self._get(
            "/subscriptions",
            {
                "part": "snippet",
                "mine": "true",
                "maxResults": 50,
                "pageToken": page_token,
            },
            access_token=access_token,
            api_key=api_key,
        )
        return self._parse(SubscriptionPage, data, "/subscriptions")

    async def resolve_uploads_collection(
        self,
        source_id: str,
        *,
        access_token: str | None = None,
        api_key: str | None = None,
    ) -> str | None:
        """Return the id of a channel's "uploads" playlist, if it has one."""

        data = await self._get(
            "/channels",
            {"part": "contentDetails", "id": source_id},
            access_token=access_token,
            api_key=api_key,
        )
        response = self._parse(ChannelListResponse, data, "/channels")
        if not response.items:
            return None
        details = response.items[0].content_details
        if details is None or details.related_playlists is None:
            return None
        return details.related_playlists.uploads or None
