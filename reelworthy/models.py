"""Pydantic models describing cached catalog entities and recommendation payloads."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .duration import DurationClass, classify_duration, format_duration


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class CatalogItem(_CamelModel):
    """A single cached video.

    ``duration`` is ``None`` until the item has been enriched with details;
    ``watched`` belongs to the local user and is never written by a sync.
    """

    id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    source_label: str = ""
    published_at: str = ""
    duration: str | None = None
    watched: bool = False
    added_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def duration_class(self) -> DurationClass:
        return classify_duration(self.duration)

    @property
    def formatted_duration(self) -> str | None:
        return format_duration(self.duration)

    def with_duration(self, duration: str | None) -> "CatalogItem":
        """Return a copy carrying ``duration`` when one was found."""

        if duration is None:
            return self
        return self.model_copy(update={"duration": duration})

    def to_payload(self) -> dict[str, object]:
        """Return the JSON payload exposed over the HTTP API."""

        payload = self.model_dump(mode="json", by_alias=True)
        payload["formattedDuration"] = self.formatted_duration
        return payload


class SourceCollection(_CamelModel):
    """A fetchable grouping of videos, e.g. one of the user's playlists."""

    id: str
    title: str = ""
    description: str | None = None
    thumbnail_url: str | None = None
    item_count: int = 0
    last_sync_time: datetime | None = None


class RecommendationReference(_CamelModel):
    """An item id the model suggested along with its reasoning."""

    item_id: str
    reason: str = ""


class HydratedRecommendation(_CamelModel):
    """A cached item paired with the model's reason for suggesting it."""

    item: CatalogItem
    reason: str = ""


class DisplayUpdate(_CamelModel):
    """One step of a recommendation stream as shown to the user.

    Intermediate updates only carry ``text``. The final update has
    ``complete`` set, ``text`` holding the model's answer and the hydrated
    recommendations attached.
    """

    text: str
    complete: bool = False
    recommendations: list[HydratedRecommendation] = Field(default_factory=list)

    def to_payload(self) -> dict[str, object]:
        return {
            "text": self.text,
            "complete": self.complete,
            "recommendations": [
                {"item": entry.item.to_payload(), "reason": entry.reason}
                for entry in self.recommendations
            ],
        }


class SyncReport(_CamelModel):
    """Outcome of one sync run across the selected sources."""

    attempted: int = 0
    succeeded: int = 0
    failed_sources: list[str] = Field(default_factory=list)
    synced_ids: list[str] = Field(default_factory=list)
    reconciled: bool = False
    deleted: int = 0


class SyncRequest(_CamelModel):
    """Body of ``POST /api/sync``; omitted fields fall back to settings."""

    playlist_ids: list[str] | None = None
    include_subscriptions: bool | None = None


class WatchedUpdate(_CamelModel):
    watched: bool = True


class RecommendationRequest(_CamelModel):
    query: str = Field(min_length=1, max_length=2_000)
    model: str | None = None
    deep_thinking: bool | None = None
