"""SQLAlchemy ORM models backing the local cache."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class VideoRecord(Base):
    """A cached video harvested from a playlist or the subscription feed."""

    __tablename__ = "videos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(512), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    thumbnail_url: Mapped[str] = mapped_column(String(1024), default="")
    channel_title: Mapped[str] = mapped_column(String(255), default="")
    published_at: Mapped[str] = mapped_column(String(32), default="")
    duration: Mapped[str | None] = mapped_column(String(32), nullable=True)
    watched: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )


class PlaylistRecord(Base):
    """A playlist the user owns, as last reported by the content API."""

    __tablename__ = "playlists"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(512), default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class SearchHistoryRecord(Base):
    """A recommendation query the user has issued."""

    __tablename__ = "search_history"

    query: Mapped[str] = mapped_column(String(512), primary_key=True)
    searched_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )
