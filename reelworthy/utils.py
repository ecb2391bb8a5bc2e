"""Utility helpers for the ReelWorthy service."""

from __future__ import annotations

import re
from typing import Iterator, Sequence, TypeVar

T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")


def chunked(values: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of ``values`` holding at most ``size`` entries."""

    if size <= 0:
        raise ValueError("Chunk size must be positive")
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def clip_text(value: str | None, limit: int) -> str:
    """Collapse whitespace and cap ``value`` at ``limit`` characters."""

    if not value or limit <= 0:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", value).strip()
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[:limit].rstrip() + "..."
