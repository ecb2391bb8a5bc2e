"""Helpers for interpreting ISO-8601 video durations."""

from __future__ import annotations

import re
from datetime import timedelta
from enum import Enum

import isodate

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


class DurationClass(str, Enum):
    """Coarse length bucket used to keep Shorts out of long-form feeds."""

    LONG = "long"
    SHORT = "short"
    UNKNOWN = "unknown"


def classify_duration(duration: str | None) -> DurationClass:
    """Classify an ISO-8601 duration as long-form or short-form.

    Anything strictly longer than sixty seconds is long-form. ``PT1M`` is
    exactly sixty seconds and therefore short. Missing or unparseable values
    are treated as short so they never leak into long-form feeds, as are
    day-only values such as ``P0D`` that live streams report.
    """

    if not duration:
        return DurationClass.SHORT
    match = _DURATION_RE.match(duration.strip().upper())
    if match is None:
        return DurationClass.SHORT

    if match.group("hours") is not None:
        return DurationClass.LONG

    minutes_text = match.group("minutes")
    if minutes_text is None:
        return DurationClass.SHORT
    minutes = int(minutes_text)
    if minutes >= 2:
        return DurationClass.LONG
    if minutes == 1:
        seconds = float(match.group("seconds") or 0)
        if seconds > 0:
            return DurationClass.LONG
    return DurationClass.SHORT


def is_short(duration: str | None) -> bool:
    return classify_duration(duration) is DurationClass.SHORT


def format_duration(duration: str | None) -> str | None:
    """Render a duration as ``M:SS`` or ``H:MM:SS`` for display."""

    if not duration:
        return None
    try:
        parsed = isodate.parse_duration(duration)
    except (isodate.ISO8601Error, ValueError, TypeError):
        return None
    if not isinstance(parsed, timedelta):
        return None

    total_seconds = int(parsed.total_seconds())
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"
