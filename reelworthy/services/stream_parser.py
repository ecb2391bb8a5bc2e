"""Incremental parsing of streamed model output.

The model interleaves reasoning ("thought") fragments with answer text and
ends its answer with a fenced JSON block. While the stream is open the parser
turns every fragment into a display update, hiding the JSON block behind a
placeholder. Once the stream ends the block is extracted into the final answer
and the list of suggested item ids.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..models import DisplayUpdate, RecommendationReference

logger = logging.getLogger(__name__)

FENCE = "```"
JSON_FENCE = "```json"
RECEIVING_PLACEHOLDER = "\n\n[Receiving structured results... One moment.]"
PARSE_FALLBACK_MESSAGE = "I found some videos but couldn't parse the details properly."
DEFAULT_ANSWER = "Here are some videos."

_FENCE_LANGUAGE_RE = re.compile(r"[A-Za-z0-9_-]*")


class ParserState(str, Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass(slots=True, frozen=True)
class StreamFragment:
    text: str
    is_thought: bool = False


@dataclass(slots=True)
class ParsedResult:
    answer: str
    references: list[RecommendationReference] = field(default_factory=list)


def fragments_from_payload(payload: Any) -> list[StreamFragment]:
    """Decode one transport payload into fragments.

    Accepts a JSON string or an already decoded object, either in the
    ``candidates[].content.parts[]`` shape of streamed generateContent
    responses or as a bare ``{"text": ..., "thought": ...}`` object. Raises
    ``ValueError`` for anything that cannot be interpreted.
    """

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")

    if "error" in payload:
        raise ValueError(f"stream reported an error: {payload['error']!r}")

    if "candidates" not in payload:
        if "text" in payload:
            return [_fragment_from_part(payload)]
        # Usage-only or prompt feedback chunks carry no text.
        return []

    candidates = payload["candidates"]
    if not isinstance(candidates, list):
        raise ValueError("candidates is not a list")
    fragments: list[StreamFragment] = []
    for candidate in candidates[:1]:
        if not isinstance(candidate, dict):
            raise ValueError("candidate is not an object")
        content = candidate.get("content") or {}
        if not isinstance(content, dict):
            raise ValueError("candidate content is not an object")
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise ValueError("content parts is not a list")
        for part in parts:
            if isinstance(part, dict) and "text" not in part:
                continue
            fragments.append(_fragment_from_part(part))
    return fragments


def _fragment_from_part(part: Any) -> StreamFragment:
    if not isinstance(part, dict):
        raise ValueError("content part is not an object")
    text = part.get("text")
    if not isinstance(text, str):
        raise ValueError("content part text is not a string")
    return StreamFragment(text=text, is_thought=bool(part.get("thought")))


def _locate_structured_payload(text: str) -> str | None:
    fence_start = text.find(JSON_FENCE)
    if fence_start == -1:
        fence_start = text.find(FENCE)
    if fence_start != -1:
        open_end = fence_start + len(FENCE)
        language = _FENCE_LANGUAGE_RE.match(text, open_end)
        if language is not None:
            open_end = language.end()
        fence_end = text.rfind(FENCE)
        if fence_end >= open_end:
            return text[open_end:fence_end].strip()

    brace_start = text.find("{")
    brace_end = text.rfind("}")
    if brace_start != -1 and brace_end > brace_start:
        return text[brace_start : brace_end + 1]
    return None


def extract_structured_result(text: str) -> ParsedResult:
    """Split a finished answer into its message and suggested item references.

    The JSON payload is taken from the ```json block, or from the first plain
    fence when no ```json fence exists, or failing that from the first ``{``
    to the last ``}``. The closing side is always the last fence. Text without
    either is returned unchanged as the message. A payload that does not parse
    yields a fixed fallback message and no references.
    """

    payload_text = _locate_structured_payload(text)
    if payload_text is None:
        return ParsedResult(answer=text)

    try:
        data = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        logger.warning("Structured result is not valid JSON: %s", exc)
        return ParsedResult(answer=PARSE_FALLBACK_MESSAGE)
    if not isinstance(data, dict):
        logger.warning("Structured result is not a JSON object")
        return ParsedResult(answer=PARSE_FALLBACK_MESSAGE)

    answer = data.get("answer")
    if not isinstance(answer, str) or not answer.strip():
        answer = DEFAULT_ANSWER

    suggestions = data.get("suggestedItems")
    if suggestions is None:
        suggestions = data.get("suggestedVideos")
    if suggestions is None:
        suggestions = []
    if not isinstance(suggestions, list):
        logger.warning("Structured result suggestions are not a list")
        return ParsedResult(answer=PARSE_FALLBACK_MESSAGE)

    references: list[RecommendationReference] = []
    for entry in suggestions:
        if not isinstance(entry, dict):
            continue
        item_id = entry.get("itemId") or entry.get("videoId")
        if not isinstance(item_id, str) or not item_id.strip():
            continue
        reason = entry.get("reason")
        references.append(
            RecommendationReference(
                item_id=item_id.strip(),
                reason=reason if isinstance(reason, str) else "",
            )
        )
    return ParsedResult(answer=answer, references=references)


class StreamingResponseParser:
    """Accumulates a live model stream into display updates and a final result."""

    def __init__(self) -> None:
        self.state = ParserState.STREAMING
        self.updates: list[DisplayUpdate] = []
        self._thinking: list[str] = []
        self._answer: list[str] = []
        self._result: ParsedResult | None = None
        self.skipped = 0

    @property
    def thinking_text(self) -> str:
        return "".join(self._thinking)

    @property
    def answer_text(self) -> str:
        return "".join(self._answer)

    def visible_answer(self) -> str:
        """Answer text with the ```json block replaced by a placeholder.

        Ordinary code fences stay visible."""

        answer = self.answer_text
        marker = answer.find(JSON_FENCE)
        if marker == -1:
            return answer
        return answer[:marker] + RECEIVING_PLACEHOLDER

    def display_text(self) -> str:
        thinking = self.thinking_text
        answer = self.visible_answer()
        if thinking and answer:
            return f"{thinking}\n\n{answer}"
        return thinking or answer

    def feed(self, fragment: StreamFragment) -> DisplayUpdate:
        """Accumulate one fragment and return the resulting display update."""

        if self.state is ParserState.COMPLETE:
            raise RuntimeError("Cannot feed a stream that has already completed")
        if fragment.is_thought:
            self._thinking.append(fragment.text)
        else:
            self._answer.append(fragment.text)
        update = DisplayUpdate(text=self.display_text())
        self.updates.append(update)
        return update

    def feed_text(self, text: str) -> DisplayUpdate:
        """Feed an answer fragment from a transport without a thought flag."""

        return self.feed(StreamFragment(text=text))

    def feed_raw(self, payload: Any) -> list[DisplayUpdate]:
        """Decode a transport payload and feed every fragment it carries.

        Payloads that cannot be decoded are logged and skipped; they never end
        the stream.
        """

        try:
            fragments = fragments_from_payload(payload)
        except ValueError as exc:
            self.skipped += 1
            logger.warning("Skipping malformed stream fragment: %s", exc)
            return []
        return [self.feed(fragment) for fragment in fragments]

    def finish(self) -> ParsedResult:
        """Close the stream and extract the structured result. Safe to call twice."""

        if self._result is None:
            self.state = ParserState.COMPLETE
            self._result = extract_structured_result(self.answer_text)
            logger.info(
                "Model stream complete: %s updates, %s skipped fragments, %s references",
                len(self.updates),
                self.skipped,
                len(self._result.references),
            )
        return self._result
