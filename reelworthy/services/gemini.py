"""Integration helpers for the Gemini generative language API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..config import Settings

logger = logging.getLogger(__name__)


class ModelApiError(RuntimeError):
    """Raised when the model API cannot be reached or rejects a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        stream_started: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.stream_started = stream_started


class ModelInfo(BaseModel):
    """A model advertised by the ``models.list`` endpoint."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    name: str
    display_name: str | None = None
    description: str | None = None
    input_token_limit: int | None = None
    output_token_limit: int | None = None
    supported_generation_methods: list[str] = Field(default_factory=list)

    @property
    def model_id(self) -> str:
        return self.name.removeprefix("models/")


class _ModelListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    models: list[ModelInfo] = Field(default_factory=list)
    next_page_token: str | None = None


def _decode_event(data: str) -> dict[str, Any] | str:
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Gemini sent a non-JSON event payload")
        return data
    return decoded if isinstance(decoded, dict) else data


class GeminiClient:
    """Client responsible for Gemini's streaming ``generateContent`` endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _resolve_key(self, api_key: str | None) -> str:
        resolved_key = api_key or self._settings.gemini_api_key
        if not resolved_key:
            raise ModelApiError("Gemini API key is required to generate recommendations")
        return resolved_key

    async def stream_completion(
        self,
        prompt: str,
        *,
        model: str | None = None,
        api_key: str | None = None,
        temperature: float = 0.4,
        include_thoughts: bool = False,
    ) -> AsyncIterator[dict[str, Any] | str]:
        """Stream a completion, yielding each server-sent event's data payload.

        JSON payloads are yielded decoded. Anything else is yielded as the raw
        string so that the consumer can skip the frame without ending the stream.
        """

        resolved_key = self._resolve_key(api_key)
        resolved_model = (model or self._settings.gemini_model).removeprefix("models/")
        generation_config: dict[str, Any] = {"temperature": temperature}
        if include_thoughts:
            generation_config["thinkingConfig"] = {"includeThoughts": True}
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        headers = {
            "x-goog-api-key": resolved_key,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

        started = False
        try:
            async with self._client.stream(
                "POST",
                f"/v1beta/models/{resolved_model}:streamGenerateContent",
                params={"alt": "sse"},
                json=payload,
                headers=headers,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ModelApiError(
                        f"Gemini returned {response.status_code}: {body[:200]}",
                        status_code=response.status_code,
                    )
                started = True
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if not line.strip():
                        if data_lines:
                            yield _decode_event("\n".join(data_lines))
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    field_name, _, value = line.partition(":")
                    if field_name != "data":
                        continue
                    value = value[1:] if value.startswith(" ") else value
                    if value.strip() == "[DONE]":
                        break
                    data_lines.append(value)
                if data_lines:
                    yield _decode_event("\n".join(data_lines))
        except httpx.HTTPError as exc:
            raise ModelApiError(
                f"Gemini stream failed: {exc.__class__.__name__}",
                stream_started=started,
            ) from exc

    async def list_models(self, api_key: str | None = None) -> list[ModelInfo]:
        """Return the models that support content generation."""

        resolved_key = self._resolve_key(api_key)
        models: list[ModelInfo] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"pageSize": 1000}
            if page_token:
                params["pageToken"] = page_token
            try:
                response = await self._client.get(
                    "/v1beta/models",
                    params=params,
                    headers={"x-goog-api-key": resolved_key},
                )
            except httpx.HTTPError as exc:
                raise ModelApiError(
                    f"Gemini model listing failed: {exc.__class__.__name__}"
                ) from exc
            if response.status_code >= 400:
                raise ModelApiError(
                    f"Gemini returned {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            try:
                page = _ModelListResponse.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                raise ModelApiError("Unexpected Gemini model listing response") from exc
            models.extend(
                model
                for model in page.models
                if "generateContent" in model.supported_generation_methods
            )
            page_token = page.next_page_token
            if not page_token:
                break
        logger.info("Gemini lists %s content generation models", len(models))
        return models
