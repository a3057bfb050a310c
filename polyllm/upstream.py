"""Backend client contract and the OpenAI-compatible HTTP implementation."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from .config import ProviderConfig
from .errors import APIKeyNotSetError, InvalidConfigurationError, RequestFailedError
from .json_helpers import to_bounded_json
from .schema import ChatCompletionRequest, ChatCompletionResponse, Model, StreamEvent

LOG = logging.getLogger(__name__)

_REFERER = "https://github.com/polyllm/polyllm"


class LLMClient(ABC):
    """One backend provider's chat completion endpoint.

    ``chat_completion`` yields zero or more non-terminal events followed by
    exactly one terminal event, for both streaming and non-streaming calls.
    """

    def __init__(self, provider: ProviderConfig) -> None:
        self.provider = provider

    @abstractmethod
    async def list_models(self) -> list[Model]:
        """Fetch the provider's live model list."""

    @abstractmethod
    def chat_completion(self, request: ChatCompletionRequest) -> AsyncIterator[StreamEvent]:
        """Run one chat completion and yield normalized events."""

    async def close(self) -> None:
        return None


def _error_message_from_body(body: str) -> str | None:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
    return None


def _request_failed(provider: str, status_code: int, body: str) -> RequestFailedError:
    detail = _error_message_from_body(body) or body[:500] or "empty response body"
    return RequestFailedError(
        f"provider '{provider}' returned HTTP {status_code}: {detail}",
        status_code=status_code,
        body=body,
    )


class OpenAICompatibleClient(LLMClient):
    """Async HTTP client for any `/models` + `/chat/completions` style API."""

    def __init__(
        self,
        provider: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(provider)
        if not provider.api_key:
            raise APIKeyNotSetError(f"API key not set for provider '{provider.name}'")
        if not provider.base_url:
            raise InvalidConfigurationError(f"base_url not set for provider '{provider.name}'")
        self._base_url = provider.base_url.rstrip("/")
        self._timeout = httpx.Timeout(provider.timeout_seconds, connect=10.0)
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=transport)

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self, *, stream: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.provider.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "HTTP-Referer": _REFERER,
            "X-Title": "polyllm",
        }
        headers.update(self.provider.headers)
        return headers

    async def list_models(self) -> list[Model]:
        """Fetch `/models` and prefix every id with the provider's model prefix."""
        LOG.debug("backend request provider=%s method=GET path=/models", self.provider.name)
        try:
            response = await self._client.get("/models", headers=self._headers())
        except httpx.HTTPError as exc:
            raise RequestFailedError(f"listing models for provider '{self.provider.name}' failed: {exc}") from exc
        if response.status_code >= 400:
            raise _request_failed(self.provider.name, response.status_code, response.text)

        try:
            items = response.json().get("data") or []
        except (ValueError, AttributeError) as exc:
            raise RequestFailedError(f"provider '{self.provider.name}' returned an invalid model list") from exc

        models: list[Model] = []
        for item in items:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            try:
                model = Model.model_validate(item)
            except ValidationError as exc:
                LOG.warning(
                    "skipping malformed model entry provider=%s id=%r error=%s",
                    self.provider.name,
                    item.get("id"),
                    exc,
                )
                continue
            native_id = model.id
            model.id = f"{self.provider.model_prefix}{native_id}"
            if not model.name:
                model.name = native_id
            models.append(model)
        return models

    async def chat_completion(self, request: ChatCompletionRequest) -> AsyncIterator[StreamEvent]:
        payload = request.to_wire()
        payload["stream"] = request.stream
        LOG.debug(
            "backend request provider=%s method=POST path=/chat/completions stream=%s payload=%s",
            self.provider.name,
            request.stream,
            to_bounded_json(payload),
        )
        if request.stream:
            async for event in self._stream(payload):
                yield event
        else:
            yield await self._complete(payload)

    async def _complete(self, payload: dict[str, Any]) -> StreamEvent:
        try:
            response = await self._client.post("/chat/completions", headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            return StreamEvent(error=RequestFailedError(f"provider '{self.provider.name}' request failed: {exc}"))
        if response.status_code >= 400:
            return StreamEvent(error=_request_failed(self.provider.name, response.status_code, response.text))
        try:
            decoded = ChatCompletionResponse.model_validate(response.json())
        except ValueError as exc:
            return StreamEvent(
                error=RequestFailedError(f"provider '{self.provider.name}' returned an invalid response: {exc}")
            )
        return StreamEvent(response=decoded, done=True)

    async def _stream(self, payload: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        started = time.monotonic()
        chunk_count = 0
        try:
            async with self._client.stream(
                "POST",
                "/chat/completions",
                headers=self._headers(stream=True),
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    yield StreamEvent(error=_request_failed(self.provider.name, response.status_code, body))
                    return

                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        LOG.debug(
                            "backend stream done provider=%s elapsed=%.3fs chunks=%s",
                            self.provider.name,
                            time.monotonic() - started,
                            chunk_count,
                        )
                        yield StreamEvent(done=True)
                        return
                    try:
                        chunk = ChatCompletionResponse.model_validate(json.loads(data))
                    except ValueError as exc:
                        yield StreamEvent(
                            error=RequestFailedError(
                                f"provider '{self.provider.name}' sent an undecodable stream chunk: {exc}"
                            )
                        )
                        return
                    chunk_count += 1
                    yield StreamEvent(response=chunk)
        except httpx.HTTPError as exc:
            yield StreamEvent(error=RequestFailedError(f"provider '{self.provider.name}' stream failed: {exc}"))
            return

        # Some providers close the stream without a [DONE] marker.
        LOG.debug("backend stream ended without done marker provider=%s chunks=%s", self.provider.name, chunk_count)
        yield StreamEvent(done=True)


def build_client(provider: ProviderConfig) -> LLMClient:
    """Create the backend client for one provider config."""
    return OpenAICompatibleClient(provider)
