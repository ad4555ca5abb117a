"""Provider-agnostic base interface and transport helpers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, ClassVar, cast

import httpx

from yeoman_gateway.config import ModelConfig
from yeoman_gateway.errors import (
    InvalidResponseError,
    ProviderError,
    classify_response,
    classify_transport,
)
from yeoman_gateway.types import ChatRequest, ChatResponse, Message, ModelInfo, StreamChunk

_MODELS_TIMEOUT_S = 10.0


class BaseProvider(ABC):
    """Abstract base class for provider adapters.

    An adapter is bound to one ``ModelConfig`` snapshot and holds no state
    between calls besides its HTTP connection pool. Every failure leaving
    ``chat`` or ``stream`` is a ``ProviderError`` subclass.
    """

    name: ClassVar[str]
    default_base_url: ClassVar[str]
    models_path: ClassVar[str] = "/models"
    requires_api_key: ClassVar[bool] = True

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: ModelConfig,
        *,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=config.request_timeout_ms / 1000,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self.config.base_url or self.default_base_url

    @property
    def model(self) -> str:
        return self.config.model

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @abstractmethod
    async def chat(self, req: ChatRequest) -> ChatResponse:
        """Execute a non-streaming completion."""
        raise NotImplementedError

    @abstractmethod
    def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Return an async iterator of canonical chunks ending in exactly one ``done``."""
        raise NotImplementedError

    @classmethod
    async def fetch_available_models(
        cls,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> list[ModelInfo]:
        """List the backend's models. Never raises: any failure yields ``[]``."""
        try:
            async with httpx.AsyncClient(
                base_url=base_url or cls.default_base_url,
                timeout=_MODELS_TIMEOUT_S,
                transport=transport,
            ) as client:
                response = await client.get(
                    cls.models_path,
                    headers=cls._auth_headers(api_key),
                    params=cls._models_params(api_key),
                )
                if response.status_code >= 400:
                    return []
                return cls._parse_models(response.json())
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            cls._logger.debug("Model listing for %s failed: %s", cls.name, exc)
            return []

    @classmethod
    def _parse_models(cls, data: Any) -> list[ModelInfo]:
        return [ModelInfo(id=m["id"], owned_by=m.get("owned_by")) for m in data.get("data", [])]

    @classmethod
    def _auth_headers(cls, api_key: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    @classmethod
    def _models_params(cls, api_key: str | None) -> dict[str, str]:
        return {}

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **self._auth_headers(self._api_key)}

    def resolve_max_tokens(self, req: ChatRequest) -> int:
        return req.max_tokens if req.max_tokens is not None else self.config.max_tokens

    def resolve_temperature(self, req: ChatRequest) -> float:
        return req.temperature if req.temperature is not None else self.config.temperature

    def _classify(self, response: httpx.Response, body: str | None = None) -> ProviderError:
        return classify_response(self.name, response, body)

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(path, headers=self._headers(), json=payload, params=params)
        except httpx.HTTPError as exc:
            raise classify_transport(self.name, exc) from exc

        if response.status_code >= 400:
            raise self._classify(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise InvalidResponseError(self.name, "response body is not JSON") from exc
        if not isinstance(data, dict):
            raise InvalidResponseError(self.name, "response body is not a JSON object")
        return cast(dict[str, Any], data)

    async def _stream_lines(
        self,
        path: str,
        payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[str]:
        """Yield the text lines of a streamed response.

        The response is closed when the consumer stops iterating, so a
        cancelled stream releases the connection and the backend stops
        generating.
        """
        try:
            async with self._client.stream(
                "POST",
                path,
                headers=self._headers(),
                json=payload,
                params=params,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self._classify(response, body.decode(errors="replace"))

                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPError as exc:
            raise classify_transport(self.name, exc) from exc

    @staticmethod
    def _tool_names(messages: list[Message]) -> dict[str, str]:
        """Map tool-call ids to tool names for backends that key results by name."""
        names: dict[str, str] = {}
        for message in messages:
            for call in message.tool_calls or ():
                names[call.id] = call.name
        return names

    def _parse_arguments(self, raw: Any) -> dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidResponseError(self.name, f"malformed tool arguments: {raw!r}") from exc
        if not isinstance(parsed, dict):
            raise InvalidResponseError(self.name, f"tool arguments are not an object: {raw!r}")
        return parsed
