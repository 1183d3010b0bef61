"""
Provider adapter base.

Every vendor adapter turns the vendor-neutral CompletionRequest into its own
wire format and parses the reply back into a CompletionResponse. The agent
loop never sees vendor JSON.

Each adapter owns one pooled ``httpx.AsyncClient`` (HTTP/2, limits from the
``connection_pool`` config section). Tests inject a client backed by
``httpx.MockTransport``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import httpx

from heartloop.chat.models import CompletionRequest, CompletionResponse, StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_POOL_CONFIG: dict[str, Any] = {
    "max_connections": 50,
    "max_keepalive_connections": 10,
    "keepalive_expiry_seconds": 300.0,
    "request_timeout_seconds": 120.0,
}


class ProviderError(Exception):
    """A provider call failed. ``status_code`` is set for HTTP failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class LLMProvider(ABC):
    """
    Common interface of the vendor adapters.

    Subclasses set ``name`` and ``default_base_url`` and implement
    ``complete`` and ``stream``.
    """

    name: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        provider_config: dict[str, Any] | None = None,
        pool_config: dict[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider_config: dict[str, Any] = dict(provider_config or {})
        self._pool_config: dict[str, Any] = {**DEFAULT_POOL_CONFIG, **(pool_config or {})}
        self.base_url: str = str(
            self.provider_config.get("base_url") or self.default_base_url
        ).rstrip("/")
        self.api_key: str = ""
        self.model: str = self.provider_config.get("default_model", "")
        self._client: httpx.AsyncClient | None = client
        self._owns_client: bool = client is None
        self._active_streams: int = 0

    def configure(self, api_key: str, model: str) -> None:
        """Set the credential and the model used for subsequent calls."""
        self.api_key = api_key
        if model:
            self.model = model

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        """The pooled HTTP client, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._pool_config["request_timeout_seconds"],
                http2=True,
                limits=httpx.Limits(
                    max_connections=self._pool_config["max_connections"],
                    max_keepalive_connections=self._pool_config["max_keepalive_connections"],
                    keepalive_expiry=self._pool_config["keepalive_expiry_seconds"],
                ),
                trust_env=False,
            )
            self._owns_client = True
            logger.debug(f"HTTP client created for provider '{self.name}'")
        return self._client

    def _require_key(self) -> None:
        if not self.api_key:
            raise ProviderError(f"No API key configured for provider '{self.name}'")

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send one request and return the whole response."""

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """Send one request and yield events as they arrive.

        The last event is always a StreamComplete or a StreamError.
        """

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            logger.debug(f"HTTP client closed for provider '{self.name}'")
        self._client = None

    async def __aenter__(self) -> LLMProvider:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def error_body(response: httpx.Response, limit: int = 500) -> str:
    """Short, log-safe excerpt of an error response body."""
    try:
        text = response.text
    except httpx.ResponseNotRead:
        return "<body not read>"
    return text[:limit]
