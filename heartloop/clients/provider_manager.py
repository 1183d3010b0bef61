"""
Provider Selector

Resolves the active provider from configuration, injects its credential and
model, and fails over to other configured providers when the active one
fails with anything other than an authentication error.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from heartloop.chat.models import CompletionRequest, CompletionResponse, ProviderFailoverEvent
from heartloop.clients.anthropic_client import AnthropicProvider
from heartloop.clients.base import LLMProvider, ProviderError
from heartloop.clients.credentials import CredentialStore
from heartloop.clients.gemini_client import GeminiProvider
from heartloop.clients.openai_client import OpenAIProvider, OpenRouterProvider
from heartloop.config import DEFAULT_PROVIDER_TYPE, PROVIDER_TYPES

if TYPE_CHECKING:
    from heartloop.config import Configuration

logger = logging.getLogger(__name__)

DEFAULT_FAILOVER_ORDER = ("gemini", "openai", "anthropic", "openrouter")
AUTH_STATUS_CODES = (401, 403)

_PROVIDER_CLASSES: dict[str, type[LLMProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "openrouter": OpenRouterProvider,
}


class ProviderInfo(BaseModel):
    type: str
    display_name: str
    default_model: str
    has_key: bool
    models: list[str] = Field(default_factory=list)


class ProviderManager:
    def __init__(
        self,
        config: Configuration,
        credentials: CredentialStore | None = None,
        providers: dict[str, LLMProvider] | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials or CredentialStore()
        if providers is None:
            pool_config = config.get_connection_pool_config()
            providers = {
                provider_type: cls(config.get_provider_config(provider_type), pool_config)
                for provider_type, cls in _PROVIDER_CLASSES.items()
            }
        self.providers = providers
        self.last_failover_event: ProviderFailoverEvent | None = None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def active_type(self) -> str:
        return self.config.active_provider_type

    def active_provider(self) -> LLMProvider:
        """The active adapter, configured with its key and the active model."""
        provider_type = self.active_type()
        provider = self.providers.get(provider_type) or self.providers[DEFAULT_PROVIDER_TYPE]
        self._configure(provider_type, provider, self.config.active_model)
        return provider

    def switch_provider(self, provider_type: str) -> bool:
        if provider_type not in self.providers:
            logger.warning(f"Cannot switch to unknown provider '{provider_type}'")
            return False
        self.config.active_provider_type = provider_type
        # A model picked for another vendor would not be valid here
        self.config.active_model = ""
        logger.info(f"Switched provider to '{provider_type}'")
        return True

    def available_providers(self) -> list[ProviderInfo]:
        infos = []
        for provider_type in PROVIDER_TYPES:
            provider_config = self.config.get_provider_config(provider_type)
            infos.append(
                ProviderInfo(
                    type=provider_type,
                    display_name=provider_config.get("display_name", provider_type),
                    default_model=provider_config.get("default_model", ""),
                    has_key=self.credentials.has_api_key(provider_type),
                    models=list(provider_config.get("models", [])),
                )
            )
        return infos

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def has_key(self, provider_type: str) -> bool:
        return self.credentials.has_api_key(provider_type)

    def set_api_key(self, provider_type: str, api_key: str) -> None:
        self.credentials.store_api_key(provider_type, api_key)

    def remove_api_key(self, provider_type: str) -> None:
        self.credentials.delete_api_key(provider_type)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_with_failover(self, request: CompletionRequest) -> CompletionResponse:
        """
        Complete with the active provider, then with the failover order.

        Authentication failures (401/403) are raised immediately since another
        provider would not fix a configuration problem.

        Raises:
            ProviderError: Auth failure, or every candidate failed
        """
        active_type = self.active_type()
        self.last_failover_event = None

        try:
            return await self.active_provider().complete(request)
        except ProviderError as e:
            logger.warning(f"Primary provider '{active_type}' failed: {e}")
            if e.status_code in AUTH_STATUS_CODES:
                raise
            primary_error = e

        errors = [f"{active_type}: {primary_error}"]
        for fallback_type in self._failover_order():
            if fallback_type == active_type:
                continue
            if not self.credentials.has_api_key(fallback_type):
                continue
            provider = self.providers.get(fallback_type)
            if provider is None:
                continue

            self._configure(fallback_type, provider, "")
            try:
                logger.warning(f"Failing over from '{active_type}' to '{fallback_type}'...")
                response = await provider.complete(request)
            except Exception as fallback_error:
                logger.warning(
                    f"Failover provider '{fallback_type}' also failed: {fallback_error}"
                )
                errors.append(f"{fallback_type}: {fallback_error}")
                continue

            logger.warning(f"Failover to '{fallback_type}' succeeded")
            self.last_failover_event = ProviderFailoverEvent(
                from_provider=active_type,
                to_provider=fallback_type,
                reason=str(primary_error),
            )
            return response

        raise ProviderError("All providers failed. Errors:\n" + "\n".join(errors))

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()

    def _failover_order(self) -> list[str]:
        order = self.config.get_llm_config().get("failover_order")
        return list(order or DEFAULT_FAILOVER_ORDER)

    def _configure(self, provider_type: str, provider: LLMProvider, model: str) -> None:
        api_key = self.credentials.get_api_key(provider_type)
        if api_key is None:
            # A removed key must not linger on the cached adapter
            provider.api_key = ""
            return
        default_model = self.config.get_provider_config(provider_type).get("default_model", "")
        provider.configure(api_key, model or default_model)
