"""API key lookup for the provider adapters."""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

# Map provider names to environment variable names
PROVIDER_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class CredentialStore:
    """
    Keys come from the environment (``.env`` is loaded by Configuration) and
    can be overridden or removed at runtime. Runtime changes are not persisted.
    """

    def __init__(self, keys: dict[str, str] | None = None, use_environment: bool = True) -> None:
        self._keys: dict[str, str] = dict(keys or {})
        self._removed: set[str] = set()
        self._use_environment = use_environment

    def get_api_key(self, provider_type: str) -> str | None:
        if provider_type in self._removed:
            return None
        key = self._keys.get(provider_type)
        if key:
            return key
        if not self._use_environment:
            return None
        env_key = PROVIDER_KEY_ENV.get(provider_type)
        if not env_key:
            return None
        return os.getenv(env_key) or None

    def has_api_key(self, provider_type: str) -> bool:
        return self.get_api_key(provider_type) is not None

    def store_api_key(self, provider_type: str, api_key: str) -> None:
        self._keys[provider_type] = api_key
        self._removed.discard(provider_type)
        logger.info(f"API key stored for provider '{provider_type}'")

    def delete_api_key(self, provider_type: str) -> None:
        self._keys.pop(provider_type, None)
        self._removed.add(provider_type)
        logger.info(f"API key removed for provider '{provider_type}'")
