"""Clients package containing the LLM provider adapters."""

from __future__ import annotations

from .base import LLMProvider, ProviderError
from .provider_manager import ProviderManager

__all__ = ["LLMProvider", "ProviderError", "ProviderManager"]
