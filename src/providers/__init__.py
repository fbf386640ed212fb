"""Provider adapters for upstream model APIs."""

from providers.base import PreparedPrompt, ProviderAdapter
from providers.gemini_adapter import GeminiAdapter
from providers.grok_adapter import GrokAdapter
from providers.mock import ScriptedAdapter, ScriptedReply
from providers.openai_adapter import OpenAIAdapter
from providers.registry import (
    MODEL_CATALOG,
    ProviderRegistry,
    create_provider_registry,
    provider_for_model,
)

__all__ = [
    "ProviderAdapter",
    "PreparedPrompt",
    "OpenAIAdapter",
    "GrokAdapter",
    "GeminiAdapter",
    "ScriptedAdapter",
    "ScriptedReply",
    "ProviderRegistry",
    "MODEL_CATALOG",
    "create_provider_registry",
    "provider_for_model",
]
