"""Provider registry and model routing.

Adapters are built once at startup and looked up by model id for every
turn. Routing follows the static model catalog first, then name prefixes,
and falls back to OpenAI.
"""

from typing import Optional

from shared.config import ProviderSettings
from shared.errors import ProviderError
from shared.logging import get_logger
from providers.base import ProviderAdapter
from providers.gemini_adapter import GeminiAdapter
from providers.grok_adapter import GrokAdapter
from providers.mock import ScriptedAdapter
from providers.openai_adapter import OpenAIAdapter

logger = get_logger(__name__)


MODEL_CATALOG: dict[str, str] = {
    "gpt-5": "openai",
    "gpt-4o-mini": "openai",
    "gemini-2.5-pro": "gemini",
    "gemini-2.5-flash": "gemini",
    "grok-4": "grok",
    "mock": "mock",
}


def provider_for_model(model: str) -> str:
    """
    Name of the provider serving a model id.

    Args:
        model: Model id as sent by the client

    Returns:
        Provider name (openai, gemini, grok or mock)
    """
    if model in MODEL_CATALOG:
        return MODEL_CATALOG[model]
    if model.startswith("gemini-"):
        return "gemini"
    if model.startswith("grok"):
        return "grok"
    return "openai"


class ProviderRegistry:
    """Maps model ids to provider adapters."""

    def __init__(
        self,
        adapters: dict[str, ProviderAdapter],
        default_model: str = "gpt-4o-mini"
    ) -> None:
        self._adapters = dict(adapters)
        self.default_model = default_model

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, provider: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider)

    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def resolve(self, model: Optional[str] = None) -> tuple[str, str, ProviderAdapter]:
        """
        Pick the adapter for a turn.

        Args:
            model: Requested model id; the default model when omitted

        Returns:
            Tuple of (model id, provider name, adapter)

        Raises:
            ProviderError: If no adapter is registered for the provider
        """
        model = model or self.default_model
        provider = provider_for_model(model)
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderError(provider, f"Provider '{provider}' is not configured")
        return model, provider, adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def create_provider_registry(
    settings: ProviderSettings,
    default_model: str = "gpt-4o-mini",
    timeout: float = 60.0
) -> ProviderRegistry:
    """
    Build adapters for every supported provider.

    Missing API keys do not prevent construction; the adapter reports a
    ProviderError on its first call instead.

    Args:
        settings: Provider credentials and endpoints
        default_model: Model used when a request names none
        timeout: Per-request timeout handed to each adapter

    Returns:
        Configured provider registry
    """
    adapters: list[ProviderAdapter] = [
        OpenAIAdapter(api_key=settings.openai_api_key, base_url=settings.openai_base_url, timeout=timeout),
        GeminiAdapter(api_key=settings.gemini_api_key, base_url=settings.gemini_base_url, timeout=timeout),
        GrokAdapter(api_key=settings.xai_api_key, base_url=settings.xai_base_url, timeout=timeout),
    ]
    if settings.enable_mock:
        adapters.append(ScriptedAdapter())

    registry = ProviderRegistry({a.name: a for a in adapters}, default_model=default_model)

    logger.info(
        "Provider registry created",
        providers=registry.providers(),
        default_model=default_model,
        openai_configured=bool(settings.openai_api_key),
        gemini_configured=bool(settings.gemini_api_key),
        grok_configured=bool(settings.xai_api_key)
    )
    return registry
