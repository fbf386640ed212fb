"""xAI Grok adapter. Grok speaks the OpenAI chat-completions dialect."""

from typing import Any, Optional

from providers.openai_adapter import OpenAIAdapter

XAI_BASE_URL = "https://api.x.ai/v1"


class GrokAdapter(OpenAIAdapter):
    """Adapter for xAI's OpenAI-compatible endpoint."""

    name = "grok"
    default_model = "grok-4"
    api_key_env = "XAI_API_KEY"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[Any] = None
    ) -> None:
        super().__init__(
            api_key=api_key,
            base_url=base_url or XAI_BASE_URL,
            timeout=timeout,
            client=client,
        )
