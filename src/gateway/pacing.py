"""Token pacing for streamed responses.

Some providers deliver text in large bursts. Pacing re-splits each token
into words at the SSE boundary so clients render a steady stream; the
engine and the persisted text never see the split.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from typing import AsyncIterator

from shared.config import StreamingSettings

_WORD = re.compile(r"\s*\S+\s*|\s+")


class PacingPolicy(ABC):
    """Decides how a token is delivered to the client."""

    @abstractmethod
    def pace(self, token: str) -> AsyncIterator[str]:
        """Yield the pieces of ``token`` in order; their concatenation is ``token``."""
        pass


class NoPacing(PacingPolicy):
    """Deliver tokens as they arrive."""

    async def pace(self, token: str) -> AsyncIterator[str]:
        yield token


class WordPacing(PacingPolicy):
    """Deliver a token word by word with a fixed delay between words."""

    def __init__(self, delay_ms: float = 15) -> None:
        self.delay = delay_ms / 1000

    def split(self, token: str) -> list[str]:
        return _WORD.findall(token)

    async def pace(self, token: str) -> AsyncIterator[str]:
        words = self.split(token)
        for index, word in enumerate(words):
            if index and self.delay:
                await asyncio.sleep(self.delay)
            yield word


def pacing_for(provider: str, settings: StreamingSettings) -> PacingPolicy:
    """Pacing policy configured for a provider."""
    if provider in settings.paced_providers and settings.pacing_delay_ms > 0:
        return WordPacing(settings.pacing_delay_ms)
    return NoPacing()
