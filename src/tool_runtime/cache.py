"""TTL cache for tool results.

Entries expire ``ttl`` seconds after they are stored. Expiry is measured
with a monotonic clock that tests can replace.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from shared.logging import get_logger
from shared.models import ToolResult

logger = get_logger(__name__)


@dataclass
class _Entry:
    result: ToolResult
    expires_at: float


class ToolResultCache:
    """
    In-memory result cache keyed by tool invocation fingerprint.

    Only successful results are stored by the executor. Lookups return a
    copy so callers can annotate the result (id, cached flag) freely.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[ToolResult]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry.result.model_copy(deep=True)

    def set(self, key: str, result: ToolResult, ttl: float) -> None:
        self._entries[key] = _Entry(
            result=result.model_copy(deep=True),
            expires_at=self._clock() + ttl
        )

    def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Tool cache purged", count=len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
