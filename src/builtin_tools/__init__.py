"""Built-in tools offered to every model."""

from typing import Optional

from shared.config import ToolSettings
from shared.logging import get_logger
from tool_runtime.catalog import ToolCatalog
from builtin_tools.web_fetch import WebFetchTool
from builtin_tools.web_search import WebSearchTool

logger = get_logger(__name__)


def register_builtin_tools(catalog: ToolCatalog, settings: Optional[ToolSettings] = None) -> None:
    """Register web_search and web_fetch with the catalog."""
    settings = settings or ToolSettings()

    catalog.register_many([
        WebSearchTool(timeout=settings.timeout_seconds).definition(),
        WebFetchTool(
            timeout=settings.web_fetch_timeout_seconds,
            max_bytes=settings.web_fetch_max_bytes
        ).definition(),
    ])

    logger.info("Built-in tools registered", tools=catalog.names())


__all__ = ["WebFetchTool", "WebSearchTool", "register_builtin_tools"]
