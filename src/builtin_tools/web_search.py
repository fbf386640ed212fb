"""Web search tool backed by the Brave Search API."""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from shared.errors import ToolExecutionError
from shared.logging import get_logger
from shared.models import ToolContext, ToolDefinition, ToolPolicy

logger = get_logger(__name__)


BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

WEB_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "Search query to find relevant information"
        },
        "max_results": {
            "type": "number",
            "description": "Maximum number of results to return",
            "default": 10,
            "minimum": 1,
            "maximum": 20
        },
        "focus": {
            "type": "string",
            "description": "Search focus area",
            "enum": ["general", "news", "academic", "recent"],
            "default": "general"
        }
    },
    "required": ["query"]
}


class WebSearchTool:
    """
    Searches the web through Brave Search.

    Results are normalized to url/title/snippet/published/favicon.
    """

    name = "web_search"
    description = "Search the web for current information on any topic"

    def __init__(
        self,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=WEB_SEARCH_SCHEMA,
            handler=self.run,
            policy=ToolPolicy(
                category="web",
                cache_ttl_seconds=300,
                required_credentials=["BRAVE_API_KEY"],
                concurrency_safe=True,
                rate_limit="10/minute"
            )
        )

    async def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        """
        Execute a search.

        Args:
            args: Validated arguments (query, max_results, focus)
            context: Invocation context carrying BRAVE_API_KEY

        Returns:
            Normalized search results

        Raises:
            ToolExecutionError: If the search request fails
        """
        query = args["query"]
        focus = args.get("focus", "general")
        max_results = int(args.get("max_results", 10))

        params: dict[str, Any] = {
            "q": query,
            "count": max_results,
            "search_lang": "en",
            "country": "US",
            "safesearch": "moderate",
        }
        if focus == "recent":
            params["freshness"] = "pd"

        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "X-Subscription-Token": context.credentials.get("BRAVE_API_KEY", ""),
        }

        logger.info("Web search", query=query, focus=focus, max_results=max_results)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(BRAVE_SEARCH_URL, params=params, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(
                f"Web search failed: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Web search failed: {e}") from e

        results = [
            {
                "url": item.get("url"),
                "title": item.get("title"),
                "snippet": item.get("description"),
                "published": item.get("age"),
                "favicon": (item.get("profile") or {}).get("img"),
            }
            for item in (data.get("web") or {}).get("results", [])
        ]

        logger.info("Web search completed", query=query, results_count=len(results))

        return {
            "results": results,
            "query": query,
            "total_results": len(results),
            "search_metadata": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "focus": focus,
                "source": "brave",
            },
        }
