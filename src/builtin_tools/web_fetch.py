"""Web fetch tool.

Downloads up to five pages per call and extracts either readable text,
the raw body, or basic metadata. Failures are reported per URL so one bad
link does not sink the whole call.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup

from shared.logging import get_logger
from shared.models import ToolContext, ToolDefinition, ToolPolicy

logger = get_logger(__name__)


MAX_URLS = 5
MAX_CONTENT_LENGTH = 10000
USER_AGENT = "AI-Assistant-Bot/1.0"

# Elements that never carry article text
_NOISE_TAGS = ["script", "style", "noscript", "template", "svg", "nav", "header", "footer", "aside", "form"]

WEB_FETCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "urls": {
            "type": "array",
            "items": {"type": "string", "format": "uri"},
            "description": "URLs to fetch content from",
            "minItems": 1,
            "maxItems": MAX_URLS
        },
        "extract_mode": {
            "type": "string",
            "enum": ["readable", "full", "metadata"],
            "default": "readable",
            "description": "Content extraction mode"
        }
    },
    "required": ["urls"]
}


def extract_readable(html: str) -> Optional[dict[str, Any]]:
    """
    Extract the readable part of an HTML document.

    Args:
        html: Raw HTML

    Returns:
        Dict with title, content, excerpt, byline and length, or None when
        the page has no text worth returning
    """
    soup = BeautifulSoup(html, "html.parser")

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else None

    author = soup.find("meta", attrs={"name": "author"})
    byline = author.get("content") if author else None

    for tag in soup(_NOISE_TAGS):
        tag.decompose()

    main = soup.find("article") or soup.find("main") or soup.body or soup
    text = re.sub(r"\s+", " ", main.get_text(separator=" ", strip=True)).strip()
    if not text:
        return None

    return {
        "title": title or "Untitled",
        "content": text[:MAX_CONTENT_LENGTH],
        "excerpt": text[:200],
        "byline": byline,
        "length": len(text),
    }


def extract_title(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    title = soup.find("title")
    return title.get_text(strip=True) if title and title.get_text(strip=True) else "Untitled"


class WebFetchTool:
    """Fetches web pages and extracts their content."""

    name = "web_fetch"
    description = "Fetch and extract readable content from web pages"

    def __init__(
        self,
        timeout: float = 10.0,
        max_bytes: int = 1024 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._transport = transport

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=WEB_FETCH_SCHEMA,
            handler=self.run,
            policy=ToolPolicy(
                category="web",
                cache_ttl_seconds=600,
                # Per-URL timeouts run back to back
                timeout_seconds=self.timeout * MAX_URLS + 5,
                concurrency_safe=True,
                rate_limit="20/minute"
            )
        )

    async def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        """
        Fetch every URL and extract content according to ``extract_mode``.

        Args:
            args: Validated arguments (urls, extract_mode)
            context: Invocation context

        Returns:
            Per-URL results plus fetch metadata
        """
        urls: list[str] = args["urls"]
        mode = args.get("extract_mode", "readable")
        results: list[dict[str, Any]] = []

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        ) as client:
            for url in urls[:MAX_URLS]:
                results.append(await self._fetch_one(client, url, mode))

        succeeded = sum(1 for r in results if r["status"] == "success")
        logger.info(
            "Web fetch completed",
            urls_processed=len(results),
            success_count=succeeded,
            conversation_id=context.conversation_id
        )

        return {
            "results": results,
            "fetch_metadata": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "mode": mode,
                "total_urls": len(urls),
                "processed_urls": len(results),
            },
        }

    async def _fetch_one(self, client: httpx.AsyncClient, url: str, mode: str) -> dict[str, Any]:
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    return self._too_large(url)

                # Stop reading as soon as the limit is passed
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        return self._too_large(url)

                content_type = response.headers.get("content-type")
                text = body.decode(response.encoding or "utf-8", errors="replace")
        except httpx.HTTPStatusError as e:
            logger.warning("Web fetch failed", url=url, status=e.response.status_code)
            return {"url": url, "error": f"HTTP {e.response.status_code}", "status": "failed"}
        except httpx.HTTPError as e:
            logger.warning("Web fetch failed", url=url, error=str(e))
            return {"url": url, "error": str(e) or e.__class__.__name__, "status": "failed"}

        if mode == "metadata":
            return {
                "url": url,
                "title": extract_title(text),
                "content_type": content_type,
                "status": "success",
            }

        if mode == "full":
            return {
                "url": url,
                "content": text[:MAX_CONTENT_LENGTH],
                "content_type": content_type,
                "status": "success",
            }

        article = extract_readable(text)
        if article is None:
            return {"url": url, "error": "Could not extract readable content", "status": "failed"}

        return {"url": url, **article, "status": "success"}

    def _too_large(self, url: str) -> dict[str, Any]:
        logger.warning("Web fetch aborted", url=url, max_bytes=self.max_bytes)
        return {"url": url, "error": f"Content exceeds {self.max_bytes} bytes", "status": "failed"}
