"""Tests for the built-in web tools."""

import httpx
import pytest

from shared.models import ToolContext, ToolResultStatus


ARTICLE_HTML = """
<html>
  <head>
    <title>Release Notes</title>
    <meta name="author" content="Ada">
    <script>var tracking = true;</script>
  </head>
  <body>
    <nav>Home | About</nav>
    <article><h1>Version 2</h1><p>Faster   startup and
    smaller   images.</p></article>
    <footer>Copyright</footer>
  </body>
</html>
"""


class TestWebSearch:
    """Tests for the web_search tool."""

    @pytest.mark.asyncio
    async def test_search_normalizes_results(self):
        """Test that Brave results are normalized and the key is sent."""
        from builtin_tools.web_search import WebSearchTool

        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["token"] = request.headers.get("X-Subscription-Token")
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={
                "web": {"results": [{
                    "url": "https://example.com",
                    "title": "Example",
                    "description": "An example",
                    "age": "1 day ago",
                    "profile": {"img": "https://example.com/icon.png"},
                }]}
            })

        tool = WebSearchTool(transport=httpx.MockTransport(handler))
        output = await tool.run(
            {"query": "python", "max_results": 3, "focus": "recent"},
            ToolContext(credentials={"BRAVE_API_KEY": "brave-key"})
        )

        assert seen["token"] == "brave-key"
        assert seen["params"]["q"] == "python"
        assert seen["params"]["count"] == "3"
        assert seen["params"]["freshness"] == "pd"
        assert output["total_results"] == 1
        assert output["results"][0] == {
            "url": "https://example.com",
            "title": "Example",
            "snippet": "An example",
            "published": "1 day ago",
            "favicon": "https://example.com/icon.png",
        }
        assert output["search_metadata"]["source"] == "brave"

    @pytest.mark.asyncio
    async def test_search_http_error(self):
        """Test that upstream failures raise ToolExecutionError."""
        from builtin_tools.web_search import WebSearchTool
        from shared.errors import ToolExecutionError

        tool = WebSearchTool(transport=httpx.MockTransport(lambda request: httpx.Response(429)))

        with pytest.raises(ToolExecutionError, match="HTTP 429"):
            await tool.run({"query": "x"}, ToolContext(credentials={"BRAVE_API_KEY": "k"}))

    @pytest.mark.asyncio
    async def test_search_requires_api_key(self):
        """Test that the executor refuses to run web_search without a key."""
        from builtin_tools import register_builtin_tools
        from shared.config import ToolSettings
        from tool_runtime.catalog import ToolCatalog
        from tool_runtime.executor import ToolExecutor

        catalog = ToolCatalog()
        register_builtin_tools(catalog, ToolSettings(brave_api_key=None))
        executor = ToolExecutor(catalog)

        result = await executor.execute("web_search", {"query": "x"})

        assert result.status == ToolResultStatus.ERROR
        assert result.error_code == "MISSING_CREDENTIALS"

    def test_definition_policy(self):
        """Test the declared execution policy."""
        from builtin_tools.web_search import WebSearchTool

        definition = WebSearchTool().definition()

        assert definition.name == "web_search"
        assert definition.policy.cache_ttl_seconds == 300
        assert definition.policy.concurrency_safe
        assert definition.policy.required_credentials == ["BRAVE_API_KEY"]


class TestWebFetch:
    """Tests for the web_fetch tool."""

    def test_extract_readable(self):
        """Test readable extraction drops navigation and scripts."""
        from builtin_tools.web_fetch import extract_readable

        article = extract_readable(ARTICLE_HTML)

        assert article["title"] == "Release Notes"
        assert article["byline"] == "Ada"
        assert article["content"] == "Version 2 Faster startup and smaller images."
        assert "tracking" not in article["content"]
        assert article["length"] == len(article["content"])

    def test_extract_readable_empty_page(self):
        """Test that pages without text yield nothing."""
        from builtin_tools.web_fetch import extract_readable

        assert extract_readable("<html><body><script>x()</script></body></html>") is None

    @pytest.mark.asyncio
    async def test_fetch_modes_and_failures(self):
        """Test per-URL results, including inline failures."""
        from builtin_tools.web_fetch import WebFetchTool

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/missing":
                return httpx.Response(404)
            return httpx.Response(200, html=ARTICLE_HTML)

        tool = WebFetchTool(transport=httpx.MockTransport(handler))
        output = await tool.run(
            {"urls": ["https://example.com/post", "https://example.com/missing"], "extract_mode": "readable"},
            ToolContext()
        )

        ok, failed = output["results"]
        assert ok["status"] == "success"
        assert ok["title"] == "Release Notes"
        assert failed == {"url": "https://example.com/missing", "error": "HTTP 404", "status": "failed"}
        assert output["fetch_metadata"]["processed_urls"] == 2

    @pytest.mark.asyncio
    async def test_fetch_metadata_mode(self):
        """Test metadata extraction."""
        from builtin_tools.web_fetch import WebFetchTool

        tool = WebFetchTool(transport=httpx.MockTransport(lambda request: httpx.Response(200, html=ARTICLE_HTML)))
        output = await tool.run({"urls": ["https://example.com"], "extract_mode": "metadata"}, ToolContext())

        result = output["results"][0]
        assert result["title"] == "Release Notes"
        assert result["content_type"].startswith("text/html")

    @pytest.mark.asyncio
    async def test_fetch_rejects_oversized_bodies(self):
        """Test the response size limit."""
        from builtin_tools.web_fetch import WebFetchTool

        tool = WebFetchTool(
            max_bytes=10,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="x" * 100))
        )
        output = await tool.run({"urls": ["https://example.com"], "extract_mode": "full"}, ToolContext())

        assert output["results"][0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_fetch_stops_reading_past_size_limit(self):
        """Test that an undeclared oversized body is not downloaded in full."""
        from builtin_tools.web_fetch import WebFetchTool

        class CountingStream(httpx.AsyncByteStream):
            def __init__(self) -> None:
                self.served = 0

            async def __aiter__(self):
                for _ in range(100):
                    self.served += 1
                    yield b"x" * 1024

        stream = CountingStream()
        tool = WebFetchTool(
            max_bytes=4096,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream))
        )
        output = await tool.run({"urls": ["https://example.com/huge"], "extract_mode": "full"}, ToolContext())

        result = output["results"][0]
        assert result["status"] == "failed"
        assert result["error"] == "Content exceeds 4096 bytes"
        assert stream.served < 10

    @pytest.mark.asyncio
    async def test_too_many_urls_rejected_by_schema(self):
        """Test that the schema caps the number of URLs."""
        from builtin_tools import register_builtin_tools
        from shared.errors import InvalidArguments
        from tool_runtime.catalog import ToolCatalog

        catalog = ToolCatalog()
        register_builtin_tools(catalog)

        with pytest.raises(InvalidArguments):
            catalog.validate("web_fetch", {"urls": [f"https://example.com/{i}" for i in range(6)]})

        assert catalog.validate("web_fetch", {"urls": ["https://example.com"]})["extract_mode"] == "readable"
