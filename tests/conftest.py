"""Shared fixtures for gateway tests."""

from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from shared.models import ToolContext, ToolDefinition, ToolPolicy


def make_tool(
    name: str = "echo",
    handler: Optional[Callable[..., Any]] = None,
    schema: Optional[dict[str, Any]] = None,
    **policy: Any
) -> ToolDefinition:
    """Build a tool definition around a handler (echoes its arguments by default)."""

    async def echo(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return {"echo": args}

    return ToolDefinition(
        name=name,
        description=f"{name} test tool",
        input_schema=schema or {
            "type": "object",
            "properties": {"text": {"type": "string"}},
        },
        handler=handler or echo,
        policy=ToolPolicy(**policy),
    )


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every file at the test's temp directory."""
    from shared.config import GatewaySettings, ProviderSettings, Settings, StoreSettings, ToolSettings

    return Settings(
        gateway=GatewaySettings(default_model="mock", system_prompt="You are a test assistant."),
        providers=ProviderSettings(openai_api_key=None, gemini_api_key=None, xai_api_key=None),
        store=StoreSettings(database_path=":memory:"),
        tools=ToolSettings(enable_audit=False, audit_log_path=str(tmp_path / "audit.log")),
    )


@pytest_asyncio.fixture
async def store():
    from gateway.database import ConversationDatabase
    from gateway.store import ConversationStore

    store = ConversationStore(ConversationDatabase(":memory:"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def scripted():
    from providers.mock import ScriptedAdapter

    return ScriptedAdapter()


@pytest_asyncio.fixture
async def services(settings, scripted):
    """Started gateway services with the scripted provider and a stub web_search tool."""
    from gateway.main import build_services
    from providers.registry import ProviderRegistry
    from tool_runtime.catalog import ToolCatalog

    async def web_search(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return {"results": [{"url": "https://example.com", "title": args["query"]}]}

    catalog = ToolCatalog()
    catalog.register(make_tool(
        "web_search",
        handler=web_search,
        schema={
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    ))

    services = build_services(
        settings,
        providers=ProviderRegistry({"mock": scripted}, default_model="mock"),
        catalog=catalog,
    )
    await services.start()
    yield services
    await services.close()
