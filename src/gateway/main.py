"""Chat Gateway - FastAPI Application.

The gateway provides:
- Conversation management API
- Blocking and streamed (SSE) chat
- Reply regeneration
- Provider routing and tool execution
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from shared.config import Settings, StreamingSettings, get_settings
from shared.errors import GatewayError
from shared.logging import get_logger, setup_logging
from builtin_tools import register_builtin_tools
from providers.registry import ProviderRegistry, create_provider_registry
from tool_runtime.cache import ToolResultCache
from tool_runtime.catalog import ToolCatalog
from tool_runtime.executor import ToolExecutor
from tool_runtime.recorder import ExecutionRecorder
from gateway.database import ConversationDatabase
from gateway.engine import ConversationEngine
from gateway.events import PING, SSE_HEADERS, TokenEvent, encode_event
from gateway.pacing import pacing_for
from gateway.service import ChatService, TurnHandle
from gateway.store import ConversationStore

logger = get_logger(__name__)

DRAIN_TIMEOUT_SECONDS = 30.0


# Request/Response Models
class ChatRequest(BaseModel):
    """Blocking chat request."""
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = Field(default=None, description="User message")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    model: Optional[str] = Field(default=None, description="Model id")


class RefreshRequest(BaseModel):
    """Regenerate the last assistant reply."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    model: Optional[str] = Field(default=None)


class HealthResponse(BaseModel):
    status: str
    tools: int
    conversations: int


@dataclass
class GatewayServices:
    """Long-lived components shared by all requests."""
    settings: Settings
    catalog: ToolCatalog
    cache: ToolResultCache
    recorder: ExecutionRecorder
    executor: ToolExecutor
    providers: ProviderRegistry
    store: ConversationStore
    engine: ConversationEngine
    service: ChatService

    async def start(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.service.drain(timeout=DRAIN_TIMEOUT_SECONDS)
        await self.providers.close()
        await self.recorder.flush()
        await self.store.close()


def build_services(
    settings: Settings,
    providers: Optional[ProviderRegistry] = None,
    catalog: Optional[ToolCatalog] = None
) -> GatewayServices:
    """
    Construct every gateway component from settings.

    Args:
        settings: Application settings
        providers: Provider registry override (tests)
        catalog: Tool catalog override; built-in tools are registered when omitted

    Returns:
        Unstarted services; call ``start()`` before serving
    """
    if catalog is None:
        catalog = ToolCatalog()
        register_builtin_tools(catalog, settings.tools)

    cache = ToolResultCache()
    recorder = ExecutionRecorder(
        log_path=settings.tools.audit_log_path,
        enabled=settings.tools.enable_audit
    )
    executor = ToolExecutor(
        catalog,
        recorder=recorder,
        cache=cache,
        default_timeout=settings.tools.timeout_seconds,
        credentials=settings.tools.credentials()
    )

    if providers is None:
        providers = create_provider_registry(
            settings.providers,
            default_model=settings.gateway.default_model,
            timeout=settings.gateway.provider_timeout_seconds
        )

    store = ConversationStore(
        ConversationDatabase(settings.store.database_path),
        cache_ttl_seconds=settings.store.cache_ttl_seconds,
        retention_seconds=settings.store.retention_seconds,
        retention_interval_seconds=settings.store.retention_interval_seconds
    )
    engine = ConversationEngine(
        executor,
        catalog,
        max_tool_rounds=settings.gateway.max_tool_rounds,
        provider_timeout=settings.gateway.provider_timeout_seconds,
        system_prompt=settings.gateway.load_system_prompt(),
        max_history_messages=settings.gateway.max_history_messages,
        tools_enabled=settings.gateway.tools_enabled
    )
    service = ChatService(store, providers, engine)

    return GatewayServices(
        settings=settings,
        catalog=catalog,
        cache=cache,
        recorder=recorder,
        executor=executor,
        providers=providers,
        store=store,
        engine=engine,
        service=service,
    )


async def sweep_task(services: GatewayServices, interval: float) -> None:
    """Background task evicting idle conversations and expired tool results."""
    while True:
        await asyncio.sleep(interval)
        try:
            await services.store.sweep()
            purged = services.cache.purge_expired()
            if purged:
                logger.debug("Tool cache purged", entries=purged)
        except Exception as e:
            logger.error("Sweep failed", error=str(e), exc_info=True)


async def sse_stream(
    request: Request,
    handle: TurnHandle,
    streaming: StreamingSettings
) -> AsyncIterator[str]:
    """
    Relay turn events to the client.

    Stops reading when the client goes away; the turn itself keeps running
    and is persisted by the service.
    """
    pacing = pacing_for(handle.provider, streaming)
    yield PING
    async for event in handle.events():
        if await request.is_disconnected():
            logger.info("Client disconnected", conversation_id=handle.conversation_id)
            return
        if isinstance(event, TokenEvent):
            async for piece in pacing.pace(event.token):
                yield encode_event(TokenEvent(token=piece))
        else:
            yield encode_event(event)


def create_app(services: Optional[GatewayServices] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Prebuilt services; built from ``get_settings()`` at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting Chat Gateway")

        current = services
        if current is None:
            settings = get_settings()
            setup_logging(settings.log_level, json_output=settings.environment == "production")
            current = build_services(settings)
        app.state.services = current
        await current.start()

        cleanup = asyncio.create_task(
            sweep_task(current, current.settings.store.effective_sweep_interval)
        )

        logger.info(
            "Chat Gateway started",
            tools=len(current.catalog),
            providers=current.providers.providers(),
            default_model=current.providers.default_model
        )

        yield

        # Shutdown
        logger.info("Shutting down Chat Gateway")
        cleanup.cancel()
        try:
            await cleanup
        except asyncio.CancelledError:
            pass
        await current.close()

    app = FastAPI(
        title="LLM Chat Gateway",
        description="Multi-provider chat gateway with tool calling",
        version="0.1.0",
        lifespan=lifespan
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal error"})

    def get_services(request: Request) -> GatewayServices:
        return request.app.state.services

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health(request: Request):
        """Health check endpoint."""
        current = get_services(request)
        stats = await current.store.stats()
        return HealthResponse(
            status="ok",
            tools=len(current.catalog),
            conversations=stats["conversations"]
        )

    @app.post("/v1/conversations", tags=["Conversations"])
    async def create_conversation(request: Request) -> dict[str, Any]:
        conversation_id = await get_services(request).service.create_conversation()
        return {"conversationId": conversation_id}

    @app.get("/v1/conversations", tags=["Conversations"])
    async def list_conversations(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0)
    ) -> dict[str, Any]:
        return await get_services(request).service.list_conversations(limit, offset)

    @app.get("/v1/conversations/{conversation_id}", tags=["Conversations"])
    async def get_conversation(request: Request, conversation_id: str) -> dict[str, Any]:
        transcript = await get_services(request).service.get_transcript(conversation_id)
        return {"conversationId": conversation_id, "conversation": transcript}

    @app.delete("/v1/conversations/{conversation_id}", tags=["Conversations"])
    async def delete_conversation(request: Request, conversation_id: str) -> dict[str, Any]:
        await get_services(request).service.delete_conversation(conversation_id)
        return {"conversationId": conversation_id, "deleted": True}

    @app.post("/v1/chat", tags=["Chat"])
    async def chat(request: Request, body: ChatRequest) -> dict[str, Any]:
        """Run a chat turn and return the complete reply."""
        return await get_services(request).service.chat(
            body.message,
            conversation_id=body.conversation_id,
            model=body.model
        )

    @app.get("/v1/chat/stream", tags=["Chat"])
    async def chat_stream(
        request: Request,
        message: Optional[str] = Query(default=None),
        conversation_id: Optional[str] = Query(default=None, alias="conversationId"),
        model: Optional[str] = Query(default=None),
        regenerate: bool = Query(default=False)
    ):
        """Run a chat turn, streaming events as Server-Sent Events."""
        current = get_services(request)
        handle = await current.service.open_stream(
            message,
            conversation_id=conversation_id,
            model=model,
            regenerate=regenerate
        )
        return StreamingResponse(
            sse_stream(request, handle, current.settings.streaming),
            media_type="text/event-stream",
            headers=SSE_HEADERS
        )

    @app.post("/v1/chat/refresh", tags=["Chat"])
    async def chat_refresh(request: Request, body: RefreshRequest):
        """Regenerate the last assistant reply as a stream."""
        current = get_services(request)
        handle = await current.service.open_refresh(body.conversation_id, model=body.model)
        return StreamingResponse(
            sse_stream(request, handle, current.settings.streaming),
            media_type="text/event-stream",
            headers=SSE_HEADERS
        )

    return app


app = create_app()


def main():
    """Run the Chat Gateway server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "gateway.main:app",
        host=settings.gateway.host,
        port=settings.gateway.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
