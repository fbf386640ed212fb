"""Tool Executor.

Runs tool calls requested by the model: validation, credential checks,
result caching, bounded execution and recording.
"""

import asyncio
import functools
import time
from typing import Any, Optional

from shared.errors import InvalidArguments, ToolExecutionError, UnknownTool
from shared.logging import get_logger
from shared.models import (
    ToolCall,
    ToolContext,
    ToolDefinition,
    ToolResult,
    ToolResultStatus,
)
from shared.schema import fingerprint
from tool_runtime.cache import ToolResultCache
from tool_runtime.catalog import ToolCatalog
from tool_runtime.recorder import ExecutionRecorder

logger = get_logger(__name__)


class ToolExecutor:
    """
    Executes tools registered in a catalog.

    Responsibilities:
    - Validate arguments against the tool schema
    - Serve repeated calls from the result cache
    - Bound every handler with a timeout
    - Convert handler failures into error results
    - Record every execution
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        recorder: Optional[ExecutionRecorder] = None,
        cache: Optional[ToolResultCache] = None,
        default_timeout: float = 20.0,
        credentials: Optional[dict[str, str]] = None
    ) -> None:
        """
        Initialize the executor.

        Args:
            catalog: Catalog the executor resolves tool names against
            recorder: Execution recorder (a non-persisting one if omitted)
            cache: Result cache shared by all calls
            default_timeout: Timeout for tools that do not declare one
            credentials: Process-wide credentials made available to handlers
        """
        self.catalog = catalog
        self.recorder = recorder or ExecutionRecorder(enabled=False)
        self.cache = cache or ToolResultCache()
        self.default_timeout = default_timeout
        self.credentials = dict(credentials or {})
        self._key_locks: dict[str, asyncio.Lock] = {}

    async def execute(
        self,
        name: str,
        args: Optional[dict[str, Any]],
        context: Optional[ToolContext] = None,
        call_id: str = ""
    ) -> ToolResult:
        """
        Execute a single tool call.

        Args:
            name: Tool name
            args: Arguments supplied by the model
            context: Invocation context
            call_id: Id of the model's tool call, copied onto the result

        Returns:
            Tool result; handler errors and timeouts are reported in it

        Raises:
            UnknownTool: If the tool is not registered
            InvalidArguments: If the arguments fail validation
        """
        tool = self.catalog.get(name)
        if tool is None:
            raise UnknownTool(name)

        validated = self.catalog.validate(name, args)
        context = self._with_credentials(context or ToolContext())

        missing = [c for c in tool.policy.required_credentials if not context.credentials.get(c)]
        if missing:
            result = ToolResult(
                id=call_id,
                name=name,
                status=ToolResultStatus.ERROR,
                error=f"Missing credentials: {', '.join(missing)}",
                error_code="MISSING_CREDENTIALS"
            )
            await self.recorder.record(validated, result, context)
            return result

        ttl = tool.policy.cache_ttl_seconds
        if not ttl:
            result = await self._invoke(tool, validated, context)
            result.id = call_id
            await self.recorder.record(validated, result, context)
            return result

        key = fingerprint(name, validated)
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                cached = self.cache.get(key)
                if cached is not None:
                    cached.id = call_id
                    cached.cached = True
                    cached.duration_ms = 0
                    logger.debug("Tool cache hit", tool=name)
                    await self.recorder.record(validated, cached, context)
                    return cached

                result = await self._invoke(tool, validated, context)
                if result.ok:
                    self.cache.set(key, result, ttl)
        finally:
            if not lock.locked():
                self._key_locks.pop(key, None)

        result.id = call_id
        await self.recorder.record(validated, result, context)
        return result

    async def execute_round(
        self,
        calls: list[ToolCall],
        context: Optional[ToolContext] = None
    ) -> list[ToolResult]:
        """
        Execute all tool calls requested in one model response.

        Calls run concurrently only when every requested tool declares
        ``concurrency_safe``; otherwise they run one after another in request
        order. Unknown tools and invalid arguments become error results.

        Args:
            calls: Tool calls in the order the model requested them
            context: Invocation context shared by the round

        Returns:
            One result per call, in request order
        """
        if not calls:
            return []

        if self._round_is_concurrency_safe(calls):
            return list(await asyncio.gather(*(self._execute_call(c, context) for c in calls)))

        results = []
        for call in calls:
            results.append(await self._execute_call(call, context))
        return results

    def _round_is_concurrency_safe(self, calls: list[ToolCall]) -> bool:
        if len(calls) < 2:
            return False
        for call in calls:
            tool = self.catalog.get(call.name)
            if tool is None or not tool.policy.concurrency_safe:
                return False
        return True

    async def _execute_call(self, call: ToolCall, context: Optional[ToolContext]) -> ToolResult:
        try:
            return await self.execute(call.name, call.args, context, call_id=call.id)
        except UnknownTool as e:
            result = ToolResult(
                id=call.id,
                name=call.name,
                status=ToolResultStatus.NOT_FOUND,
                error=e.message,
                error_code="TOOL_NOT_FOUND"
            )
        except InvalidArguments as e:
            result = ToolResult(
                id=call.id,
                name=call.name,
                status=ToolResultStatus.VALIDATION_ERROR,
                error=e.message,
                error_code="VALIDATION_ERROR"
            )

        logger.warning("Tool call rejected", tool=call.name, error=result.error)
        await self.recorder.record(call.args, result, context)
        return result

    def _with_credentials(self, context: ToolContext) -> ToolContext:
        if not self.credentials:
            return context
        merged = {**self.credentials, **context.credentials}
        return context.model_copy(update={"credentials": merged})

    async def _invoke(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        context: ToolContext
    ) -> ToolResult:
        """
        Run a tool handler under its timeout.

        Args:
            tool: Tool definition
            args: Validated arguments
            context: Invocation context

        Returns:
            Tool result with duration set
        """
        timeout = tool.policy.timeout_seconds or self.default_timeout
        start_time = time.perf_counter()

        try:
            if asyncio.iscoroutinefunction(tool.handler):
                value = await asyncio.wait_for(tool.handler(args, context), timeout=timeout)
            else:
                loop = asyncio.get_running_loop()
                value = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(tool.handler, args, context)),
                    timeout=timeout
                )
            result = ToolResult(name=tool.name, status=ToolResultStatus.SUCCESS, result=value)

        except asyncio.TimeoutError:
            logger.warning("Tool timed out", tool=tool.name, timeout_seconds=timeout)
            result = ToolResult(
                name=tool.name,
                status=ToolResultStatus.TIMEOUT,
                error=f"Tool '{tool.name}' timed out after {timeout:g}s",
                error_code="TIMEOUT"
            )

        except ToolExecutionError as e:
            logger.warning("Tool reported failure", tool=tool.name, error=e.message)
            result = ToolResult(
                name=tool.name,
                status=ToolResultStatus.ERROR,
                error=e.message,
                error_code="EXECUTION_ERROR"
            )

        except Exception as e:
            logger.error("Tool execution failed", tool=tool.name, error=str(e), exc_info=True)
            result = ToolResult(
                name=tool.name,
                status=ToolResultStatus.ERROR,
                error=str(e) or e.__class__.__name__,
                error_code="EXECUTION_ERROR"
            )

        result.duration_ms = (time.perf_counter() - start_time) * 1000
        return result
