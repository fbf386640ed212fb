"""Execution recorder for tool calls.

Every tool execution is logged as a structured event and appended to a
JSONL audit file. Captures: tool, arguments, outcome, duration, cache hit.
"""

import asyncio
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Optional

import aiofiles

from shared.logging import get_logger
from shared.models import ToolContext, ToolExecutionRecord, ToolResult

logger = get_logger(__name__)


class ExecutionRecorder:
    """
    Recorder for tool executions.

    Records are written to the structured log immediately, kept in a
    bounded in-memory tail, and flushed to the audit file in batches.
    """

    # Argument keys that are redacted before recording
    SENSITIVE_KEYS = {"password", "token", "secret", "api_key", "apikey", "credential", "authorization"}

    def __init__(
        self,
        log_path: str = "logs/tool_executions.log",
        enabled: bool = True,
        buffer_size: int = 50,
        tail_size: int = 200
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: list[ToolExecutionRecord] = []
        self._tail: deque[ToolExecutionRecord] = deque(maxlen=tail_size)
        self._lock = asyncio.Lock()

    def _redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: "[REDACTED]" if str(key).lower() in self.SENSITIVE_KEYS else self._redact(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [self._redact(item) for item in value]
        return value

    def create_record(
        self,
        args: dict[str, Any],
        result: ToolResult,
        context: Optional[ToolContext] = None
    ) -> ToolExecutionRecord:
        """
        Build an execution record.

        Args:
            args: Arguments the tool ran with
            result: Outcome of the execution
            context: Invocation context

        Returns:
            Execution record with sensitive arguments redacted
        """
        return ToolExecutionRecord(
            id=str(uuid.uuid4()),
            tool=result.name,
            args=self._redact(args),
            status=result.status,
            result=result.result if result.ok else None,
            error=result.error,
            duration_ms=result.duration_ms,
            cached=result.cached,
            conversation_id=context.conversation_id if context else None,
            request_id=context.request_id if context else None,
        )

    async def record(
        self,
        args: dict[str, Any],
        result: ToolResult,
        context: Optional[ToolContext] = None
    ) -> ToolExecutionRecord:
        """Record one tool execution."""
        entry = self.create_record(args, result, context)
        self._tail.append(entry)

        logger.info(
            "Tool executed",
            record_id=entry.id,
            tool=entry.tool,
            status=entry.status.value,
            duration_ms=round(entry.duration_ms, 2),
            cached=entry.cached,
            error=entry.error
        )

        if not self.enabled:
            return entry

        async with self._lock:
            self._buffer.append(entry)
            if len(self._buffer) >= self.buffer_size:
                await self._flush()

        return entry

    def recent(self, limit: Optional[int] = None) -> list[ToolExecutionRecord]:
        """Most recent records, oldest first."""
        records = list(self._tail)
        if limit is not None:
            records = records[-limit:]
        return records

    async def _flush(self) -> None:
        if not self._buffer:
            return

        pending = self._buffer.copy()
        self._buffer.clear()

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in pending:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write execution log", error=str(e), path=str(self.log_path))
            # Keep entries for the next flush
            self._buffer[:0] = pending

    async def flush(self) -> None:
        """Flush buffered records to the audit file."""
        async with self._lock:
            await self._flush()
