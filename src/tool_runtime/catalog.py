"""Tool Catalog.

Holds every tool definition registered at startup and validates model
supplied arguments against each tool's input schema.
"""

from typing import Any, Iterable, Optional

from shared.errors import DuplicateTool, InvalidArguments, UnknownTool
from shared.logging import get_logger
from shared.models import ToolDefinition
from shared.schema import apply_defaults, validate_schema

logger = get_logger(__name__)


class ToolCatalog:
    """
    Registry of tool definitions.

    Responsibilities:
    - Register tools once at process start
    - Lookup tools by name
    - Validate arguments, applying schema defaults
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        """
        Register a tool in the catalog.

        Args:
            tool: Tool definition to register

        Raises:
            DuplicateTool: If a tool with the same name is already registered
        """
        if tool.name in self._tools:
            raise DuplicateTool(f"Tool '{tool.name}' is already registered")

        self._tools[tool.name] = tool

        logger.info(
            "Tool registered",
            tool=tool.name,
            category=tool.policy.category,
            cache_ttl_seconds=tool.policy.cache_ttl_seconds,
            concurrency_safe=tool.policy.concurrency_safe
        )

    def register_many(self, tools: Iterable[ToolDefinition]) -> None:
        """Register multiple tools at once."""
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        """Registered tool names in registration order."""
        return list(self._tools)

    def list_tools(self, category: Optional[str] = None) -> list[ToolDefinition]:
        """
        List registered tools, optionally filtered by category.

        Args:
            category: Only return tools in this category

        Returns:
            List of tool definitions
        """
        tools = list(self._tools.values())
        if category:
            tools = [t for t in tools if t.policy.category == category]
        return tools

    def select(self, names: Optional[Iterable[str]] = None) -> list[ToolDefinition]:
        """
        Resolve the tools offered to the model for one turn.

        Args:
            names: Tool names to offer; None or empty offers every tool

        Returns:
            Tool definitions in registration order

        Raises:
            UnknownTool: If a requested name is not registered
        """
        if not names:
            return self.list_tools()

        wanted = set(names)
        for name in wanted:
            if name not in self._tools:
                raise UnknownTool(name)
        return [t for t in self._tools.values() if t.name in wanted]

    def validate(self, name: str, args: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Validate arguments for a tool.

        Declared defaults are applied to a copy of ``args`` before
        validation; the caller's dict is left untouched.

        Args:
            name: Tool name
            args: Arguments supplied by the model

        Returns:
            Validated arguments with defaults applied

        Raises:
            UnknownTool: If the tool is not registered
            InvalidArguments: If the arguments violate the input schema
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name)

        prepared = apply_defaults(args if args is not None else {}, tool.input_schema)

        is_valid, errors = validate_schema(prepared, tool.input_schema)
        if not is_valid:
            raise InvalidArguments(name, errors)

        return prepared
