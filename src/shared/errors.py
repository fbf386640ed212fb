"""Error taxonomy for the chat gateway.

Every error carries the HTTP status it maps to and the JSON body the API
returns for it, so endpoint code only has to raise.
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base exception for gateway errors."""
    status_code: int = 500
    public_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.public_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        """JSON body returned to API clients."""
        return {"error": self.public_message}


class DuplicateTool(GatewayError):
    """A tool with the same name is already registered."""
    pass


class UnknownTool(GatewayError):
    """The requested tool is not registered."""
    status_code = 400

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class InvalidArguments(GatewayError):
    """Tool arguments failed schema validation."""
    status_code = 400

    def __init__(self, name: str, errors: list[str]) -> None:
        self.name = name
        self.errors = errors
        super().__init__(f"Invalid arguments for {name}: {'; '.join(errors)}")

    def to_payload(self) -> dict[str, Any]:
        return {"error": "Invalid arguments", "tool": self.name, "details": self.errors}


class ToolExecutionError(GatewayError):
    """A tool handler failed. Reported to the model, never fatal to a turn."""
    pass


class ProviderError(GatewayError):
    """An upstream model provider failed (transport, auth, status or timeout)."""
    status_code = 502
    public_message = "Provider error"

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None
    ) -> None:
        self.provider = provider
        self.upstream_status = status_code
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.public_message,
            "provider": self.provider,
            "details": self.message,
        }
        if self.upstream_status is not None:
            payload["status"] = self.upstream_status
        return payload


class ConversationNotFound(GatewayError):
    """No conversation exists with the given id."""
    status_code = 404
    public_message = "Not found"

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class MissingInput(GatewayError):
    """The request lacks a required input or cannot be applied to the conversation."""
    status_code = 400

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class StoreError(GatewayError):
    """Persistent storage failed after retries."""
    status_code = 503
    public_message = "Storage unavailable"


class ConversationConflict(GatewayError):
    """The conversation changed underneath an operation that depended on its state."""
    status_code = 409
    public_message = "Conversation changed"

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.public_message, "details": self.message}
