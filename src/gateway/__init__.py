"""Chat gateway: conversation store, turn engine, chat service and HTTP API."""

from gateway.engine import ConversationEngine, Turn, TurnOutcome, TurnState
from gateway.service import ChatService, TurnHandle
from gateway.store import ConversationStore

__all__ = [
    "ConversationEngine",
    "Turn",
    "TurnOutcome",
    "TurnState",
    "ChatService",
    "TurnHandle",
    "ConversationStore",
]
