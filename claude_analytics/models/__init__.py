"""Pydantic models for conversations, processes and API responses."""

from .message import Message
from .process import ProcessInfo, UNKNOWN_WORKING_DIR
from .conversation import (
    ConversationState,
    ConversationStatus,
    ConversationRecord,
    TokenUsage,
    ModelInfo,
    ToolUsage,
    Summary,
    UsageSessions,
    ActiveProject,
    DataResponse,
    FastUpdateResponse,
    ConversationStateEntry,
    ConversationStateResponse,
    RefreshResponse,
    HealthResponse,
    SessionResponse,
)

__all__ = [
    "Message",
    "ProcessInfo",
    "UNKNOWN_WORKING_DIR",
    "ConversationState",
    "ConversationStatus",
    "ConversationRecord",
    "TokenUsage",
    "ModelInfo",
    "ToolUsage",
    "Summary",
    "UsageSessions",
    "ActiveProject",
    "DataResponse",
    "FastUpdateResponse",
    "ConversationStateEntry",
    "ConversationStateResponse",
    "RefreshResponse",
    "HealthResponse",
    "SessionResponse",
]
