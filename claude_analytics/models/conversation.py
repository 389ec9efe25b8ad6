"""Conversation models and API payloads."""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import Field

from .base import CamelModel
from .message import Message
from .process import ProcessInfo


class ConversationState(str, Enum):
    """Inferred live activity of a conversation."""

    AGENT_WORKING = "AgentWorking"
    USER_TYPING = "UserTyping"
    AWAITING_USER_INPUT = "AwaitingUserInput"
    IDLE = "Idle"


class ConversationStatus(str, Enum):
    """Coarse activity classification."""

    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    IDLE = "idle"


class TokenUsage(CamelModel):
    """Token counts aggregated from message usage metadata."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total: int = 0
    messages_with_usage: int = 0
    total_messages: int = 0


class ModelInfo(CamelModel):
    models: List[str] = Field(default_factory=list)
    primary_model: str = "Unknown"
    service_tiers: List[str] = Field(default_factory=list)
    current_service_tier: str = "Unknown"
    has_multiple_models: bool = False


class ToolUsage(CamelModel):
    tool_stats: Dict[str, int] = Field(default_factory=dict)
    total_tool_calls: int = 0
    unique_tools: int = 0


class ConversationRecord(CamelModel):
    """
    One conversation backed by one append-only log file.

    Records are treated as values: the dashboard replaces a record with an
    updated copy instead of mutating it, so a reader holding a snapshot never
    sees a half-updated record.
    """

    id: str = Field(description="Conversation id (file stem)")
    project: str = Field(description="Logical project name")
    file_path: str = Field(description="Absolute path of the backing log file")
    file_name: str = Field(description="Log file name")
    messages: List[Message] = Field(default_factory=list, exclude=True)
    message_count: int = 0
    file_size: int = 0
    created: Optional[datetime] = None
    last_modified: datetime = Field(description="File mtime, authoritative freshness clock")
    tokens: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    model_info: ModelInfo = Field(default_factory=ModelInfo)
    tool_usage: ToolUsage = Field(default_factory=ToolUsage)
    running_process: Optional[ProcessInfo] = None
    conversation_state: ConversationState = ConversationState.IDLE
    status: ConversationStatus = ConversationStatus.IDLE


class UsageSessions(CamelModel):
    """Five-hour usage windows opened by user messages."""

    total: int = 0
    current_month: int = 0
    this_week: int = 0


class Summary(CamelModel):
    total_conversations: int = 0
    total_tokens: int = 0
    active_conversations: int = 0
    active_projects: int = 0
    avg_tokens_per_conversation: int = 0
    total_file_size: str = "0 Bytes"
    last_activity: Optional[datetime] = None
    sessions: UsageSessions = Field(default_factory=UsageSessions)
    skipped_lines: int = 0
    skipped_files: int = 0
    degraded_files: int = 0
    active_process_count: int = 0


class ActiveProject(CamelModel):
    name: str
    path: str
    last_activity: datetime
    status: str


class DataResponse(CamelModel):
    """GET /api/data"""

    conversations: List[ConversationRecord]
    summary: Summary
    active_projects: List[ActiveProject] = Field(default_factory=list)
    detailed_token_usage: Optional[TokenUsage] = None
    timestamp: str
    timestamp_ms: int
    last_update: str


class FastUpdateResponse(CamelModel):
    """GET /api/fast-update"""

    conversations: List[ConversationRecord]
    summary: Summary
    timestamp: str
    timestamp_ms: int
    last_update: str


class ConversationStateEntry(CamelModel):
    id: str
    project: str
    state: ConversationState
    timestamp: str
    timestamp_ms: int


class ConversationStateResponse(CamelModel):
    """GET /api/conversation-state"""

    active_states: List[ConversationStateEntry]
    timestamp: str
    timestamp_ms: int


class RefreshResponse(CamelModel):
    """GET /api/refresh"""

    success: bool
    message: str
    timestamp: str
    timestamp_ms: int


class HealthResponse(CamelModel):
    """GET /api/system/health"""

    status: str
    uptime: float
    memory: Dict[str, Any]
    requests: Dict[str, Any]
    cache: Dict[str, Any]
    errors: Dict[str, Any]
    timestamp: str
    timestamp_ms: int


class SessionResponse(CamelModel):
    """GET /api/session/{id}"""

    conversation: ConversationRecord
    messages: List[Message]
    timestamp: str
    timestamp_ms: int
