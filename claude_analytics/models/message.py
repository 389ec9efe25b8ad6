"""Conversation message models."""

from datetime import datetime
from typing import Optional, Dict, Any, List, Union
from pydantic import ConfigDict, Field

from .base import CamelModel


MessageContent = Union[str, List[Dict[str, Any]]]


class Message(CamelModel):
    """
    One user or assistant entry of a conversation log.

    Frozen once parsed: a conversation only grows by appending new entries
    read from its file.
    """

    model_config = ConfigDict(frozen=True)

    role: str = Field(description="Message role (user/assistant)")
    content: MessageContent = Field(default="", description="Text or list of content blocks")
    timestamp: datetime = Field(description="Message timestamp")
    usage: Optional[Dict[str, Any]] = Field(None, description="Token usage reported for this message")
    model: Optional[str] = Field(None, description="Model used for this message")
    id: Optional[str] = Field(None, description="API message id or entry uuid")
    uuid: Optional[str] = Field(None, description="Log entry uuid")
    type: Optional[str] = Field(None, description="Log entry type (user/assistant)")
    tool_results: Optional[List[Dict[str, Any]]] = Field(
        None, description="tool_result blocks correlated back to this tool_use message"
    )
    is_compact_summary: bool = Field(default=False, description="Entry is a compaction summary")

    def content_blocks(self) -> List[Dict[str, Any]]:
        """Content as a list of blocks (plain text becomes a single text block)."""
        if isinstance(self.content, str):
            return [{"type": "text", "text": self.content}] if self.content else []
        return [block for block in self.content if isinstance(block, dict)]

    def text(self) -> str:
        """Plain text of the message, tool blocks rendered as short markers."""
        if isinstance(self.content, str):
            return self.content

        parts = []
        for block in self.content_blocks():
            block_type = block.get("type")
            if block_type == "text":
                parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                parts.append(f"[Tool: {block.get('name', 'unknown')}]")
            elif block_type == "tool_result":
                parts.append("[Tool Result]")
        return "\n".join(part for part in parts if part)
